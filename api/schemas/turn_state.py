"""Turn state schemas for the Attic context orchestration pipeline.

This module defines the records that flow through one chat turn: retrieved
chunks and the context blocks rendered from them, the query route, the
stream state and the source attribution sent to clients.

Everything except ``SourceAttribution``, which is stored on assistant turns,
is turn-local and never persisted.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class SourceKind(str, Enum):
    """Origin of an indexed record."""

    UPLOADED = "uploaded"
    SYNCED = "synced"
    SCANNED = "scanned"
    BOOKS = "books"
    CALENDAR = "calendar"
    EMAIL = "email"


# Records with no underlying file on disk; never replaced with full content.
VIRTUAL_SOURCE_KINDS = frozenset({SourceKind.SCANNED, SourceKind.BOOKS, SourceKind.CALENDAR, SourceKind.EMAIL})

SourceFilter = Union[Literal["all", "none"], List[SourceKind]]


def normalize_source_filter(value: Union[str, List[str], None]) -> SourceFilter:
    """Coerce user input into ``"all"``, ``"none"`` or a deduplicated allow-list."""
    if value is None or value == "all":
        return "all"
    if value == "none":
        return "none"
    if isinstance(value, str):
        value = [value]
    kinds: List[SourceKind] = []
    for item in value:
        kind = SourceKind(item)
        if kind not in kinds:
            kinds.append(kind)
    return kinds or "all"


class RetrievedChunk(BaseModel):
    """A chunk returned by vector search. Lives only while a turn's context is assembled."""

    content: str
    source_id: str
    file_name: str
    file_path: str
    score: float = Field(description="Similarity hint, higher is more relevant")
    source_kind: SourceKind = SourceKind.UPLOADED
    total_chunks: Optional[int] = Field(default=None, description="Number of chunks in the originating document")
    chunk_index: Optional[int] = None


class ContextBlock(BaseModel):
    """One rendered unit of prompt context: a chunk or a whole document."""

    file_name: str
    file_path: str
    content: str
    full_document: bool = False

    def render(self) -> str:
        if self.full_document:
            return f"Document: {self.file_name}\n(Full Content)\n{self.content}"
        return f"Document: {self.file_name}\nContent: {self.content}"


class RetrievalResult(BaseModel):
    """Chunks retrieved for a turn plus the context blocks built from them."""

    chunks: List[RetrievedChunk] = Field(default_factory=list)
    blocks: List[ContextBlock] = Field(default_factory=list)
    strategy: str = "direct"

    @property
    def count(self) -> int:
        return len(self.chunks)


class RoutePath(str, Enum):
    FAST = "fast"
    SLOW = "slow"


class QueryRoute(BaseModel):
    """Routing decision for a turn; may be upgraded from fast to slow once."""

    path: RoutePath
    skip_rephrasing: bool
    skip_iterative_retrieval: bool
    reason: str
    skip_source_analysis: bool = False
    upgraded: bool = False

    def upgrade_to_slow(self, reason: str) -> bool:
        """Flip a fast route to slow. Returns False if an upgrade already happened."""
        if self.upgraded or self.path is RoutePath.SLOW:
            return False
        self.path = RoutePath.SLOW
        self.skip_iterative_retrieval = False
        self.reason = f"{self.reason}; upgraded: {reason}"
        self.upgraded = True
        return True


class StreamPhase(str, Enum):
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    CANCELLED = "cancelled"
    ERRORED = "errored"
    DONE = "done"


class StreamState(BaseModel):
    """Mutable state of one streamed response."""

    assistant_turn_id: str
    phase: StreamPhase = StreamPhase.STREAMING
    full_response: str = ""
    last_persist_time: float = Field(default_factory=time.monotonic)
    last_persist_length: int = 0


class SourceAttribution(BaseModel):
    """A source shown to the user alongside an answer. Serialised with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    file_name: str
    file_path: str
    chunk: str
    score: float
    source_kind: SourceKind = SourceKind.UPLOADED
    is_referenced: Optional[bool] = None

    @classmethod
    def from_chunk(cls, chunk: RetrievedChunk) -> "SourceAttribution":
        return cls(
            file_name=chunk.file_name,
            file_path=chunk.file_path,
            chunk=chunk.content,
            score=chunk.score,
            source_kind=chunk.source_kind,
        )


class UserProfile(BaseModel):
    """Optional facts about the user, used to personalise prompts and first searches."""

    name: Optional[str] = None
    bio: Optional[str] = None


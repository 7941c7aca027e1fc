"""
Prompt templates for the Attic knowledge assistant.

Covers the answer system prompts (with and without retrieved sources) and
every auxiliary prompt the pipeline sends to the fast model. Templates use
``{{name}}`` slots filled by ``interpolate``; retrieved document text is
inserted verbatim, without escaping.
"""

from typing import Dict, Iterable, Optional, Sequence

from api.schemas.turn_state import ContextBlock, UserProfile

# ==============================================================================
# ANSWER SYSTEM PROMPTS
# ==============================================================================

RAG_SYSTEM_PROMPT = """You are a helpful personal assistant with access to the user's own documents, notes, calendar, reading history and email. Use the context below to answer the user's question.
If the answer is not in the context, say so; you may still answer from general knowledge when appropriate, but make clear that it does not come from the user's documents.
Cite the documents you rely on by name.

Take any user information provided below into account when personalising your answer.

Context:
{{context}}"""

NO_SOURCES_SYSTEM_PROMPT = """You are a helpful personal assistant. Answer the user's questions to the best of your ability.

Take any user information provided below into account when personalising your answer."""

CONTEXT_SEPARATOR = "\n\n---\n\n"

# ==============================================================================
# AUXILIARY PROMPTS
# ==============================================================================

TITLE_GENERATION_PROMPT = """Generate a short, concise title (maximum 10 words) for this conversation based on the following exchange:
User: {{userMessage}}
Assistant: {{assistantMessage}}

Title:"""

REPHRASE_PROMPT = """Given the following conversation history, rephrase the last user question so that it is self-contained and includes the context it refers to. Output only the rephrased question, nothing else.

Conversation History:
{{history}}

Current Question: {{question}}

Rephrased Question:"""

ESCAPE_HATCH_PROMPT = "Can you answer this question with the provided context? Reply with ONLY 'YES' or 'NO'."

PREVIEW_CHECK_PROMPT = (
    "Respond with ONLY 'NEED_MORE_CONTEXT' if you need additional document chunks to answer "
    "thoroughly, or 'SUFFICIENT' if you have enough information. Be conservative and only "
    "request more if truly necessary."
)

RETRIEVAL_ANALYSIS_PROMPT = """Analyze this Q&A interaction and decide whether retrieving more document chunks would produce a better answer.

User Question: {{question}}

Current Response (partial): {{response}}

Current chunks retrieved: {{current}}
Maximum allowed: {{maximum}}

Respond with ONLY a JSON object (no other text) in this exact format:
{
  "shouldRetrieve": true/false,
  "reason": "brief explanation",
  "suggestedCount": number between 1-10
}

Guidelines:
- shouldRetrieve is true ONLY if more document chunks would likely help
- shouldRetrieve is false if the answer is already satisfactory, the question is unanswerable, or no relevant documents exist
- Keep reason under 10 words
- suggestedCount is 3-5 for targeted information, 8-10 for broad context"""

COMPLEXITY_JUDGMENT_PROMPT = """Classify how much source material is needed to answer this question.

Question: {{question}}

Respond with ONLY a JSON object: {"complexity": "simple" | "moderate" | "complex"}
- simple: one fact from one place
- moderate: a few related facts
- complex: comparison, synthesis or many documents"""

TOPIC_EXTRACTION_PROMPT = """Based on this conversation, extract 2-4 main topics or themes. Return only a JSON array of topic strings, nothing else.

Conversation:
{{history}}

New message: {{message}}

Topics (as JSON array):"""


def interpolate(template: str, variables: Dict[str, str]) -> str:
    """Replace each ``{{key}}`` slot with its value."""
    result = template
    for key, value in variables.items():
        result = result.replace("{{" + key + "}}", value)
    return result


def build_user_context(profile: Optional[UserProfile]) -> str:
    if profile is None:
        return ""
    parts = []
    if profile.name:
        parts.append(f"User: {profile.name}")
    if profile.bio:
        parts.append(f"Background: {profile.bio}")
    return "\n".join(parts)


def build_search_query_with_user_context(query: str, profile: Optional[UserProfile]) -> str:
    """Prefix a first-message search query with what we know about the user."""
    user_context = build_user_context(profile)
    if not user_context:
        return query
    return f"{user_context}\n\nQuestion: {query}"


def render_context(blocks: Iterable[ContextBlock]) -> str:
    return CONTEXT_SEPARATOR.join(block.render() for block in blocks)


def build_system_prompt(
    blocks: Sequence[ContextBlock],
    profile: Optional[UserProfile] = None,
    use_sources: bool = True,
) -> str:
    """
    Render the answer system prompt.

    Args:
        blocks: Context blocks from retrieval (may be empty)
        profile: Optional user profile appended to the prompt
        use_sources: False when the user turned retrieval off

    Returns:
        The RAG prompt with context filled in, or the no-sources prompt
        when there is nothing to ground on.
    """
    if use_sources and blocks:
        prompt = interpolate(RAG_SYSTEM_PROMPT, {"context": render_context(blocks)})
    else:
        prompt = NO_SOURCES_SYSTEM_PROMPT

    user_context = build_user_context(profile)
    if user_context:
        prompt += f"\n\n{user_context}"
    return prompt


"""Per-turn orchestration: routing, retrieval escalation and streaming."""

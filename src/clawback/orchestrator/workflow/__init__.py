"""Workflow domain: events, trigger matching, run states, operations and the engine.

The orchestrator engine keeps the whole working memory of a run in its turn
history, which is what lets a run pause for a human and resume later from a
checkpoint.
"""

__all__: list[str] = []

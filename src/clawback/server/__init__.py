"""FastAPI adapter for the clawback engine.

Design intent:
- Keep engine logic in `clawback.orchestrator.*`
- Keep HTTP concerns (routing, CORS, status codes) here
"""

from __future__ import annotations

__all__ = ["create_app"]

from clawback.server.app import create_app

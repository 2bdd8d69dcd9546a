"""FastAPI dependencies for the process-scoped objects kept on ``app.state``."""

from typing import Optional

from fastapi import Request

from fxchange.core.realtime import PresenceTracker


def get_scheduler(request: Request) -> Optional[object]:
    """The running ``MarketScheduler``, or None when scheduling is disabled."""
    return getattr(request.app.state, "scheduler", None)


def get_presence(request: Request) -> PresenceTracker:
    return request.app.state.presence

"""Database layer for the authgate service."""
from __future__ import annotations

from . import models as _models
from .base import Base, UTCDateTime, configure_database, create_session, dispose_database, metadata
from .models import *  # noqa: F401,F403
from .session import get_session, session_scope

__all__ = [
    "Base",
    "UTCDateTime",
    "configure_database",
    "create_session",
    "dispose_database",
    "get_session",
    "metadata",
    "session_scope",
] + _models.__all__

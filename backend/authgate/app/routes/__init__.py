"""Router modules exposed by the authgate API."""
from . import admin, auth, sessions, tokens, two_factor

__all__ = [
    "admin",
    "auth",
    "sessions",
    "tokens",
    "two_factor",
]

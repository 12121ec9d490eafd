"""
Ephemeral storage for ORTHRUS.

Pending challenges, e-mail codes, cooldowns, lockout counters and named
locks all live here, never in process state shared between requests.
"""
from .ephemeral import EphemeralStore

__all__ = ["EphemeralStore"]

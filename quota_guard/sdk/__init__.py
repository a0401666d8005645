"""
SDK for Quota Guard.

Wraps billed operations with admission checks and usage recording.
"""

from .guarded import GuardedOperation, GuardedResult

__all__ = ["GuardedOperation", "GuardedResult"]

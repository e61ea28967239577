"""
Branch data models
"""
from .branch import BranchInfo, CleanupOutcome, CleanupResult, CleanupStatus, format_bytes

__all__ = [
    "BranchInfo",
    "CleanupOutcome",
    "CleanupResult",
    "CleanupStatus",
    "format_bytes",
]

"""
Database branching services
"""
from .branching import (
    DatabaseBranchManager,
    BranchError,
    SourceNotFound,
    BranchCreateFailed,
    BranchDeleteFailed,
    ConnectionUnavailable,
)

__all__ = [
    "DatabaseBranchManager",
    "BranchError",
    "SourceNotFound",
    "BranchCreateFailed",
    "BranchDeleteFailed",
    "ConnectionUnavailable",
]

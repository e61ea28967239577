"""
Branch catalog records and cleanup outcomes
"""
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any
import enum
import math


SIZE_UNITS = ["Bytes", "KB", "MB", "GB", "TB"]


def format_bytes(num_bytes: int) -> str:
    """Format a byte count with 1024-based units, two decimals at most"""
    if num_bytes <= 0:
        return "0 Bytes"

    exponent = min(int(math.log(num_bytes, 1024)), len(SIZE_UNITS) - 1)
    # log() can land just under an exact power of 1024
    if exponent + 1 < len(SIZE_UNITS) and num_bytes >= 1024 ** (exponent + 1):
        exponent += 1

    value = math.floor(num_bytes / 1024 ** exponent * 100 + 0.5) / 100
    return f"{value:g} {SIZE_UNITS[exponent]}"


class CleanupStatus(str, enum.Enum):
    """Outcome of deleting one cleanup candidate"""
    DELETED = "deleted"
    FAILED = "failed"


@dataclass(frozen=True)
class BranchInfo:
    """A database branch as currently reported by the engine catalog"""
    name: str
    size_bytes: int
    active_connections: int

    @property
    def size(self) -> str:
        return format_bytes(self.size_bytes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "size": self.size,
            "size_bytes": self.size_bytes,
            "connections": self.active_connections,
        }


@dataclass
class CleanupOutcome:
    """Result of deleting a single branch during cleanup"""
    branch: str
    status: CleanupStatus
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {"branch": self.branch, "status": self.status.value}
        if self.error is not None:
            result["error"] = self.error
        return result


@dataclass
class CleanupResult:
    """Batch result of a cleanup run"""
    dry_run: bool
    candidates: List[BranchInfo] = field(default_factory=list)
    outcomes: List[CleanupOutcome] = field(default_factory=list)

    @property
    def deleted(self) -> int:
        return sum(1 for o in self.outcomes if o.status == CleanupStatus.DELETED)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.status == CleanupStatus.FAILED)

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from calbridge.core.timeutil import isoformat_z


@dataclass
class SyncResult:
    """Counters and per-item errors collected over one reconciliation run."""
    pulled: int = 0
    updated: int = 0
    pushed: int = 0
    deleted: int = 0
    conflicts: int = 0
    errors: List[str] = field(default_factory=list)
    synced_at: Optional[datetime] = None

    def add_error(self, message: str):
        self.errors.append(message)

    @property
    def total_changes(self) -> int:
        return self.pulled + self.updated + self.pushed + self.deleted

    def summary(self) -> str:
        return (f"pulled={self.pulled} updated={self.updated} pushed={self.pushed} "
                f"deleted={self.deleted} errors={len(self.errors)}")

    def to_dict(self) -> Dict:
        """Response body for the sync endpoint."""
        return {
            'success': True,
            'results': {
                'pulled': self.pulled,
                'pushed': self.pushed,
                'updated': self.updated,
                'deleted': self.deleted,
                'conflicts': self.conflicts,
                'errors': list(self.errors),
            },
            'synced_at': isoformat_z(self.synced_at),
        }

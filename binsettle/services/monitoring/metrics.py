"""In-memory metrics snapshot for the API + metrics file."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional


@dataclass
class MetricsSnapshot:
    orders_opened: int = 0
    orders_rejected: int = 0
    orders_won: int = 0
    orders_lost: int = 0
    orders_failed: int = 0
    duplicate_resolutions: int = 0
    resolution_retries: int = 0
    pending_scheduled: int = 0
    last_sweep_at: Optional[str] = None
    feeds: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

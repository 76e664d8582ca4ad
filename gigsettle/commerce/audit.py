"""State transition audit records."""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from gigsettle.commerce.actors import Actor

ENTITY_TYPES = frozenset({"job", "bid", "trade", "milestone", "withdrawal"})


@dataclass
class StateTransition:
    """One status change of a job, bid, trade, milestone or withdrawal."""

    id: str
    entity_type: str
    entity_id: str
    from_status: Optional[str]
    to_status: str
    actor: Actor
    reason: Optional[str] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if self.entity_type not in ENTITY_TYPES:
            raise ValueError(f"Invalid entity type: {self.entity_type}")

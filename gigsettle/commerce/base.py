"""Shared plumbing for the settlement services."""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Generic, Iterable, List, Optional, TypeVar

from gigsettle.commerce.actors import Actor, UserActor
from gigsettle.commerce.audit import StateTransition
from gigsettle.commerce.config import CommerceConfig
from gigsettle.commerce.errors import InvalidInputError, InvalidTransitionError
from gigsettle.commerce.notifications import Notification, NotificationDispatcher, dispatch_all
from gigsettle.logging_config import log_race_lost, log_transition
from gigsettle.storage.base import SettlementStore

logger = logging.getLogger(__name__)


T = TypeVar("T")


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class OperationResult(Generic[T]):
    """Updated entity plus soft warnings from best-effort side effects."""

    value: T
    warnings: List[str] = field(default_factory=list)


def user_actor(user_id: str) -> UserActor:
    try:
        return UserActor(user_id)
    except (TypeError, ValueError, AttributeError) as e:
        raise InvalidInputError(f"Invalid actor: {e}") from e


class SettlementService:
    """Base for services that write through a settlement store."""

    def __init__(
        self,
        store: SettlementStore,
        config: Optional[CommerceConfig] = None,
        notifier: Optional[NotificationDispatcher] = None,
    ):
        self.store = store
        self.config = config or CommerceConfig()
        self.notifier = notifier

    def _record(
        self,
        tx,
        log: List[StateTransition],
        entity_type: str,
        entity_id: str,
        from_status: Optional[str],
        to_status: str,
        actor: Actor,
        now: datetime,
        reason: Optional[str] = None,
    ) -> None:
        """Write an audit row inside ``tx`` and remember it for post-commit logging."""
        transition = StateTransition(
            id=new_id(),
            entity_type=entity_type,
            entity_id=entity_id,
            from_status=from_status,
            to_status=to_status,
            actor=actor,
            reason=reason,
            created_at=now,
        )
        tx.insert_transition(transition)
        log.append(transition)

    @staticmethod
    def _log_committed(transitions: Iterable[StateTransition]) -> None:
        for t in transitions:
            log_transition(t.entity_type, t.entity_id, t.from_status, t.to_status, t.actor, t.reason)

    @staticmethod
    def _conflict(
        entity_type: str,
        entity_id: str,
        expected: tuple,
        found: Optional[str],
        target: str,
        message: Optional[str] = None,
    ) -> InvalidTransitionError:
        """Build the error for a conditional update that matched no row."""
        log_race_lost(entity_type, entity_id, expected, found)
        return InvalidTransitionError(
            message
            or f"{entity_type.capitalize()} must be {' or '.join(expected)} to become {target} "
            f"(current status: {found})",
            entity_type=entity_type,
            entity_id=entity_id,
            current_status=found,
            target_status=target,
        )

    def _notify(self, notifications: Iterable[Notification]) -> List[str]:
        """Best-effort delivery after commit. Returns warnings."""
        return dispatch_all(self.notifier, notifications)

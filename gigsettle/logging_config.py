"""Structured audit logging for settlement events.

Records go to the ``gigsettle.audit`` logger as single ``key=value`` lines so
they can be grepped or shipped to a log pipeline without a parser.
"""

import logging
from decimal import Decimal
from typing import Any, Optional

AUDIT_LOGGER_NAME = "gigsettle.audit"

audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)


def _format_fields(fields: dict) -> str:
    parts = []
    for key, value in fields.items():
        if value is None:
            continue
        parts.append(f"{key}={value}")
    return " ".join(parts)


def log_transition(
    entity_type: str,
    entity_id: str,
    from_status: Optional[str],
    to_status: str,
    actor: Any,
    reason: Optional[str] = None,
) -> None:
    """Log a committed status change."""
    audit_logger.info(
        f"TRANSITION | {entity_type}={entity_id} | {from_status or '-'} -> {to_status} | "
        + _format_fields({"actor": actor, "reason": reason})
    )


def log_settlement(event: str, freelancer_id: str, amount: Decimal, **fields: Any) -> None:
    """Log a money movement (earning recorded, withdrawal requested, ...)."""
    audit_logger.info(
        f"SETTLEMENT | {event} | freelancer={freelancer_id} amount={amount} "
        + _format_fields(fields)
    )


def log_race_lost(entity_type: str, entity_id: str, expected: tuple, found: Optional[str]) -> None:
    """Log a conditional update that matched no row."""
    audit_logger.warning(
        f"CONFLICT | {entity_type}={entity_id} | expected={'|'.join(expected)} found={found}"
    )

"""Who performed a state change.

Users and the system are separate variants so a system-generated change is
never confused with a user id.
"""

from dataclasses import dataclass
from typing import Union

USER_PREFIX = "user:"
SYSTEM_PREFIX = "system:"


@dataclass(frozen=True)
class UserActor:
    """A platform user (client, freelancer, or admin)."""

    user_id: str

    def __post_init__(self):
        if not self.user_id or not self.user_id.strip():
            raise ValueError("user_id cannot be empty")

    def __str__(self) -> str:
        return f"{USER_PREFIX}{self.user_id}"


@dataclass(frozen=True)
class SystemActor:
    """An automated process such as the scheduler-driven sweeps."""

    name: str = "scheduler"

    def __str__(self) -> str:
        return f"{SYSTEM_PREFIX}{self.name}"


Actor = Union[UserActor, SystemActor]

SYSTEM = SystemActor()


def actor_to_db(actor: Actor) -> str:
    """Encode an actor for storage."""
    return str(actor)


def actor_from_db(value: str) -> Actor:
    """Decode a stored actor string."""
    if value.startswith(USER_PREFIX):
        return UserActor(value[len(USER_PREFIX):])
    if value.startswith(SYSTEM_PREFIX):
        return SystemActor(value[len(SYSTEM_PREFIX):])
    raise ValueError(f"Unrecognized actor encoding: {value!r}")

"""Conflict-resolution strategies.

Each strategy compares the incoming write (the queue entry's source) with the
stored version's author and settles on one of three outcomes:

- ACCEPTED: the incoming write replaces the stored version
- REJECTED: the stored version is kept
- PENDING:  a human decision is required (``resolve_layer_conflict``)
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional

from models.records import ResolutionOutcome
from roles.config import ConflictStrategy, Role, compare_roles, get_role_profile


@dataclass(frozen=True)
class Resolution:
    outcome: ResolutionOutcome
    strategy: Optional[ConflictStrategy]
    winner_role: Optional[Role]
    reason: str

    @property
    def accepted(self) -> bool:
        return self.outcome == ResolutionOutcome.ACCEPTED

    @property
    def pending(self) -> bool:
        return self.outcome == ResolutionOutcome.PENDING


def _auto(incoming_role: Role, incoming_at: datetime,
          stored_role: Role, stored_at: datetime) -> Resolution:
    incoming_priority = get_role_profile(incoming_role).sync_priority
    stored_priority = get_role_profile(stored_role).sync_priority

    if incoming_priority > stored_priority:
        return Resolution(ResolutionOutcome.ACCEPTED, ConflictStrategy.AUTO, incoming_role,
                          f"priority {incoming_priority} > {stored_priority}")
    if incoming_priority < stored_priority:
        return Resolution(ResolutionOutcome.REJECTED, ConflictStrategy.AUTO, stored_role,
                          f"priority {incoming_priority} < {stored_priority}")
    # Same priority: most recent write wins.
    if incoming_at > stored_at:
        return Resolution(ResolutionOutcome.ACCEPTED, ConflictStrategy.AUTO, incoming_role,
                          "equal priority, incoming write is more recent")
    return Resolution(ResolutionOutcome.REJECTED, ConflictStrategy.AUTO, stored_role,
                      "equal priority, stored version is more recent")


def _manual(incoming_role: Role, incoming_at: datetime,
            stored_role: Role, stored_at: datetime) -> Resolution:
    return Resolution(ResolutionOutcome.PENDING, ConflictStrategy.MANUAL, None,
                      "manual decision required")


def _hierarchical(incoming_role: Role, incoming_at: datetime,
                  stored_role: Role, stored_at: datetime) -> Resolution:
    order = compare_roles(incoming_role, stored_role)
    if order > 0:
        return Resolution(ResolutionOutcome.ACCEPTED, ConflictStrategy.HIERARCHICAL, incoming_role,
                          f"{incoming_role.value} outranks {stored_role.value}")
    if order < 0:
        return Resolution(ResolutionOutcome.REJECTED, ConflictStrategy.HIERARCHICAL, stored_role,
                          f"{stored_role.value} outranks {incoming_role.value}")
    return Resolution(ResolutionOutcome.PENDING, ConflictStrategy.HIERARCHICAL, None,
                      f"peers at {incoming_role.value}, manual decision required")


STRATEGIES: Dict[ConflictStrategy, Callable[..., Resolution]] = {
    ConflictStrategy.AUTO: _auto,
    ConflictStrategy.MANUAL: _manual,
    ConflictStrategy.HIERARCHICAL: _hierarchical,
}


def settle(strategy: ConflictStrategy, incoming_role: Role, incoming_at: datetime,
           stored_role: Role, stored_at: datetime) -> Resolution:
    return STRATEGIES[ConflictStrategy(strategy)](incoming_role, incoming_at, stored_role, stored_at)

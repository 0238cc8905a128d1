"""Environment status transition table.

Provisioning flow:
  pending_provision -> provisioning -> awaiting_heartbeat -> active <-> unresponsive

Error and teardown transitions:
  pending_provision | provisioning -> error_provisioning
  any non-teardown status -> deprovisioning -> (record deleted) | error_deprovisioning
  error_deprovisioning --(retry)--> deprovisioning
"""

from __future__ import annotations

from types import MappingProxyType

from toolbox_control.errors import StatePreconditionError
from toolbox_control.models import EnvironmentStatus as S

ALLOWED_TRANSITIONS = MappingProxyType(
    {
        S.PENDING_PROVISION: frozenset({S.PROVISIONING, S.ERROR_PROVISIONING, S.DEPROVISIONING}),
        S.PROVISIONING: frozenset({S.AWAITING_HEARTBEAT, S.ERROR_PROVISIONING, S.DEPROVISIONING}),
        S.AWAITING_HEARTBEAT: frozenset({S.ACTIVE, S.UNRESPONSIVE, S.DEPROVISIONING}),
        S.ACTIVE: frozenset({S.ACTIVE, S.UNRESPONSIVE, S.DEPROVISIONING}),
        S.UNRESPONSIVE: frozenset({S.ACTIVE, S.UNRESPONSIVE, S.DEPROVISIONING}),
        S.ERROR_PROVISIONING: frozenset({S.ACTIVE, S.UNRESPONSIVE, S.DEPROVISIONING}),
        S.DEPROVISIONING: frozenset({S.ERROR_DEPROVISIONING}),
        S.ERROR_DEPROVISIONING: frozenset({S.DEPROVISIONING}),
    }
)

# Deprovision returns success immediately for these.
DEPROVISION_IDEMPOTENT_STATES = frozenset({S.DEPROVISIONING})

# Refresh returns the record untouched, without contacting the agent.
REFRESH_SKIPPED_STATES = frozenset(
    {S.PENDING_PROVISION, S.PROVISIONING, S.DEPROVISIONING}
)

# Refresh updates heartbeat fields but never the status for these.
STATUS_PRESERVING_STATES = frozenset({S.DEPROVISIONING, S.ERROR_DEPROVISIONING})

# Statuses at which provisioning has completed and an IP must be present.
PROVISIONED_STATES = frozenset({S.AWAITING_HEARTBEAT, S.ACTIVE, S.UNRESPONSIVE})


class InvalidStateTransition(StatePreconditionError):
    """Raised for transitions not present in ``ALLOWED_TRANSITIONS``."""

    def __init__(self, from_state: S, to_state: S) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"invalid environment transition: {from_state.value!r} -> {to_state.value!r}"
        )


def can_transition(from_state: S, to_state: S) -> bool:
    return to_state in ALLOWED_TRANSITIONS.get(from_state, frozenset())


def require_transition(from_state: S, to_state: S) -> None:
    if not can_transition(from_state, to_state):
        raise InvalidStateTransition(from_state, to_state)

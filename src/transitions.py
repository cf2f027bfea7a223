"""
Transition tables for the reconcile state machine.

Each table maps every member of a manager result enum to what the engine
does next. Tables are checked for totality when this module is imported,
so adding an enum member without mapping it fails loudly at startup
instead of silently at runtime.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Mapping, Optional, Type

from managers.base import ApplyResult, DeleteResult, VerifyResult
from manifest import LifecycleState
from permissions import Permission


class TransitionTableError(Exception):
    """Raised when a transition table does not cover its result enum."""


class Requeue(Enum):
    """How soon the next pass should run after a transition."""

    # Follow-up pass right away (state changed, more work to do)
    IMMEDIATE = "immediate"
    # Nothing changed; retry after the exponential backoff delay
    BACKOFF = "backoff"
    # Terminal or settled; no pass unless something changes
    NONE = "none"


@dataclass(frozen=True)
class VerifyTransition:
    """Effect of a verify result while in Verifying."""

    target: LifecycleState
    # Permissions needed to enter target; if any is missing -> Failed
    requires: FrozenSet[Permission] = frozenset()
    requeue: Requeue = Requeue.IMMEDIATE
    # Denied-permission reason (only meaningful when requires is non-empty)
    denied_reason: str = ""


@dataclass(frozen=True)
class DeleteTransition:
    """Effect of a delete result."""

    # None means "stay in the current state"
    target: Optional[LifecycleState]
    requeue: Requeue
    finalize: bool = False


APPLY_TRANSITIONS: Dict[ApplyResult, LifecycleState] = {
    ApplyResult.AWAITING_VERIFICATION: LifecycleState.VERIFYING,
    # Re-verified once for consistency even when the manager reports success
    ApplyResult.SUCCEEDED: LifecycleState.VERIFYING,
    ApplyResult.ERROR: LifecycleState.FAILED,
}

VERIFY_TRANSITIONS: Dict[VerifyResult, VerifyTransition] = {
    VerifyResult.MISSING: VerifyTransition(LifecycleState.PENDING),
    VerifyResult.IN_PROGRESS: VerifyTransition(
        LifecycleState.VERIFYING, requeue=Requeue.BACKOFF
    ),
    VerifyResult.READY: VerifyTransition(LifecycleState.SUCCEEDED),
    VerifyResult.UPDATE_REQUIRED: VerifyTransition(
        LifecycleState.UPDATING,
        requires=frozenset({Permission.UPDATE}),
        denied_reason="update not permitted",
    ),
    VerifyResult.RECREATE_REQUIRED: VerifyTransition(
        LifecycleState.RECREATING,
        requires=frozenset({Permission.CREATE, Permission.DELETE}),
        denied_reason="recreate not permitted",
    ),
    VerifyResult.ERROR: VerifyTransition(LifecycleState.FAILED, requeue=Requeue.NONE),
    VerifyResult.DELETING: VerifyTransition(LifecycleState.TERMINATING),
}

# Delete issued while Terminating
TERMINATE_TRANSITIONS: Dict[DeleteResult, DeleteTransition] = {
    DeleteResult.SUCCEEDED: DeleteTransition(None, Requeue.NONE, finalize=True),
    DeleteResult.IN_PROGRESS: DeleteTransition(None, Requeue.BACKOFF),
    # Never drop the finalizer on error
    DeleteResult.ERROR: DeleteTransition(None, Requeue.BACKOFF),
}

# Delete issued while Recreating
RECREATE_TRANSITIONS: Dict[DeleteResult, DeleteTransition] = {
    DeleteResult.SUCCEEDED: DeleteTransition(LifecycleState.CREATING, Requeue.IMMEDIATE),
    DeleteResult.IN_PROGRESS: DeleteTransition(None, Requeue.BACKOFF),
    DeleteResult.ERROR: DeleteTransition(LifecycleState.FAILED, Requeue.NONE),
}


def ensure_total(table: Mapping, enum_type: Type[Enum], name: str) -> None:
    """
    Check that a table maps every member of an enum.

    Raises:
        TransitionTableError: Listing the unmapped members
    """
    missing = [member.name for member in enum_type if member not in table]
    if missing:
        raise TransitionTableError(
            f"Transition table {name} does not map: {', '.join(missing)}"
        )


ensure_total(APPLY_TRANSITIONS, ApplyResult, "APPLY_TRANSITIONS")
ensure_total(VERIFY_TRANSITIONS, VerifyResult, "VERIFY_TRANSITIONS")
ensure_total(TERMINATE_TRANSITIONS, DeleteResult, "TERMINATE_TRANSITIONS")
ensure_total(RECREATE_TRANSITIONS, DeleteResult, "RECREATE_TRANSITIONS")

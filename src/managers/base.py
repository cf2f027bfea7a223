"""
Resource Manager Base - Contract for per-kind external CRUD adapters.

A resource manager drives one external CRUD API (typically REST) for one
resource kind. Managers are supplied by the engine's consumer, registered by
kind at startup and never touched by the engine beyond these four calls.

Domain errors (the external system rejected the request) are *returned* as
``ERROR`` results with a message. Transient failures (network errors, 5xx
responses, timeouts) are *raised*; the engine retries them with backoff and
never moves a resource to Failed because of one.

All four operations must be idempotent: any of them may be retried after a
crash or timeout with the same input.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class TransientError(Exception):
    """A retryable failure talking to the external system."""


class ApplyResult(Enum):
    """Outcome of a Create or Update call."""

    AWAITING_VERIFICATION = "awaiting_verification"
    SUCCEEDED = "succeeded"
    ERROR = "error"


CreateResult = ApplyResult
UpdateResult = ApplyResult


class VerifyResult(Enum):
    """Outcome of a Verify call."""

    MISSING = "missing"
    UPDATE_REQUIRED = "update_required"
    RECREATE_REQUIRED = "recreate_required"
    IN_PROGRESS = "in_progress"
    READY = "ready"
    ERROR = "error"
    DELETING = "deleting"


class DeleteResult(Enum):
    """Outcome of a Delete call. Not-found must be reported as SUCCEEDED."""

    SUCCEEDED = "succeeded"
    IN_PROGRESS = "in_progress"
    ERROR = "error"


class DiffStrategy(Enum):
    """How a manager detects that the declared spec moved on."""

    # Manager compares against its own opaque status token
    TOKEN = "token"
    # Engine compares the spec against the last-applied-spec annotation
    LAST_APPLIED = "last_applied"


@dataclass
class ApplyResponse:
    """Response from create() / update()."""

    result: ApplyResult
    token: Any = None
    error: Optional[str] = None


@dataclass
class VerifyResponse:
    """Response from verify()."""

    result: VerifyResult
    token: Any = None
    error: Optional[str] = None


@dataclass
class DeleteResponse:
    """Response from delete()."""

    result: DeleteResult
    error: Optional[str] = None


class ResourceManager(ABC):
    """
    Abstract base class for resource managers.

    Subclasses implement create/update/verify/delete against one external
    CRUD API. The opaque token returned from create/update/verify is
    persisted by the engine and handed back to the next verify() unchanged.
    """

    @property
    @abstractmethod
    def kind(self) -> str:
        """Resource kind this manager handles (e.g., 'Database')."""
        pass

    @property
    @abstractmethod
    def version(self) -> str:
        """Manager version string."""
        pass

    @property
    def spec_schema(self) -> Optional[Dict[str, Any]]:
        """Optional JSON Schema that specs of this kind must satisfy."""
        return None

    @property
    def diff_strategy(self) -> DiffStrategy:
        return DiffStrategy.TOKEN

    @abstractmethod
    async def initialize(self, config: Dict[str, Any]) -> None:
        """
        Initialize the manager with configuration.

        Called once at startup, before the registry is frozen.

        Args:
            config: Manager-specific configuration dictionary
        """
        pass

    @abstractmethod
    async def create(self, spec: Dict[str, Any]) -> ApplyResponse:
        """
        Create the external resource described by spec.

        Must succeed (or report AWAITING_VERIFICATION) if the resource
        already exists in the desired shape.
        """
        pass

    @abstractmethod
    async def update(self, spec: Dict[str, Any]) -> ApplyResponse:
        """Bring the existing external resource in line with spec."""
        pass

    @abstractmethod
    async def verify(self, spec: Dict[str, Any], token: Any) -> VerifyResponse:
        """
        Observe the external resource and compare it with spec.

        Must be safe to call before any create(), in which case it
        returns MISSING.

        Args:
            spec: Desired state
            token: Opaque token from the previous create/update/verify,
                or None
        """
        pass

    @abstractmethod
    async def delete(self, spec: Dict[str, Any]) -> DeleteResponse:
        """
        Delete the external resource.

        An already-absent resource is a success, never an error.
        """
        pass

    async def close(self) -> None:
        """Release any connections held by the manager."""
        pass

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """
        Load manager-specific configuration from environment variables.

        Override this method in subclasses to define how the manager
        loads its configuration from the environment.

        Returns:
            Dictionary of configuration values for this manager.
        """
        return {}

"""
Manifest - Declarative record for one managed resource instance.

A manifest couples the user-owned desired state (spec) with the
engine-owned observed state (status), plus metadata used for access
policy, diffing, finalization and optimistic concurrency.
"""

import copy
import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional


class LifecycleState(Enum):
    """Lifecycle state of a managed resource. Exactly one holds at a time."""

    PENDING = "pending"
    CREATING = "creating"
    UPDATING = "updating"
    VERIFYING = "verifying"
    RECREATING = "recreating"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TERMINATING = "terminating"


@dataclass(frozen=True)
class ResourceRef:
    """Identity of a manifest: kind + namespace + name."""

    kind: str
    namespace: str
    name: str

    @property
    def key(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"

    @classmethod
    def parse(cls, key: str) -> "ResourceRef":
        """
        Parse a ``kind/namespace/name`` key.

        Raises:
            ValueError: If the key does not have exactly three segments
        """
        parts = key.split("/")
        if len(parts) != 3 or not all(parts):
            raise ValueError(f"Invalid resource key: {key!r}")
        return cls(kind=parts[0], namespace=parts[1], name=parts[2])

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind, "namespace": self.namespace, "name": self.name}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResourceRef":
        return cls(
            kind=data["kind"],
            namespace=data["namespace"],
            name=data["name"],
        )

    def __str__(self) -> str:
        return self.key


@dataclass
class Status:
    """Observed state, written only by the engine."""

    state: LifecycleState = LifecycleState.PENDING
    reason: str = ""
    opaque_token: Any = None
    observed_generation: int = 0
    last_transition_time: Optional[str] = None
    # Last time verify confirmed the external resource matches the spec
    last_verified_time: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "reason": self.reason,
            "opaqueToken": self.opaque_token,
            "observedGeneration": self.observed_generation,
            "lastTransitionTime": self.last_transition_time,
            "lastVerifiedTime": self.last_verified_time,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Status":
        if not data:
            return cls()
        return cls(
            state=LifecycleState(data.get("state", LifecycleState.PENDING.value)),
            reason=data.get("reason") or "",
            opaque_token=data.get("opaqueToken"),
            observed_generation=data.get("observedGeneration", 0),
            last_transition_time=data.get("lastTransitionTime"),
            last_verified_time=data.get("lastVerifiedTime"),
        )


@dataclass
class Meta:
    """Manifest metadata."""

    annotations: Dict[str, str] = field(default_factory=dict)
    deletion_requested: bool = False
    finalizers: List[str] = field(default_factory=list)
    generation: int = 1
    resource_version: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "annotations": dict(self.annotations),
            "deletionRequested": self.deletion_requested,
            "finalizers": list(self.finalizers),
            "generation": self.generation,
            "resourceVersion": self.resource_version,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Meta":
        if not data:
            return cls()
        return cls(
            annotations=dict(data.get("annotations") or {}),
            deletion_requested=bool(data.get("deletionRequested", False)),
            finalizers=list(data.get("finalizers") or []),
            generation=data.get("generation", 1),
            resource_version=data.get("resourceVersion", 1),
        )


@dataclass
class Manifest:
    """Declarative record for one managed resource instance."""

    ref: ResourceRef
    spec: Dict[str, Any] = field(default_factory=dict)
    status: Status = field(default_factory=Status)
    meta: Meta = field(default_factory=Meta)
    dependencies: List[ResourceRef] = field(default_factory=list)

    def __post_init__(self):
        self.dependencies = unique_refs(self.dependencies)

    @property
    def generation_changed(self) -> bool:
        """True when the spec moved on since the engine last settled it."""
        return self.meta.generation != self.status.observed_generation

    def working_copy(self) -> "Manifest":
        """Deep copy used by the engine for one reconcile pass."""
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ref": self.ref.to_dict(),
            "spec": copy.deepcopy(self.spec),
            "status": self.status.to_dict(),
            "metadata": self.meta.to_dict(),
            "dependencies": [dep.to_dict() for dep in self.dependencies],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Manifest":
        return cls(
            ref=ResourceRef.from_dict(data["ref"]),
            spec=copy.deepcopy(data.get("spec") or {}),
            status=Status.from_dict(data.get("status")),
            meta=Meta.from_dict(data.get("metadata")),
            dependencies=[
                ResourceRef.from_dict(dep) for dep in data.get("dependencies") or []
            ],
        )


def spec_hash(spec: Dict[str, Any]) -> str:
    """Calculate a hash of the resource specification for change detection."""
    spec_string = json.dumps(spec, sort_keys=True)
    return hashlib.sha256(spec_string.encode()).hexdigest()


def utc_now() -> str:
    """Timestamp format used for status transitions and events."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_time(value: str) -> datetime:
    """Parse a timestamp produced by utc_now()."""
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def unique_refs(refs: Iterable[ResourceRef]) -> List[ResourceRef]:
    """Ordered de-duplication: keep the first occurrence of each reference."""
    seen = set()
    unique = []
    for ref in refs:
        if ref not in seen:
            seen.add(ref)
            unique.append(ref)
    return unique

"""
Dependency Resolver - Gate reconciliation on the readiness of other manifests.

Only the lifecycle state of each referenced manifest is consulted; the
resolver never reaches into another resource's external system, which keeps
a single writer per external resource.
"""

import logging
from dataclasses import dataclass, field
from typing import List

from manifest import LifecycleState, Manifest, ResourceRef
from store import ManifestStore

logger = logging.getLogger(__name__)


@dataclass
class DependencyStatus:
    """Result of a dependency check."""

    ready: bool = True
    waiting_on: List[ResourceRef] = field(default_factory=list)

    def describe(self) -> str:
        if self.ready:
            return ""
        refs = ", ".join(ref.key for ref in self.waiting_on)
        return f"waiting on dependencies: {refs}"


class DependencyResolver:
    """Checks that every dependency of a manifest has Succeeded."""

    def __init__(self, store: ManifestStore):
        self.store = store

    async def check(self, manifest: Manifest) -> DependencyStatus:
        """
        Check the declared dependencies of a manifest.

        A dependency that does not exist is treated as not ready rather
        than as an error, so the dependent waits for it indefinitely.

        Args:
            manifest: The manifest whose dependencies to check

        Returns:
            DependencyStatus listing unsatisfied references in declaration order
        """
        waiting_on = []
        for ref in manifest.dependencies:
            state = await self.store.get_state(ref)
            if state is None:
                logger.debug(f"{manifest.ref}: dependency {ref} does not exist yet")
                waiting_on.append(ref)
            elif state != LifecycleState.SUCCEEDED:
                logger.debug(f"{manifest.ref}: dependency {ref} is {state.value}")
                waiting_on.append(ref)

        return DependencyStatus(ready=not waiting_on, waiting_on=waiting_on)

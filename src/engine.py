"""
Reconcile Engine - Drives one manifest toward its declared state per pass.

Similar to a Kubernetes controller's Reconcile(): load the manifest, decide
from (state, dependencies, permissions, manager result) what the next state
is, persist it, and tell the caller whether and when to run again.

Handlers may chain within a single pass (Pending -> Creating -> create,
Recreating -> delete -> Creating -> create, deletion -> Terminating ->
delete). Anything raised or timed out while talking to a resource manager
is transient: the pass keeps only the state it had already committed to
and is retried with backoff.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from backoff import Backoff
from config import EngineConfig
from dependencies import DependencyResolver
from diffing import record_last_applied, spec_differs_from_last_applied
from events import EventBus, EventType, ManifestEvent
from managers.base import DiffStrategy, ResourceManager, TransientError, VerifyResult
from managers.registry import ManagerRegistry, UnknownKindError
from manifest import LifecycleState, Manifest, ResourceRef, parse_time, utc_now
from permissions import Permission, PermissionParseError, PermissionSet, permissions_for
from store import ConflictError, ManifestNotFound, ManifestStore
from transitions import (
    APPLY_TRANSITIONS,
    RECREATE_TRANSITIONS,
    TERMINATE_TRANSITIONS,
    VERIFY_TRANSITIONS,
    Requeue,
)
from validation import validate_spec_against_schema

logger = logging.getLogger(__name__)


@dataclass
class ReconcileOutcome:
    """What the dispatcher should do with an identity after a pass."""

    requeue: bool = False
    requeue_after: float = 0.0
    error: Optional[str] = None

    @classmethod
    def done(cls) -> "ReconcileOutcome":
        return cls()


@dataclass(frozen=True)
class _Decision:
    requeue: Requeue = Requeue.NONE
    # Fixed delay overriding the backoff (dependency wait, drift interval)
    delay: Optional[float] = None
    # State changed; run the new state's handler in the same pass
    chain: bool = False


_CHAIN = _Decision(Requeue.IMMEDIATE, chain=True)
_SETTLED = _Decision(Requeue.NONE)


@dataclass
class _Pass:
    """Working state of one reconcile pass."""

    ref: ResourceRef
    original: Manifest
    manifest: Manifest
    manager: ResourceManager
    permissions: PermissionSet
    # Last point the pass committed to; restored on transient failure
    checkpoint: Manifest

    def commit(self) -> None:
        self.checkpoint = self.manifest.working_copy()


def _persisted_view(manifest: Manifest) -> Dict[str, Any]:
    return {
        "status": manifest.status.to_dict(),
        "annotations": manifest.meta.annotations,
        "finalizers": manifest.meta.finalizers,
    }


class ReconcileEngine:
    """
    The state machine that reconciles one resource identity at a time.

    The engine itself holds no per-resource locks; callers (the dispatcher)
    guarantee that two passes for the same identity never overlap.
    """

    def __init__(
        self,
        store: ManifestStore,
        registry: ManagerRegistry,
        config: Optional[EngineConfig] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.store = store
        self.registry = registry
        self.config = config or EngineConfig()
        self._event_bus = event_bus
        self.resolver = DependencyResolver(store)
        self.backoff = Backoff(
            base_delay=self.config.backoff_base_delay,
            max_delay=self.config.backoff_max_delay,
            jitter_factor=self.config.backoff_jitter_factor,
        )

        self._handlers: Dict[
            LifecycleState, Callable[[_Pass], Awaitable[_Decision]]
        ] = {
            LifecycleState.PENDING: self._handle_pending,
            LifecycleState.CREATING: self._handle_creating,
            LifecycleState.UPDATING: self._handle_updating,
            LifecycleState.VERIFYING: self._handle_verifying,
            LifecycleState.RECREATING: self._handle_recreating,
            LifecycleState.SUCCEEDED: self._handle_succeeded,
            LifecycleState.FAILED: self._handle_failed,
            LifecycleState.TERMINATING: self._handle_terminating,
        }

    @property
    def finalizer(self) -> str:
        return self.config.finalizer

    async def reconcile(self, ref: ResourceRef) -> ReconcileOutcome:
        """
        Run one reconcile pass for a resource identity.

        Args:
            ref: Identity of the manifest to reconcile

        Returns:
            ReconcileOutcome telling the caller whether and when to requeue
        """
        original = await self.store.get(ref)
        if original is None:
            logger.debug(f"{ref}: manifest not found, nothing to reconcile")
            self.backoff.reset(ref.key)
            return ReconcileOutcome.done()

        manifest = original.working_copy()

        try:
            manager = self.registry.get(ref.kind)
        except UnknownKindError as e:
            logger.debug(str(e))
            return await self._reject(
                original,
                manifest,
                f"no resource manager registered for kind '{ref.kind}'",
            )

        try:
            permissions = permissions_for(manifest, self.config.annotation_prefix)
        except PermissionParseError as e:
            return await self._reject(original, manifest, str(e))

        p = _Pass(
            ref=ref,
            original=original,
            manifest=manifest,
            manager=manager,
            permissions=permissions,
            checkpoint=manifest,
        )
        self._prepare(p)
        persisted = await self._persist_finalizer(p)
        if persisted is not None:
            return persisted
        p.commit()

        try:
            decision = await self._run_handlers(p)
        except Exception as e:
            return await self._transient_failure(p, e)

        return await self._finish(p, decision)

    # Pass preparation

    def _prepare(self, p: _Pass) -> None:
        """Deletion, generation and finalizer bookkeeping before any handler."""
        manifest = p.manifest
        state = manifest.status.state

        if manifest.meta.deletion_requested:
            if state != LifecycleState.TERMINATING:
                logger.info(f"{p.ref}: deletion requested while {state.value}")
                self._set_state(p, LifecycleState.TERMINATING)
            return

        if manifest.generation_changed:
            if state == LifecycleState.SUCCEEDED:
                logger.info(
                    f"{p.ref}: generation {manifest.meta.generation} not yet "
                    f"observed, re-verifying"
                )
                self._set_state(p, LifecycleState.VERIFYING)
            elif state == LifecycleState.FAILED or (
                state == LifecycleState.TERMINATING
                and self.finalizer not in manifest.meta.finalizers
            ):
                logger.info(
                    f"{p.ref}: generation {manifest.meta.generation} restarts "
                    f"reconciliation from {state.value}"
                )
                self._set_state(p, LifecycleState.PENDING)

        if (
            manifest.status.state != LifecycleState.TERMINATING
            and self.finalizer not in manifest.meta.finalizers
        ):
            manifest.meta.finalizers.append(self.finalizer)

    async def _persist_finalizer(self, p: _Pass) -> Optional[ReconcileOutcome]:
        """
        Store a newly added finalizer before any manager call runs.

        Until the finalizer is stored, a deletion request removes the manifest
        outright and an external resource created in this pass would leak.
        """
        if (
            self.finalizer in p.original.meta.finalizers
            or self.finalizer not in p.manifest.meta.finalizers
        ):
            return None

        staged = p.original.working_copy()
        staged.meta.finalizers.append(self.finalizer)
        persisted = await self._persist(p.original, staged)
        if persisted is not None:
            return persisted

        logger.info(f"{p.ref}: finalizer {self.finalizer} added")
        # The stored manifest now matches staged, including its new version
        p.original = staged
        return None

    async def _run_handlers(self, p: _Pass) -> _Decision:
        # Each state is entered at most once per pass
        for _ in LifecycleState:
            handler = self._handlers[p.manifest.status.state]
            decision = await handler(p)
            if not decision.chain:
                return decision
            p.commit()
        return _Decision(Requeue.IMMEDIATE)

    # State helpers

    def _set_state(self, p: _Pass, state: LifecycleState, reason: str = "") -> None:
        status = p.manifest.status
        if status.state != state:
            logger.info(f"{p.ref}: {status.state.value} -> {state.value}")
            status.state = state
            status.last_transition_time = utc_now()
        status.reason = reason
        if state in (LifecycleState.SUCCEEDED, LifecycleState.FAILED):
            status.observed_generation = p.manifest.meta.generation

    def _fail(self, p: _Pass, reason: str) -> _Decision:
        logger.error(f"{p.ref}: failed: {reason}")
        self._set_state(p, LifecycleState.FAILED, reason)
        return _SETTLED

    def _drop_finalizer(self, p: _Pass) -> None:
        if self.finalizer in p.manifest.meta.finalizers:
            p.manifest.meta.finalizers.remove(self.finalizer)
            logger.info(f"{p.ref}: finalizer {self.finalizer} removed")
        p.manifest.status.reason = ""
        p.manifest.status.observed_generation = p.manifest.meta.generation

    def _drift_check_due_in(self, manifest: Manifest) -> float:
        """Seconds until the next drift check; 0 when one is due now."""
        verified = manifest.status.last_verified_time
        if not verified:
            return 0.0
        elapsed = (datetime.now(timezone.utc) - parse_time(verified)).total_seconds()
        return max(0.0, self.config.drift_check_interval - elapsed)

    def _settled(self) -> _Decision:
        """Decision for a resource that reached Succeeded."""
        if self.config.drift_check_interval > 0:
            return _Decision(delay=self.config.drift_check_interval)
        return _SETTLED

    async def _call(self, p: _Pass, operation: str, coro: Awaitable) -> Any:
        """Run a resource manager call under the operation timeout."""
        logger.debug(f"{p.ref}: calling {p.manager.kind}.{operation}")
        try:
            return await asyncio.wait_for(coro, timeout=self.config.operation_timeout)
        except asyncio.TimeoutError:
            raise asyncio.TimeoutError(
                f"{operation} timed out after {self.config.operation_timeout}s"
            ) from None

    def _verify_result(self, p: _Pass, result: VerifyResult) -> VerifyResult:
        """Apply engine-side diffing for managers that opt into it."""
        if (
            result == VerifyResult.READY
            and p.manager.diff_strategy == DiffStrategy.LAST_APPLIED
            and spec_differs_from_last_applied(p.manifest, self.config.annotation_prefix)
        ):
            logger.info(f"{p.ref}: spec differs from last applied spec")
            return VerifyResult.UPDATE_REQUIRED
        return result

    # State handlers

    async def _handle_pending(self, p: _Pass) -> _Decision:
        dependencies = await self.resolver.check(p.manifest)
        if not dependencies.ready:
            reason = dependencies.describe()
            if p.manifest.status.reason != reason:
                logger.info(f"{p.ref}: {reason}")
            p.manifest.status.reason = reason
            return _Decision(delay=self.config.dependency_wait)

        if not p.permissions.allows(Permission.CREATE):
            return self._fail(p, "create not permitted")

        self._set_state(p, LifecycleState.CREATING)
        return _CHAIN

    async def _handle_creating(self, p: _Pass) -> _Decision:
        return await self._apply(p, "create", Permission.CREATE, p.manager.create)

    async def _handle_updating(self, p: _Pass) -> _Decision:
        return await self._apply(p, "update", Permission.UPDATE, p.manager.update)

    async def _apply(
        self,
        p: _Pass,
        operation: str,
        permission: Permission,
        call: Callable[[Dict[str, Any]], Awaitable],
    ) -> _Decision:
        """Shared Create/Update path: validate, gate, call, map the result."""
        schema = p.manager.spec_schema
        if schema is not None:
            is_valid, error = validate_spec_against_schema(p.manifest.spec, schema)
            if not is_valid:
                return self._fail(p, f"spec validation failed: {error}")

        if not p.permissions.allows(permission):
            return self._fail(p, f"{operation} not permitted")

        response = await self._call(p, operation, call(p.manifest.spec))
        target = APPLY_TRANSITIONS[response.result]

        if target == LifecycleState.FAILED:
            return self._fail(p, response.error or f"{operation} failed")

        p.manifest.status.opaque_token = response.token
        record_last_applied(p.manifest, self.config.annotation_prefix)
        self._set_state(p, target)
        return _Decision(Requeue.IMMEDIATE)

    async def _handle_verifying(self, p: _Pass) -> _Decision:
        response = await self._call(
            p,
            "verify",
            p.manager.verify(p.manifest.spec, p.manifest.status.opaque_token),
        )
        p.manifest.status.opaque_token = response.token

        result = self._verify_result(p, response.result)
        transition = VERIFY_TRANSITIONS[result]

        if p.permissions.missing(*transition.requires):
            return self._fail(p, transition.denied_reason)

        if transition.target == LifecycleState.FAILED:
            return self._fail(p, response.error or "verify failed")

        if transition.target == LifecycleState.SUCCEEDED:
            p.manifest.status.last_verified_time = utc_now()
            self._set_state(p, LifecycleState.SUCCEEDED)
            return self._settled()

        if result == VerifyResult.IN_PROGRESS:
            logger.debug(f"{p.ref}: external resource still in progress")

        self._set_state(p, transition.target)
        return _Decision(transition.requeue)

    async def _handle_recreating(self, p: _Pass) -> _Decision:
        if p.permissions.missing(Permission.CREATE, Permission.DELETE):
            return self._fail(p, "recreate not permitted")

        response = await self._call(p, "delete", p.manager.delete(p.manifest.spec))
        transition = RECREATE_TRANSITIONS[response.result]

        if transition.target is None:
            logger.debug(f"{p.ref}: delete before recreate still in progress")
            return _Decision(transition.requeue)

        if transition.target == LifecycleState.FAILED:
            return self._fail(p, response.error or "delete failed during recreate")

        # The old resource is gone; the token described it
        p.manifest.status.opaque_token = None
        self._set_state(p, transition.target)
        return _CHAIN

    async def _handle_succeeded(self, p: _Pass) -> _Decision:
        if self.config.drift_check_interval <= 0:
            return _SETTLED

        due_in = self._drift_check_due_in(p.manifest)
        if due_in > 0:
            return _Decision(delay=due_in)

        response = await self._call(
            p,
            "verify",
            p.manager.verify(p.manifest.spec, p.manifest.status.opaque_token),
        )
        p.manifest.status.opaque_token = response.token

        result = self._verify_result(p, response.result)
        if result == VerifyResult.READY:
            p.manifest.status.last_verified_time = utc_now()
            return self._settled()

        logger.info(f"{p.ref}: drift detected ({result.value}), re-verifying")
        self._set_state(p, LifecycleState.VERIFYING)
        return _Decision(Requeue.IMMEDIATE)

    async def _handle_failed(self, p: _Pass) -> _Decision:
        return _SETTLED

    async def _handle_terminating(self, p: _Pass) -> _Decision:
        if self.finalizer not in p.manifest.meta.finalizers:
            # Cleanup already done
            return _SETTLED

        if not p.permissions.allows(Permission.DELETE):
            logger.info(f"{p.ref}: delete not permitted, leaving resource unmanaged")
            self._drop_finalizer(p)
            return _SETTLED

        response = await self._call(p, "delete", p.manager.delete(p.manifest.spec))
        transition = TERMINATE_TRANSITIONS[response.result]

        if transition.finalize:
            self._drop_finalizer(p)
        elif response.error:
            logger.warning(f"{p.ref}: delete error: {response.error}")
            p.manifest.status.reason = response.error
        return _Decision(transition.requeue)

    # Write-back and outcome

    async def _reject(
        self, original: Manifest, manifest: Manifest, reason: str
    ) -> ReconcileOutcome:
        """Handle a manifest no manager can act on (unknown kind, bad policy)."""
        if manifest.meta.deletion_requested and self.finalizer in manifest.meta.finalizers:
            logger.warning(
                f"{manifest.ref}: {reason}; releasing finalizer without cleanup"
            )
            manifest.meta.finalizers.remove(self.finalizer)
        else:
            logger.error(f"{manifest.ref}: failed: {reason}")
            status = manifest.status
            if status.state != LifecycleState.FAILED:
                status.state = LifecycleState.FAILED
                status.last_transition_time = utc_now()
            status.reason = reason
            status.observed_generation = manifest.meta.generation

        persisted = await self._persist(original, manifest)
        if persisted is not None:
            return persisted
        return ReconcileOutcome.done()

    async def _persist(
        self, original: Manifest, manifest: Manifest
    ) -> Optional[ReconcileOutcome]:
        """
        Write the working copy back if anything changed.

        Returns:
            An outcome that overrides the pass's own when the write did not
            land (manifest gone or changed underneath), else None.
        """
        if _persisted_view(manifest) == _persisted_view(original):
            return None

        ref = manifest.ref
        try:
            exists = await self.store.write_back(
                manifest, expected_version=original.meta.resource_version
            )
        except ManifestNotFound:
            logger.info(f"{ref}: manifest disappeared during reconcile")
            self.backoff.reset(ref.key)
            return ReconcileOutcome.done()
        except ConflictError as e:
            delay = self.backoff.next_delay(ref.key)
            logger.info(f"{e}; requeueing in {delay:.1f}s")
            return ReconcileOutcome(requeue=True, requeue_after=delay)

        if not exists:
            logger.info(f"{ref}: finalized and removed")
            self.backoff.reset(ref.key)
            return ReconcileOutcome.done()

        if manifest.status.state != original.status.state and self._event_bus:
            await self._event_bus.publish(
                ManifestEvent.from_manifest(EventType.RECONCILED, manifest)
            )
        return None

    async def _finish(self, p: _Pass, decision: _Decision) -> ReconcileOutcome:
        persisted = await self._persist(p.original, p.manifest)
        if persisted is not None:
            return persisted

        key = p.ref.key
        if p.manifest.status.state != p.original.status.state:
            self.backoff.reset(key)

        if decision.delay is not None:
            logger.debug(f"{p.ref}: requeue in {decision.delay}s")
            return ReconcileOutcome(requeue=True, requeue_after=decision.delay)
        if decision.requeue == Requeue.IMMEDIATE:
            return ReconcileOutcome(requeue=True)
        if decision.requeue == Requeue.BACKOFF:
            delay = self.backoff.next_delay(key)
            logger.debug(f"{p.ref}: requeue with backoff in {delay:.1f}s")
            return ReconcileOutcome(
                requeue=True, requeue_after=delay, error=p.manifest.status.reason or None
            )
        return ReconcileOutcome.done()

    async def _transient_failure(self, p: _Pass, error: Exception) -> ReconcileOutcome:
        """Keep only committed progress and retry with backoff."""
        message = str(error) or type(error).__name__
        logger.warning(
            f"{p.ref}: transient error in {p.checkpoint.status.state.value}: {message}",
            exc_info=not isinstance(error, (TransientError, asyncio.TimeoutError)),
        )

        persisted = await self._persist(p.original, p.checkpoint)
        if persisted is not None:
            return persisted

        if p.checkpoint.status.state != p.original.status.state:
            self.backoff.reset(p.ref.key)
        delay = self.backoff.next_delay(p.ref.key)
        return ReconcileOutcome(requeue=True, requeue_after=delay, error=message)

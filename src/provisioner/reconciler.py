"""Resource reconciliation: per-instance state machine and pass engine.

This module implements the reconciliation pattern:
1. Build the dependency graph and reject cycles before any remote call
2. Delete instances no longer declared, dependents first
3. Create, resume or update declared instances, dependencies first
4. Poll asynchronously provisioned objects until they are terminal
5. Repeat on interval until a pass makes no change

STATE MACHINE (one instance):
- No desired state, remote id known: Delete (NotFound counts as success)
- Non-terminal status or errored with an id: resume by polling
- No remote id: gate, resolve references, validate, Create
- Ready: diff desired against observed; Update on drift, nothing otherwise

CONCURRENCY:
- Independent instances in the same wave run concurrently, bounded by a semaphore
- Every instance has its own lock: at most one remote call in flight per instance
- Cancelling a pass leaves instances at their last non-terminal status
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .adapter import ClientProvider, RemoteClient, error_kind
from .config import Config, ReconciliationMode
from .dependency import DependencyGate, DependencyGraph
from .differ import DriftDetector
from .errors import (
    DependencyCycle,
    DependencyError,
    DependencyNotReady,
    ImmutableFieldChanged,
    InvalidDesiredState,
    NotFoundError,
    ProvisioningFailed,
    ProvisioningTimeout,
    ReconcileError,
)
from .models import (
    IN_FLIGHT_STATUSES,
    ErrorKind,
    OperationResult,
    ResourceInstance,
    ResourceStatus,
)
from .poller import ConvergencePoller, PollPolicy
from .provenance import PassProvenance, ProvenanceLogger, get_provenance_logger
from .references import ReferenceResolver
from .resources import ResourceSchema, get_schema

logger = logging.getLogger(__name__)


class Action(str, Enum):
    """What reconciliation did (or, in plan mode, would do) to an instance."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    RESUME = "resume"  # Polled an in-flight operation to completion
    WAIT = "wait"  # Deferred until other instances progress
    NO_CHANGE = "no_change"


@dataclass
class ReconcileResult:
    """Result of reconciling one instance once."""

    key: str
    resource_id: str = ""
    action: Action = Action.NO_CHANGE
    status: ResourceStatus = ResourceStatus.UNMANAGED
    observed: dict[str, Any] | None = None
    changed_fields: list[str] = field(default_factory=list)
    waiting_on: list[str] = field(default_factory=list)
    error: ReconcileError | None = None
    error_kind: ErrorKind = ErrorKind.NONE

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def is_pending(self) -> bool:
        """Blocked or still converging; expected to progress on a later pass."""
        if self.action == Action.WAIT:
            return True
        if isinstance(self.error, DependencyNotReady | ProvisioningTimeout):
            return self.status != ResourceStatus.ERRORED
        return False


class ResourceReconciler:
    """Drives one instance towards its desired state.

    Args:
        clients: Provides the RemoteClient for an instance.
        poller: Convergence poller for asynchronous operations.
        gate: Dependency gate.
        detector: Drift detector.
        mode: Plan reports actions without calling the remote API.
        refresh_before_diff: Read a ready instance before diffing it.
        max_provisioning_timeouts: Consecutive timed-out passes tolerated
            before the instance is marked errored; None for unbounded.
    """

    def __init__(
        self,
        clients: ClientProvider,
        *,
        poller: ConvergencePoller | None = None,
        gate: DependencyGate | None = None,
        detector: DriftDetector | None = None,
        mode: ReconciliationMode = ReconciliationMode.APPLY,
        refresh_before_diff: bool = False,
        max_provisioning_timeouts: int | None = None,
    ) -> None:
        self._clients = clients
        self._poller = poller or ConvergencePoller()
        self._gate = gate or DependencyGate()
        self._detector = detector or DriftDetector()
        self._mode = mode
        self._refresh_before_diff = refresh_before_diff
        self._max_provisioning_timeouts = max_provisioning_timeouts

    @property
    def is_plan(self) -> bool:
        return self._mode == ReconciliationMode.PLAN

    async def reconcile(
        self,
        instance: ResourceInstance,
        instances: Mapping[str, ResourceInstance],
    ) -> ReconcileResult:
        """Reconcile one instance.

        Errors are recorded on the result and on the instance, never raised,
        so that one failing instance does not stop unrelated ones. Only
        cancellation propagates.
        """
        result = ReconcileResult(key=instance.key, resource_id=instance.id)
        schema = get_schema(instance.resource_type)

        try:
            await self._reconcile(schema, instance, instances, result)
        except ReconcileError as e:
            e.bind(instance.resource_type.value, instance.id)
            result.error = e
            result.error_kind = error_kind(e)
            self._record_error(instance, e)
        else:
            if not self.is_plan:
                instance.last_error = None

        result.status = instance.status
        result.resource_id = instance.id or result.resource_id
        result.observed = copy.deepcopy(instance.observed)
        return result

    def reject_cycle(self, instance: ResourceInstance, members: list[str]) -> ReconcileResult:
        """Record that ``instance`` sits on or behind a dependency cycle.

        No remote call is made; the instance keeps its status.
        """
        error = DependencyCycle(
            members, resource_type=instance.resource_type.value, instance_id=instance.id
        )
        self._record_error(instance, error)
        return ReconcileResult(
            key=instance.key,
            resource_id=instance.id,
            status=instance.status,
            observed=copy.deepcopy(instance.observed),
            error=error,
        )

    async def _reconcile(
        self,
        schema: ResourceSchema,
        instance: ResourceInstance,
        instances: Mapping[str, ResourceInstance],
        result: ReconcileResult,
    ) -> None:
        if instance.desired is None:
            await self._delete(schema, instance, instances, result)
            return

        if instance.exists_remotely and (
            instance.status in IN_FLIGHT_STATUSES or instance.status == ResourceStatus.ERRORED
        ):
            if instance.status == ResourceStatus.DELETING:
                # Declared again while a delete was converging
                await self._delete(schema, instance, instances, result)
                return
            result.action = Action.RESUME
            if self.is_plan:
                return
            await self._resume(schema, instance)

        if not instance.exists_remotely:
            await self._create(schema, instance, instances, result)
            return

        await self._update(schema, instance, instances, result)

    # =========================================================================
    # Operations
    # =========================================================================

    async def _create(
        self,
        schema: ResourceSchema,
        instance: ResourceInstance,
        instances: Mapping[str, ResourceInstance],
        result: ReconcileResult,
    ) -> None:
        result.action = Action.CREATE
        if self.is_plan:
            # References to instances not created yet cannot be resolved in a plan
            return

        self._gate.authorize(instance, instances)
        attributes = self._prepare(schema, instance, instances)
        client = self._clients.for_instance(instance, attributes)

        instance.status = ResourceStatus.CREATING
        try:
            created = await client.create(attributes)
        except ReconcileError:
            # Nothing confirmed on the remote side, keep no id
            instance.status = ResourceStatus.ERRORED
            instance.id = ""
            raise
        except BaseException:
            # Cancelled mid-request: the remote object may or may not exist
            instance.status = ResourceStatus.ERRORED
            instance.id = ""
            instance.last_error = "create interrupted, outcome unknown"
            logger.warning(
                "Create interrupted, remote outcome unknown",
                extra={"instance": instance.key},
            )
            raise

        instance.id = created.resource_id
        instance.observed = self._with_carried(schema, created.payload, attributes)
        logger.info(
            "Resource created",
            extra={
                "instance": instance.key,
                "resource_id": instance.id,
                "remote_status": created.remote_status,
            },
        )
        await self._settle(schema, instance, client, created)

    async def _update(
        self,
        schema: ResourceSchema,
        instance: ResourceInstance,
        instances: Mapping[str, ResourceInstance],
        result: ReconcileResult,
    ) -> None:
        self._gate.authorize(instance, instances)
        attributes = self._prepare(schema, instance, instances)
        client = self._clients.for_instance(instance, attributes)

        if self._refresh_before_diff and not self.is_plan:
            if not await self._refresh(schema, instance, client):
                await self._create(schema, instance, instances, result)
                return

        diff = self._detector.diff(schema, attributes, instance.observed)
        if diff.immutable_violations:
            # Configuration error; the remote API is never called
            result.changed_fields = diff.changed_fields
            raise ImmutableFieldChanged(
                diff.immutable_violations,
                resource_type=schema.resource_type.value,
                instance_id=instance.id,
            )
        if not diff.has_changes:
            if result.action != Action.RESUME:
                result.action = Action.NO_CHANGE
            return

        result.action = Action.UPDATE
        result.changed_fields = diff.changed_fields
        if self.is_plan:
            return

        instance.status = ResourceStatus.UPDATING
        try:
            updated = await client.update(instance.id, attributes)
        except NotFoundError:
            logger.warning(
                "Resource vanished before update, will re-create",
                extra={"instance": instance.key, "resource_id": instance.id},
            )
            self._forget(instance)
            raise
        except ReconcileError:
            instance.status = ResourceStatus.ERRORED
            raise

        instance.observed = self._with_carried(
            schema, updated.payload, attributes, instance.observed
        )
        logger.info(
            "Resource updated",
            extra={
                "instance": instance.key,
                "resource_id": instance.id,
                "changed_fields": diff.changed_fields,
            },
        )
        await self._settle(schema, instance, client, updated)

    async def _delete(
        self,
        schema: ResourceSchema,
        instance: ResourceInstance,
        instances: Mapping[str, ResourceInstance],
        result: ReconcileResult,
    ) -> None:
        if not instance.exists_remotely:
            self._forget(instance)
            return

        result.action = Action.DELETE
        waiting_on = self._gate.blocking_dependents(instance, instances)
        if waiting_on:
            result.action = Action.WAIT
            result.waiting_on = waiting_on
            return
        if self.is_plan:
            return

        client = self._clients.for_instance(instance)
        instance.status = ResourceStatus.DELETING
        try:
            await client.delete(instance.id)
        except NotFoundError:
            logger.info(
                "Resource already absent on delete",
                extra={"instance": instance.key, "resource_id": instance.id},
            )
        except ReconcileError:
            instance.status = ResourceStatus.ERRORED
            raise
        else:
            if schema.await_deletion:
                # On timeout the instance stays DELETING for the next pass
                await self._poller.poll_until_gone(
                    client.read, schema.resource_type, instance.id
                )

        logger.info(
            "Resource deleted",
            extra={"instance": instance.key, "resource_id": instance.id},
        )
        self._forget(instance)

    async def _resume(self, schema: ResourceSchema, instance: ResourceInstance) -> None:
        client = self._clients.for_instance(instance)
        logger.info(
            "Resuming in-flight resource",
            extra={
                "instance": instance.key,
                "resource_id": instance.id,
                "status": instance.status.value,
            },
        )
        await self._converge(schema, instance, client)

    async def _refresh(
        self, schema: ResourceSchema, instance: ResourceInstance, client: RemoteClient
    ) -> bool:
        """Re-read observed state. False if the remote object is gone."""
        try:
            current = await client.read(instance.id)
        except NotFoundError:
            logger.warning(
                "Resource missing on refresh, will re-create",
                extra={"instance": instance.key, "resource_id": instance.id},
            )
            self._forget(instance)
            return False
        instance.observed = self._with_carried(schema, current.payload, instance.observed)
        return True

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _settle(
        self,
        schema: ResourceSchema,
        instance: ResourceInstance,
        client: RemoteClient,
        outcome: OperationResult,
    ) -> None:
        """Set status from a Create/Update response, polling if non-terminal."""
        remote_status = outcome.remote_status.upper()
        if remote_status in schema.failure_statuses:
            instance.status = ResourceStatus.ERRORED
            raise ProvisioningFailed(
                outcome.message or f"remote status {remote_status}",
                remote_status=remote_status,
                resource_type=schema.resource_type.value,
                instance_id=instance.id,
            )
        if remote_status in schema.ready_statuses:
            instance.status = ResourceStatus.READY
            instance.consecutive_timeouts = 0
            return

        if instance.status == ResourceStatus.CREATING:
            instance.status = ResourceStatus.PROVISIONING
        await self._converge(schema, instance, client)

    async def _converge(
        self, schema: ResourceSchema, instance: ResourceInstance, client: RemoteClient
    ) -> None:
        try:
            final = await self._poller.poll_until_terminal(
                client.read,
                schema.resource_type,
                instance.id,
                schema.ready_statuses,
                schema.failure_statuses,
            )
        except ProvisioningFailed:
            instance.status = ResourceStatus.ERRORED
            raise

        # Observed is the terminal Read, plus values Read never returns
        instance.observed = self._with_carried(schema, final.payload, instance.observed)
        instance.status = ResourceStatus.READY
        instance.consecutive_timeouts = 0

    def _prepare(
        self,
        schema: ResourceSchema,
        instance: ResourceInstance,
        instances: Mapping[str, ResourceInstance],
    ) -> dict[str, Any]:
        """Resolve references and validate desired attributes."""
        resolved = ReferenceResolver(instances).resolve(instance.desired, owner=instance)
        return schema.validate(resolved, instance.id)

    @staticmethod
    def _with_carried(
        schema: ResourceSchema,
        payload: dict[str, Any],
        *sources: dict[str, Any] | None,
    ) -> dict[str, Any]:
        """Copy of ``payload`` with carried fields filled from ``sources`` in order."""
        observed = copy.deepcopy(payload)
        for name in schema.carried_fields:
            if observed.get(name) is not None:
                continue
            for source in sources:
                if source and source.get(name) is not None:
                    observed[name] = copy.deepcopy(source[name])
                    break
        return observed

    @staticmethod
    def _forget(instance: ResourceInstance) -> None:
        """Drop remote identity after the object is confirmed gone."""
        instance.id = ""
        instance.observed = None
        instance.consecutive_timeouts = 0
        instance.status = (
            ResourceStatus.UNMANAGED if instance.is_managed else ResourceStatus.DELETED
        )

    def _record_error(self, instance: ResourceInstance, error: ReconcileError) -> None:
        if self.is_plan:
            logger.warning(
                "Cannot plan resource",
                extra={"instance": instance.key, "error": str(error)},
            )
            return

        instance.last_error = str(error)
        match error:
            case ProvisioningTimeout():
                instance.consecutive_timeouts += 1
                limit = self._max_provisioning_timeouts
                if limit is not None and instance.consecutive_timeouts > limit:
                    instance.status = ResourceStatus.ERRORED
                    logger.error(
                        "Provisioning timed out too many times",
                        extra={
                            "instance": instance.key,
                            "consecutive_timeouts": instance.consecutive_timeouts,
                            "limit": limit,
                        },
                    )
                    return
                logger.warning(
                    "Provisioning timed out, will resume next pass",
                    extra={
                        "instance": instance.key,
                        "status": instance.status.value,
                        "consecutive_timeouts": instance.consecutive_timeouts,
                    },
                )
            case DependencyCycle():
                logger.error(
                    "Resource is on or behind a dependency cycle",
                    extra={"instance": instance.key, "members": error.members},
                )
            case DependencyError():
                logger.info(
                    "Resource blocked by dependencies",
                    extra={"instance": instance.key, "reason": str(error)},
                )
            case ImmutableFieldChanged():
                logger.error(
                    "Immutable field change rejected",
                    extra={"instance": instance.key, "fields": sorted(error.fields)},
                )
            case InvalidDesiredState():
                if not instance.exists_remotely:
                    instance.status = ResourceStatus.ERRORED
                logger.error(
                    "Invalid desired state",
                    extra={"instance": instance.key, "error": str(error)},
                )
            case _:
                logger.error(
                    "Reconciliation failed",
                    extra={
                        "instance": instance.key,
                        "error": str(error),
                        "error_type": type(error).__name__,
                        "status": instance.status.value,
                    },
                )


@dataclass
class PassResult:
    """Result of one reconciliation pass over all instances."""

    pass_number: int
    mode: ReconciliationMode = ReconciliationMode.APPLY
    results: dict[str, ReconcileResult] = field(default_factory=dict)
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def converged(self) -> bool:
        """True when the pass neither changed nor wants to change anything."""
        return all(
            r.action == Action.NO_CHANGE and r.error is None for r in self.results.values()
        )

    @property
    def errors(self) -> dict[str, ReconcileError]:
        return {key: r.error for key, r in self.results.items() if r.error is not None}

    @property
    def failed(self) -> dict[str, ReconcileResult]:
        return {
            key: r for key, r in self.results.items() if r.error is not None and not r.is_pending
        }


class Reconciler:
    """Reconciles a set of instances in dependency order, pass after pass."""

    def __init__(
        self,
        config: Config,
        clients: ClientProvider,
        *,
        poller: ConvergencePoller | None = None,
        gate: DependencyGate | None = None,
        detector: DriftDetector | None = None,
        provenance_logger: ProvenanceLogger | None = None,
        spec_file_hash: str = "",
    ) -> None:
        self._config = config
        self._resource_reconciler = ResourceReconciler(
            clients,
            poller=poller or ConvergencePoller(PollPolicy.from_config(config)),
            gate=gate,
            detector=detector,
            mode=config.mode,
            refresh_before_diff=config.refresh_before_diff,
            max_provisioning_timeouts=config.max_provisioning_timeouts,
        )
        self._provenance_logger = provenance_logger or get_provenance_logger()
        self._spec_file_hash = spec_file_hash
        self._locks: dict[str, asyncio.Lock] = {}
        self._shutdown_event = asyncio.Event()
        self._pass_number = 0

    def shutdown(self) -> None:
        """Signal the run loop to stop after the current pass."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    async def reconcile_pass(self, instances: dict[str, ResourceInstance]) -> PassResult:
        """Run one pass over ``instances``, dropping those deleted.

        Instances on or behind a dependency cycle get a DependencyCycle
        result without any remote call; the rest are reconciled in waves.
        """
        graph = DependencyGraph.from_instances(instances)
        waves = [[key for key in wave if key in instances] for wave in graph.waves()]
        self._pass_number += 1
        result = PassResult(pass_number=self._pass_number, mode=self._config.mode)
        started = time.monotonic()
        semaphore = asyncio.Semaphore(self._config.max_parallel_operations)

        for key, members in sorted(graph.blocked_by_cycles().items()):
            if key in instances:
                result.results[key] = self._resource_reconciler.reject_cycle(
                    instances[key], members
                )

        async def reconcile_one(key: str) -> None:
            lock = self._locks.setdefault(key, asyncio.Lock())
            async with semaphore, lock:
                result.results[key] = await self._resource_reconciler.reconcile(
                    instances[key], instances
                )

        # Deletes go dependents first, everything else dependencies first
        for wave in reversed(waves):
            keys = [key for key in wave if not instances[key].is_managed]
            if keys:
                await asyncio.gather(*(reconcile_one(key) for key in keys))
        for wave in waves:
            keys = [key for key in wave if instances[key].is_managed]
            if keys:
                await asyncio.gather(*(reconcile_one(key) for key in keys))

        for key in [k for k, i in instances.items() if i.status == ResourceStatus.DELETED]:
            del instances[key]
            self._locks.pop(key, None)

        result.end_time = datetime.now(UTC)
        self._log_pass(result, time.monotonic() - started)
        return result

    async def run(
        self,
        instances: dict[str, ResourceInstance],
        on_pass: Callable[[PassResult], None] | None = None,
    ) -> PassResult | None:
        """Run passes until converged, out of passes, or shut down.

        Args:
            instances: Tracked instances; updated in place.
            on_pass: Called after every pass (e.g. to persist state).

        Returns:
            The last PassResult, or None if shut down before the first pass.
        """
        logger.info(
            "Starting reconciler",
            extra={
                "mode": self._config.mode.value,
                "instances": len(instances),
                "interval_seconds": self._config.reconcile_interval_seconds,
                "max_passes": self._config.max_passes,
            },
        )

        last: PassResult | None = None
        passes = 0
        while not self._shutdown_event.is_set():
            last = await self.reconcile_pass(instances)
            passes += 1
            if on_pass is not None:
                on_pass(last)

            if last.converged:
                logger.info("Converged", extra={"passes": passes})
                break
            if self._config.mode == ReconciliationMode.PLAN:
                break
            if passes >= self._config.max_passes:
                logger.warning(
                    "Stopping without convergence",
                    extra={"passes": passes, "pending": sorted(last.errors)},
                )
                break

            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self._config.reconcile_interval_seconds,
                )
            except TimeoutError:
                pass

        return last

    def _log_pass(self, result: PassResult, duration: float) -> None:
        provenance = self._provenance_logger.create_provenance(
            mode=result.mode.value,
            pass_number=result.pass_number,
            spec_file_hash=self._spec_file_hash,
        )
        provenance.duration_seconds = duration
        provenance.converged = result.converged
        self._count(provenance, result)
        self._provenance_logger.log_provenance(provenance)

    def _count(self, provenance: PassProvenance, result: PassResult) -> None:
        summary = provenance.change_summary
        for key, outcome in result.results.items():
            if outcome.error is not None:
                provenance.errors.append(str(outcome.error))
                if outcome.is_pending:
                    summary.pending += 1
                else:
                    summary.failed += 1
                continue

            match outcome.action:
                case Action.CREATE:
                    summary.created += 1
                case Action.UPDATE:
                    summary.updated += 1
                case Action.DELETE:
                    summary.deleted += 1
                case Action.WAIT:
                    summary.pending += 1
                case _:
                    summary.unchanged += 1

            if outcome.action in (Action.CREATE, Action.UPDATE, Action.DELETE):
                self._provenance_logger.log_change_detail(
                    provenance,
                    instance_key=key,
                    resource_id=outcome.resource_id,
                    change_type=outcome.action.value,
                    changed_fields=outcome.changed_fields,
                )

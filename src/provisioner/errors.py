"""Error taxonomy for resource reconciliation.

Every error carries the resource type and the remote instance id so that a
single line in the log identifies what failed and where. Messages returned by
the remote API are kept verbatim.

PROPAGATION:
- TransientNetworkError is retried inside the adapter and the poller
- Everything else propagates to the caller of reconcile() for one instance
- No error aborts reconciliation of unrelated instances
"""

from __future__ import annotations

NOT_YET_CREATED = "not yet created"


class ReconcileError(Exception):
    """Base class for all reconciliation errors."""

    def __init__(
        self,
        message: str,
        *,
        resource_type: str = "",
        instance_id: str = "",
    ) -> None:
        self.message = message
        self.resource_type = resource_type
        self.instance_id = instance_id
        super().__init__(message)

    def __str__(self) -> str:
        instance_id = self.instance_id or NOT_YET_CREATED
        if self.resource_type:
            return f"{self.resource_type} {instance_id}: {self.message}"
        return self.message

    def bind(self, resource_type: str, instance_id: str) -> ReconcileError:
        """Fill in resource context if the raiser did not know it."""
        if not self.resource_type:
            self.resource_type = resource_type
        if not self.instance_id:
            self.instance_id = instance_id
        return self


class TransientNetworkError(ReconcileError):
    """Connection failure, timeout, throttling or 5xx. Safe to retry."""

    def __init__(self, message: str, *, status_code: int | None = None, **kwargs: str) -> None:
        self.status_code = status_code
        super().__init__(message, **kwargs)


class NotFoundError(ReconcileError):
    """The remote object does not exist (404)."""

    pass


class RemoteRejected(ReconcileError):
    """The API refused the request (4xx validation failure). Never retried."""

    def __init__(self, message: str, *, status_code: int, **kwargs: str) -> None:
        self.status_code = status_code
        super().__init__(message, **kwargs)


class ProvisioningFailed(ReconcileError):
    """The remote object reached a failure status. Terminal."""

    def __init__(self, message: str, *, remote_status: str = "", **kwargs: str) -> None:
        self.remote_status = remote_status
        super().__init__(message, **kwargs)


class ProvisioningTimeout(ReconcileError):
    """The remote object did not reach a terminal status in time.

    Not fatal: the instance keeps its non-terminal status and is picked up
    again on the next pass.
    """

    def __init__(self, message: str, *, last_status: str = "", **kwargs: str) -> None:
        self.last_status = last_status
        super().__init__(message, **kwargs)


class ImmutableFieldChanged(ReconcileError):
    """Desired state changes a field that cannot change after creation."""

    def __init__(self, fields: set[str], **kwargs: str) -> None:
        self.fields = set(fields)
        super().__init__(
            f"cannot change immutable field(s) {sorted(self.fields)}; "
            "destroy and re-create the resource instead",
            **kwargs,
        )


class InvalidDesiredState(ReconcileError):
    """Desired attributes fail schema validation."""

    pass


class DependencyError(ReconcileError):
    """Base class for dependency ordering errors."""

    pass


class DependencyCycle(DependencyError):
    """The dependency graph contains a cycle."""

    def __init__(self, members: list[str], **kwargs: str) -> None:
        self.members = list(members)
        super().__init__(f"Circular dependency detected involving: {self.members}", **kwargs)


class DependencyNotReady(DependencyError):
    """An upstream instance has not reached a ready state yet."""

    def __init__(self, pending: list[str], **kwargs: str) -> None:
        self.pending = list(pending)
        super().__init__(f"waiting for dependencies: {self.pending}", **kwargs)


class DependentsStillManaged(DependencyError):
    """A delete was requested while managed instances still depend on it."""

    def __init__(self, dependents: list[str], **kwargs: str) -> None:
        self.dependents = list(dependents)
        super().__init__(
            f"cannot delete while still required by managed instances: {self.dependents}",
            **kwargs,
        )

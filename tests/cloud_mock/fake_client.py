"""In-memory remote client with scripted behaviour.

FakeRemoteClient stores created objects in a dict and answers CRUD calls
from it. Remote statuses returned by create, update and read can be
scripted, and any operation can be made to raise a queued error.
"""

from __future__ import annotations

import copy
from collections import defaultdict, deque
from typing import Any

from provisioner.errors import NotFoundError
from provisioner.models import OperationResult, ResourceInstance, ResourceType


class FakeRemoteClient:
    """RemoteClient double for one resource kind.

    Attributes:
        objects: Remote objects by id.
        calls: (operation, resource id) of every call, in order.
        create_status: Remote status returned by create.
        update_status: Remote status returned by update.
        read_statuses: Statuses returned by successive reads; the last one
            repeats. Empty means READY.
        failure_message: Message returned alongside a FAILED status.
        linger_reads: Reads for which a deleted object stays visible.
    """

    def __init__(
        self,
        resource_type: ResourceType,
        *,
        id_prefix: str = "",
        log: list[tuple[str, str, str]] | None = None,
    ) -> None:
        self.resource_type = resource_type
        self.id_prefix = id_prefix or resource_type.value.replace("_", "-")
        self.objects: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self.create_status = "READY"
        self.update_status = "READY"
        self.read_statuses: list[str] = []
        self.failure_message = ""
        self.linger_reads = 0
        self.log = log if log is not None else []
        self._lingering: dict[str, int] = {}
        self._errors: dict[str, deque[Exception]] = defaultdict(deque)
        self._next_id = 0

    def fail_next(self, operation: str, error: Exception) -> None:
        """Queue an error for the next call of ``operation``."""
        self._errors[operation].append(error)

    def calls_to(self, operation: str) -> list[str]:
        return [rid for op, rid in self.calls if op == operation]

    def seed(self, resource_id: str, attributes: dict[str, Any]) -> None:
        """Make an object exist remotely without a create call."""
        self.objects[resource_id] = copy.deepcopy(attributes)

    async def create(self, desired: dict[str, Any]) -> OperationResult:
        self._record("create", "")
        self._raise_queued("create")
        self._next_id += 1
        resource_id = f"{self.id_prefix}-{self._next_id}"
        self.objects[resource_id] = copy.deepcopy(desired)
        return self._result(resource_id, self.create_status, http_status=201)

    async def read(self, resource_id: str) -> OperationResult:
        self._record("read", resource_id)
        self._raise_queued("read")
        if resource_id in self._lingering:
            self._lingering[resource_id] -= 1
            if self._lingering[resource_id] < 0:
                del self._lingering[resource_id]
                self.objects.pop(resource_id, None)
            else:
                return self._result(resource_id, "DELETING")
        self._require(resource_id)
        status = "READY"
        if self.read_statuses:
            status = self.read_statuses.pop(0) if len(self.read_statuses) > 1 else self.read_statuses[0]
        return self._result(resource_id, status)

    async def update(self, resource_id: str, desired: dict[str, Any]) -> OperationResult:
        self._record("update", resource_id)
        self._raise_queued("update")
        self._require(resource_id)
        self.objects[resource_id] = copy.deepcopy(desired)
        return self._result(resource_id, self.update_status)

    async def delete(self, resource_id: str) -> None:
        self._record("delete", resource_id)
        self._raise_queued("delete")
        self._require(resource_id)
        if self.linger_reads:
            self._lingering[resource_id] = self.linger_reads
        else:
            del self.objects[resource_id]

    def _record(self, operation: str, resource_id: str) -> None:
        self.calls.append((operation, resource_id))
        self.log.append((self.resource_type.value, operation, resource_id))

    def _raise_queued(self, operation: str) -> None:
        if self._errors[operation]:
            raise self._errors[operation].popleft()

    def _require(self, resource_id: str) -> None:
        if resource_id not in self.objects:
            raise NotFoundError(
                "resource not found",
                resource_type=self.resource_type.value,
                instance_id=resource_id,
            )

    def _result(self, resource_id: str, status: str, http_status: int = 200) -> OperationResult:
        return OperationResult(
            resource_id=resource_id,
            payload=copy.deepcopy(self.objects[resource_id]),
            remote_status=status,
            http_status=http_status,
            message=self.failure_message if status == "FAILED" else "",
        )


class FakeClientFactory:
    """ClientProvider handing out one FakeRemoteClient per resource kind."""

    def __init__(self) -> None:
        self.clients: dict[ResourceType, FakeRemoteClient] = {}
        self.log: list[tuple[str, str, str]] = []

    def client(self, resource_type: ResourceType) -> FakeRemoteClient:
        if resource_type not in self.clients:
            self.clients[resource_type] = FakeRemoteClient(resource_type, log=self.log)
        return self.clients[resource_type]

    def for_instance(
        self, instance: ResourceInstance, attributes: dict[str, Any] | None = None
    ) -> FakeRemoteClient:
        return self.client(instance.resource_type)

    @property
    def calls(self) -> list[tuple[str, str, str]]:
        """(resource type, operation, resource id) across every client, in order."""
        return list(self.log)

    def mutations(self) -> list[tuple[str, str, str]]:
        return [call for call in self.calls if call[1] != "read"]

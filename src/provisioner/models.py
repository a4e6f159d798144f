"""Attribute model for managed resource instances.

A ResourceInstance pairs the desired attributes from configuration with the
attributes last observed on the remote API. Attribute trees are plain
mappings; nested blocks are lists holding zero or one mapping, matching how
the configuration layer addresses them (``environment.0.id``).

OWNERSHIP:
- The reconciler is the only writer of ``status``, ``id`` and ``observed``
- The dependency gate only reads ``status`` of other instances
- ``desired`` is never modified once a pass starts
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ResourceType(str, Enum):
    """Supported resource kinds."""

    ENVIRONMENT = "environment"
    NETWORK = "network"
    PRIVATE_LINK_ACCESS = "private_link_access"
    KAFKA_CLUSTER = "kafka_cluster"
    SERVICE_ACCOUNT = "service_account"
    API_KEY = "api_key"
    ROLE_BINDING = "role_binding"
    KAFKA_TOPIC = "kafka_topic"
    ACCESS_POINT = "access_point"


class ResourceStatus(str, Enum):
    """Lifecycle status tracked by the reconciler."""

    UNMANAGED = "unmanaged"  # Known from configuration, never created
    CREATING = "creating"  # Create request in flight
    PROVISIONING = "provisioning"  # Created, remote work still running
    READY = "ready"  # Terminal, usable by dependents
    UPDATING = "updating"  # Update request in flight or converging
    DELETING = "deleting"  # Delete request in flight or converging
    DELETED = "deleted"  # Gone remotely, about to be dropped from tracking
    ERRORED = "errored"  # Terminal failure, see last_error


# Statuses that mean a remote operation may still be converging
IN_FLIGHT_STATUSES = frozenset(
    {
        ResourceStatus.CREATING,
        ResourceStatus.PROVISIONING,
        ResourceStatus.UPDATING,
        ResourceStatus.DELETING,
    }
)


class ErrorKind(str, Enum):
    """Classification of a remote call outcome for retry decisions."""

    NONE = "none"
    TRANSIENT = "transient"
    NOT_FOUND = "not_found"
    REJECTED = "rejected"


@dataclass(frozen=True)
class OperationResult:
    """Outcome of one remote Create, Read or Update call.

    Attributes:
        resource_id: Remote-assigned identifier.
        payload: Attribute mapping decoded from the response (may be partial).
        remote_status: Provider status string, e.g. PROVISIONING or READY.
        http_status: HTTP status code of the final response.
        message: Remote diagnostic message, kept verbatim.
    """

    resource_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    remote_status: str = ""
    http_status: int = 200
    message: str = ""


@dataclass(frozen=True)
class DesiredState:
    """One resource declaration from configuration.

    Attributes:
        key: Configuration address, ``<type>.<name>``.
        resource_type: Resource kind.
        attributes: Declared attributes (may contain references).
        depends_on: Explicit and inferred upstream instance keys.
    """

    key: str
    resource_type: ResourceType
    attributes: dict[str, Any]
    depends_on: frozenset[str] = frozenset()

    @property
    def name(self) -> str:
        return self.key.split(".", 1)[1]


@dataclass
class ResourceInstance:
    """Tracked state of one resource instance."""

    key: str
    resource_type: ResourceType
    desired: dict[str, Any] | None = None
    depends_on: frozenset[str] = frozenset()
    id: str = ""
    observed: dict[str, Any] | None = None
    status: ResourceStatus = ResourceStatus.UNMANAGED
    last_error: str | None = None
    consecutive_timeouts: int = 0

    @classmethod
    def from_desired(cls, desired: DesiredState) -> ResourceInstance:
        """Start tracking a declaration that has no prior observed state."""
        return cls(
            key=desired.key,
            resource_type=desired.resource_type,
            desired=copy.deepcopy(desired.attributes),
            depends_on=desired.depends_on,
        )

    @property
    def is_ready(self) -> bool:
        return self.status == ResourceStatus.READY

    @property
    def is_managed(self) -> bool:
        """True while configuration still declares this instance."""
        return self.desired is not None

    @property
    def exists_remotely(self) -> bool:
        return bool(self.id)

    @property
    def display_id(self) -> str:
        return self.id or "not yet created"

    def reported(self) -> dict[str, Any]:
        """Reported state for dependents and display, computed fields included."""
        if self.observed is None:
            return {}
        reported = copy.deepcopy(self.observed)
        if self.id:
            reported["id"] = self.id
        return reported

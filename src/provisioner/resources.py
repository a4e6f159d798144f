"""Per-resource-type schemas: desired-state models and wire codecs.

Each ResourceSchema binds one resource kind to:
1. A pydantic model validating desired attributes (fail fast, fail loudly)
2. Request encoders and a response decoder for the remote API
3. Field metadata used by drift detection (immutable, computed, unordered)
4. The remote statuses that count as ready or failed

Attribute trees use list-of-one blocks (``environment: [{id: env-abc123}]``);
request bodies use the API's nested objects (``environment: {id: ...}``).
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Annotated, Any, Literal

from pydantic import BaseModel, BeforeValidator, Field, ValidationError, model_validator

from .errors import InvalidDesiredState
from .models import ResourceType

# =============================================================================
# Block helpers
# =============================================================================


def _as_block(value: Any) -> Any:
    """Accept a nested block written as a mapping or as a list of one."""
    if isinstance(value, dict):
        return [value]
    if isinstance(value, list) and len(value) > 1:
        raise ValueError(f"a block holds at most one entry, got {len(value)}")
    return value


def _first(block: Any) -> dict[str, Any]:
    """First mapping of a block, or an empty mapping."""
    if isinstance(block, list) and block:
        return block[0] or {}
    if isinstance(block, dict):
        return block
    return {}


def _ref(block: Any) -> dict[str, Any] | None:
    """Encode an id-reference block as the API's ``{"id": ...}`` object."""
    ref = _first(block)
    if not ref.get("id"):
        return None
    return {"id": ref["id"]}


def _block(obj: Any, *keys: str) -> list[dict[str, Any]]:
    """Decode an API object into a list-of-one block, keeping only ``keys``."""
    if not isinstance(obj, dict) or not obj:
        return []
    if keys:
        obj = {k: obj[k] for k in keys if obj.get(k) is not None}
    return [dict(obj)]


def _compact(mapping: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in mapping.items() if v is not None}


class _Model(BaseModel):
    model_config = {"extra": "forbid"}

    def to_attributes(self) -> dict[str, Any]:
        """Canonical attribute tree with unset optionals dropped."""
        return self.model_dump(exclude_none=True)


class IdRef(_Model):
    """Reference to another remote object by id."""

    id: Annotated[str, Field(min_length=1)]


RequiredIdBlock = Annotated[
    list[IdRef], BeforeValidator(_as_block), Field(min_length=1)
]
OptionalIdBlock = Annotated[
    list[IdRef] | None, BeforeValidator(_as_block)
]

Cloud = Literal["AWS", "AZURE", "GCP"]


def _exactly_one(data: dict[str, Any], keys: tuple[str, ...]) -> None:
    present = [k for k in keys if data.get(k)]
    if len(present) != 1:
        raise ValueError(f"exactly one of {list(keys)} must be set, got {present}")


# =============================================================================
# Request descriptor and schema
# =============================================================================


@dataclass(frozen=True)
class ApiRequest:
    """One HTTP request the adapter should issue."""

    method: str
    path: str
    body: dict[str, Any] | None = None


@dataclass(frozen=True)
class ResourceSchema:
    """Everything the engine needs to know about one resource kind.

    Attributes:
        resource_type: Resource kind.
        model: Desired-state model.
        collection_path: Builds the create path from desired attributes.
        item_path: Builds the read/update/delete path from an id.
        encode_create: Desired attributes to request body.
        encode_update: (id, desired attributes) to the requests an update issues.
        decode: Response body to (id, attributes).
        ready_statuses: Remote statuses meaning usable.
        failure_statuses: Remote statuses that will never converge.
        immutable_fields: Top-level attributes fixed after create.
        computed_fields: Top-level server-assigned attributes, excluded from diff.
        unordered_fields: Path patterns compared as sets.
        carried_fields: Write-only attributes Read never returns; carried forward.
        await_deletion: Poll until Read reports NotFound after Delete.
        endpoint_of: Per-instance base URL (data-plane resources).
        credentials_of: Per-instance (key, secret) (data-plane resources).
    """

    resource_type: ResourceType
    model: type[_Model]
    collection_path: Callable[[dict[str, Any]], str]
    item_path: Callable[[str], str]
    encode_create: Callable[[dict[str, Any]], dict[str, Any]]
    encode_update: Callable[[str, dict[str, Any]], list[ApiRequest]]
    decode: Callable[[dict[str, Any]], tuple[str, dict[str, Any]]]
    ready_statuses: frozenset[str] = frozenset({"READY"})
    failure_statuses: frozenset[str] = frozenset()
    immutable_fields: frozenset[str] = frozenset()
    computed_fields: frozenset[str] = frozenset()
    unordered_fields: tuple[str, ...] = ()
    carried_fields: frozenset[str] = frozenset()
    await_deletion: bool = False
    endpoint_of: Callable[[dict[str, Any]], str | None] | None = None
    credentials_of: Callable[[dict[str, Any]], tuple[str, str] | None] | None = None

    @property
    def terminal_statuses(self) -> frozenset[str]:
        return self.ready_statuses | self.failure_statuses

    def validate(self, attributes: dict[str, Any], instance_id: str = "") -> dict[str, Any]:
        """Validate desired attributes and return their canonical form.

        Raises:
            InvalidDesiredState: With every validation failure listed.
        """
        try:
            return self.model.model_validate(attributes).to_attributes()
        except ValidationError as e:
            errors = []
            for error in e.errors():
                loc = ".".join(str(x) for x in error["loc"])
                errors.append(f"{loc}: {error['msg']}" if loc else error["msg"])
            raise InvalidDesiredState(
                "invalid desired state: " + "; ".join(errors),
                resource_type=self.resource_type.value,
                instance_id=instance_id,
            ) from e

    def remote_status(self, body: dict[str, Any]) -> str:
        """Provider status of a response; synchronous kinds are READY at once."""
        status = body.get("status")
        if isinstance(status, dict) and status.get("phase"):
            return str(status["phase"]).upper()
        return next(iter(sorted(self.ready_statuses)))

    def status_message(self, body: dict[str, Any]) -> str:
        status = body.get("status")
        if isinstance(status, dict):
            return str(status.get("error_message") or "")
        return ""


# =============================================================================
# environment
# =============================================================================

ENVIRONMENTS_PATH = "/org/v2/environments"


class StreamGovernance(_Model):
    package: Literal["ESSENTIALS", "ADVANCED"]


class EnvironmentModel(_Model):
    display_name: Annotated[str, Field(min_length=1)]
    stream_governance: Annotated[
        list[StreamGovernance] | None, BeforeValidator(_as_block)
    ] = None


def _encode_environment(attrs: dict[str, Any]) -> dict[str, Any]:
    body: dict[str, Any] = {"display_name": attrs["display_name"]}
    governance = _first(attrs.get("stream_governance"))
    if governance:
        body["stream_governance_config"] = {"package": governance["package"]}
    return body


def _decode_environment(body: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    attrs = {
        "display_name": body.get("display_name"),
        "stream_governance": _block(body.get("stream_governance_config"), "package"),
        "resource_name": (body.get("metadata") or {}).get("resource_name"),
    }
    return body["id"], _compact(attrs)


ENVIRONMENT = ResourceSchema(
    resource_type=ResourceType.ENVIRONMENT,
    model=EnvironmentModel,
    collection_path=lambda _attrs: ENVIRONMENTS_PATH,
    item_path=lambda rid: f"{ENVIRONMENTS_PATH}/{rid}",
    encode_create=_encode_environment,
    encode_update=lambda rid, attrs: [
        ApiRequest("PATCH", f"{ENVIRONMENTS_PATH}/{rid}", _encode_environment(attrs))
    ],
    decode=_decode_environment,
    computed_fields=frozenset({"resource_name"}),
)


# =============================================================================
# network
# =============================================================================

NETWORKS_PATH = "/networking/v1/networks"


class NetworkModel(_Model):
    display_name: str | None = None
    cloud: Cloud
    region: Annotated[str, Field(min_length=1)]
    connection_types: Annotated[
        list[Literal["PRIVATELINK", "PEERING", "TRANSITGATEWAY"]], Field(min_length=1)
    ]
    zones: list[str] | None = None
    cidr: str | None = None
    environment: RequiredIdBlock


def _encode_network(attrs: dict[str, Any]) -> dict[str, Any]:
    spec = {
        "display_name": attrs.get("display_name"),
        "cloud": attrs["cloud"],
        "region": attrs["region"],
        "connection_types": list(attrs["connection_types"]),
        "zones": attrs.get("zones"),
        "cidr": attrs.get("cidr"),
        "environment": _ref(attrs["environment"]),
    }
    return {"spec": _compact(spec)}


def _decode_network(body: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    spec = body.get("spec") or {}
    attrs = {
        "display_name": spec.get("display_name"),
        "cloud": spec.get("cloud"),
        "region": spec.get("region"),
        "connection_types": spec.get("connection_types"),
        "zones": spec.get("zones"),
        "cidr": spec.get("cidr"),
        "environment": _block(spec.get("environment"), "id"),
        "dns_domain": spec.get("dns_domain"),
        "zonal_subdomains": spec.get("zonal_subdomains"),
        "resource_name": (body.get("metadata") or {}).get("resource_name"),
    }
    return body["id"], _compact(attrs)


NETWORK = ResourceSchema(
    resource_type=ResourceType.NETWORK,
    model=NetworkModel,
    collection_path=lambda _attrs: NETWORKS_PATH,
    item_path=lambda rid: f"{NETWORKS_PATH}/{rid}",
    encode_create=_encode_network,
    encode_update=lambda rid, attrs: [
        ApiRequest(
            "PATCH",
            f"{NETWORKS_PATH}/{rid}",
            {"spec": _compact({
                "display_name": attrs.get("display_name"),
                "environment": _ref(attrs["environment"]),
            })},
        )
    ],
    decode=_decode_network,
    failure_statuses=frozenset({"FAILED"}),
    immutable_fields=frozenset(
        {"cloud", "region", "connection_types", "zones", "cidr", "environment"}
    ),
    computed_fields=frozenset({"dns_domain", "zonal_subdomains", "resource_name"}),
    unordered_fields=("connection_types", "zones"),
    await_deletion=True,
)


# =============================================================================
# private_link_access
# =============================================================================

PRIVATE_LINK_ACCESSES_PATH = "/networking/v1/private-link-accesses"

_PLA_VARIANTS: dict[str, tuple[str, str]] = {
    # attribute block -> (API kind, identifying field)
    "aws": ("AwsPrivateLinkAccess", "account"),
    "azure": ("AzurePrivateLinkAccess", "subscription"),
    "gcp": ("GcpPrivateServiceConnectAccess", "project"),
}


class AwsAccount(_Model):
    account: Annotated[str, Field(pattern=r"^\d{12}$")]


class AzureSubscription(_Model):
    subscription: Annotated[str, Field(min_length=1)]


class GcpProject(_Model):
    project: Annotated[str, Field(min_length=1)]


class PrivateLinkAccessModel(_Model):
    display_name: str | None = None
    aws: Annotated[list[AwsAccount] | None, BeforeValidator(_as_block)] = None
    azure: Annotated[
        list[AzureSubscription] | None, BeforeValidator(_as_block)
    ] = None
    gcp: Annotated[list[GcpProject] | None, BeforeValidator(_as_block)] = None
    environment: RequiredIdBlock
    network: RequiredIdBlock

    @model_validator(mode="before")
    @classmethod
    def one_cloud(cls, data: Any) -> Any:
        if isinstance(data, dict):
            _exactly_one(data, tuple(_PLA_VARIANTS))
        return data


def _encode_private_link_access(attrs: dict[str, Any]) -> dict[str, Any]:
    cloud: dict[str, Any] = {}
    for block_name, (kind, key) in _PLA_VARIANTS.items():
        block = _first(attrs.get(block_name))
        if block:
            cloud = {"kind": kind, key: block[key]}
    spec = {
        "display_name": attrs.get("display_name"),
        "cloud": cloud,
        "environment": _ref(attrs["environment"]),
        "network": _ref(attrs["network"]),
    }
    return {"spec": _compact(spec)}


def _decode_private_link_access(body: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    spec = body.get("spec") or {}
    cloud = spec.get("cloud") or {}
    attrs: dict[str, Any] = {
        "display_name": spec.get("display_name"),
        "environment": _block(spec.get("environment"), "id"),
        "network": _block(spec.get("network"), "id"),
    }
    for block_name, (kind, key) in _PLA_VARIANTS.items():
        if cloud.get("kind") == kind:
            attrs[block_name] = [{key: cloud.get(key)}]
    return body["id"], _compact(attrs)


PRIVATE_LINK_ACCESS = ResourceSchema(
    resource_type=ResourceType.PRIVATE_LINK_ACCESS,
    model=PrivateLinkAccessModel,
    collection_path=lambda _attrs: PRIVATE_LINK_ACCESSES_PATH,
    item_path=lambda rid: f"{PRIVATE_LINK_ACCESSES_PATH}/{rid}",
    encode_create=_encode_private_link_access,
    encode_update=lambda rid, attrs: [
        ApiRequest(
            "PATCH",
            f"{PRIVATE_LINK_ACCESSES_PATH}/{rid}",
            {"spec": _compact({
                "display_name": attrs.get("display_name"),
                "environment": _ref(attrs["environment"]),
            })},
        )
    ],
    decode=_decode_private_link_access,
    failure_statuses=frozenset({"FAILED"}),
    immutable_fields=frozenset({"aws", "azure", "gcp", "environment", "network"}),
    await_deletion=True,
)


# =============================================================================
# kafka_cluster
# =============================================================================

CLUSTERS_PATH = "/cmk/v2/clusters"

_CLUSTER_KINDS = {"basic": "Basic", "standard": "Standard", "dedicated": "Dedicated"}


class EmptyBlock(_Model):
    pass


class DedicatedConfig(_Model):
    cku: Annotated[int, Field(ge=1)]


class KafkaClusterModel(_Model):
    display_name: Annotated[str, Field(min_length=1)]
    availability: Literal["SINGLE_ZONE", "MULTI_ZONE", "LOW", "HIGH"]
    cloud: Cloud
    region: Annotated[str, Field(min_length=1)]
    basic: Annotated[list[EmptyBlock] | None, BeforeValidator(_as_block)] = None
    standard: Annotated[
        list[EmptyBlock] | None, BeforeValidator(_as_block)
    ] = None
    dedicated: Annotated[
        list[DedicatedConfig] | None, BeforeValidator(_as_block)
    ] = None
    environment: RequiredIdBlock
    network: OptionalIdBlock = None

    @model_validator(mode="before")
    @classmethod
    def one_kind(cls, data: Any) -> Any:
        if isinstance(data, dict):
            # An empty mapping still selects the cluster kind
            present = [k for k in _CLUSTER_KINDS if data.get(k) is not None and data.get(k) != []]
            if len(present) != 1:
                raise ValueError(
                    f"exactly one of {list(_CLUSTER_KINDS)} must be set, got {present}"
                )
        return data


def _cluster_config(attrs: dict[str, Any]) -> dict[str, Any]:
    for block_name, kind in _CLUSTER_KINDS.items():
        block = attrs.get(block_name)
        if block:
            config: dict[str, Any] = {"kind": kind}
            if block_name == "dedicated":
                config["cku"] = _first(block)["cku"]
            return config
    return {}


def _encode_kafka_cluster(attrs: dict[str, Any]) -> dict[str, Any]:
    spec = {
        "display_name": attrs["display_name"],
        "availability": attrs["availability"],
        "cloud": attrs["cloud"],
        "region": attrs["region"],
        "config": _cluster_config(attrs),
        "environment": _ref(attrs["environment"]),
        "network": _ref(attrs.get("network")),
    }
    return {"spec": _compact(spec)}


def _decode_kafka_cluster(body: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    spec = body.get("spec") or {}
    config = spec.get("config") or {}
    attrs: dict[str, Any] = {
        "display_name": spec.get("display_name"),
        "availability": spec.get("availability"),
        "cloud": spec.get("cloud"),
        "region": spec.get("region"),
        "environment": _block(spec.get("environment"), "id"),
        "network": _block(spec.get("network"), "id") or None,
        "bootstrap_endpoint": spec.get("kafka_bootstrap_endpoint"),
        "rest_endpoint": spec.get("http_endpoint"),
        "rbac_crn": (body.get("metadata") or {}).get("resource_name"),
    }
    for block_name, kind in _CLUSTER_KINDS.items():
        if config.get("kind") == kind:
            attrs[block_name] = [{"cku": config["cku"]}] if block_name == "dedicated" else [{}]
    return body["id"], _compact(attrs)


KAFKA_CLUSTER = ResourceSchema(
    resource_type=ResourceType.KAFKA_CLUSTER,
    model=KafkaClusterModel,
    collection_path=lambda _attrs: CLUSTERS_PATH,
    item_path=lambda rid: f"{CLUSTERS_PATH}/{rid}",
    encode_create=_encode_kafka_cluster,
    encode_update=lambda rid, attrs: [
        ApiRequest(
            "PATCH",
            f"{CLUSTERS_PATH}/{rid}",
            {"spec": _compact({
                "display_name": attrs["display_name"],
                "config": _cluster_config(attrs),
                "environment": _ref(attrs["environment"]),
            })},
        )
    ],
    decode=_decode_kafka_cluster,
    ready_statuses=frozenset({"PROVISIONED"}),
    failure_statuses=frozenset({"FAILED"}),
    immutable_fields=frozenset(
        {"availability", "cloud", "region", "environment", "network", "basic", "standard"}
    ),
    computed_fields=frozenset({"bootstrap_endpoint", "rest_endpoint", "rbac_crn"}),
)


# =============================================================================
# service_account
# =============================================================================

SERVICE_ACCOUNTS_PATH = "/iam/v2/service-accounts"


class ServiceAccountModel(_Model):
    display_name: Annotated[str, Field(min_length=1, max_length=64)]
    description: str | None = None


def _decode_service_account(body: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    attrs = {
        "display_name": body.get("display_name"),
        "description": body.get("description"),
        "api_version": body.get("api_version"),
        "kind": body.get("kind"),
    }
    return body["id"], _compact(attrs)


SERVICE_ACCOUNT = ResourceSchema(
    resource_type=ResourceType.SERVICE_ACCOUNT,
    model=ServiceAccountModel,
    collection_path=lambda _attrs: SERVICE_ACCOUNTS_PATH,
    item_path=lambda rid: f"{SERVICE_ACCOUNTS_PATH}/{rid}",
    encode_create=lambda attrs: _compact(
        {"display_name": attrs["display_name"], "description": attrs.get("description")}
    ),
    encode_update=lambda rid, attrs: [
        ApiRequest(
            "PATCH",
            f"{SERVICE_ACCOUNTS_PATH}/{rid}",
            {"description": attrs.get("description", "")},
        )
    ],
    decode=_decode_service_account,
    immutable_fields=frozenset({"display_name"}),
    computed_fields=frozenset({"api_version", "kind"}),
)


# =============================================================================
# api_key
# =============================================================================

API_KEYS_PATH = "/iam/v2/api-keys"


class ApiKeyOwner(_Model):
    id: Annotated[str, Field(min_length=1)]
    api_version: Annotated[str, Field(min_length=1)]
    kind: Literal["ServiceAccount", "User"]


class ApiKeyResource(_Model):
    id: Annotated[str, Field(min_length=1)]
    api_version: Annotated[str, Field(min_length=1)]
    kind: Annotated[str, Field(min_length=1)]
    environment: RequiredIdBlock


class ApiKeyModel(_Model):
    display_name: str | None = None
    description: str | None = None
    owner: Annotated[
        list[ApiKeyOwner], BeforeValidator(_as_block), Field(min_length=1)
    ]
    managed_resource: Annotated[
        list[ApiKeyResource] | None, BeforeValidator(_as_block)
    ] = None


def _encode_api_key(attrs: dict[str, Any]) -> dict[str, Any]:
    owner = _first(attrs["owner"])
    spec: dict[str, Any] = {
        "display_name": attrs.get("display_name"),
        "description": attrs.get("description"),
        "owner": {"id": owner["id"], "api_version": owner["api_version"], "kind": owner["kind"]},
    }
    resource = _first(attrs.get("managed_resource"))
    if resource:
        spec["resource"] = {
            "id": resource["id"],
            "api_version": resource["api_version"],
            "kind": resource["kind"],
            "environment": _ref(resource["environment"]),
        }
    return {"spec": _compact(spec)}


def _decode_api_key(body: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    spec = body.get("spec") or {}
    resource = spec.get("resource") or {}
    managed: list[dict[str, Any]] = []
    if resource:
        managed = [_compact({
            "id": resource.get("id"),
            "api_version": resource.get("api_version"),
            "kind": resource.get("kind"),
            "environment": _block(resource.get("environment"), "id"),
        })]
    attrs = {
        "display_name": spec.get("display_name"),
        "description": spec.get("description"),
        "owner": _block(spec.get("owner"), "id", "api_version", "kind"),
        "managed_resource": managed or None,
        "secret": spec.get("secret"),
    }
    return body["id"], _compact(attrs)


API_KEY = ResourceSchema(
    resource_type=ResourceType.API_KEY,
    model=ApiKeyModel,
    collection_path=lambda _attrs: API_KEYS_PATH,
    item_path=lambda rid: f"{API_KEYS_PATH}/{rid}",
    encode_create=_encode_api_key,
    encode_update=lambda rid, attrs: [
        ApiRequest(
            "PATCH",
            f"{API_KEYS_PATH}/{rid}",
            {"spec": _compact({
                "display_name": attrs.get("display_name"),
                "description": attrs.get("description"),
            })},
        )
    ],
    decode=_decode_api_key,
    immutable_fields=frozenset({"owner", "managed_resource"}),
    computed_fields=frozenset({"secret"}),
    carried_fields=frozenset({"secret"}),
)


# =============================================================================
# role_binding
# =============================================================================

ROLE_BINDINGS_PATH = "/iam/v2/role-bindings"


class RoleBindingModel(_Model):
    principal: Annotated[str, Field(pattern=r"^User:.+")]
    role_name: Annotated[str, Field(min_length=1)]
    crn_pattern: Annotated[str, Field(pattern=r"^crn://.+")]


def _decode_role_binding(body: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    attrs = {
        "principal": body.get("principal"),
        "role_name": body.get("role_name"),
        "crn_pattern": body.get("crn_pattern"),
    }
    return body["id"], _compact(attrs)


ROLE_BINDING = ResourceSchema(
    resource_type=ResourceType.ROLE_BINDING,
    model=RoleBindingModel,
    collection_path=lambda _attrs: ROLE_BINDINGS_PATH,
    item_path=lambda rid: f"{ROLE_BINDINGS_PATH}/{rid}",
    encode_create=lambda attrs: {
        "principal": attrs["principal"],
        "role_name": attrs["role_name"],
        "crn_pattern": attrs["crn_pattern"],
    },
    # Every attribute is immutable, drift is reported before an update is built
    encode_update=lambda rid, attrs: [],
    decode=_decode_role_binding,
    immutable_fields=frozenset({"principal", "role_name", "crn_pattern"}),
)


# =============================================================================
# kafka_topic
# =============================================================================


class TopicCredentials(_Model):
    key: Annotated[str, Field(min_length=1)]
    secret: Annotated[str, Field(min_length=1)]


class KafkaTopicModel(_Model):
    kafka_cluster: RequiredIdBlock
    topic_name: Annotated[str, Field(min_length=1, max_length=249, pattern=r"^[a-zA-Z0-9._-]+$")]
    partitions_count: Annotated[int, Field(ge=1)] = 6
    config: dict[str, str] | None = None
    rest_endpoint: Annotated[str, Field(pattern=r"^https?://")]
    credentials: Annotated[
        list[TopicCredentials], BeforeValidator(_as_block), Field(min_length=1)
    ]


def _topics_path(cluster_id: str) -> str:
    return f"/kafka/v3/clusters/{cluster_id}/topics"


def _topic_item_path(rid: str) -> str:
    # Topic ids are "<cluster id>/<topic name>"
    cluster_id, _, topic_name = rid.partition("/")
    return f"{_topics_path(cluster_id)}/{topic_name}"


def _topic_configs(config: dict[str, str] | None) -> list[dict[str, str]]:
    return [{"name": k, "value": str(v)} for k, v in sorted((config or {}).items())]


def _encode_kafka_topic(attrs: dict[str, Any]) -> dict[str, Any]:
    body: dict[str, Any] = {
        "topic_name": attrs["topic_name"],
        "partitions_count": attrs.get("partitions_count", 6),
    }
    if attrs.get("config"):
        body["configs"] = _topic_configs(attrs["config"])
    return body


def _encode_kafka_topic_update(rid: str, attrs: dict[str, Any]) -> list[ApiRequest]:
    item = _topic_item_path(rid)
    requests = [ApiRequest("PATCH", item, {"partitions_count": attrs.get("partitions_count", 6)})]
    if attrs.get("config"):
        requests.append(
            ApiRequest("POST", f"{item}/configs:alter", {"data": _topic_configs(attrs["config"])})
        )
    return requests


def _decode_kafka_topic(body: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    cluster_id = body.get("cluster_id", "")
    topic_name = body.get("topic_name", "")
    attrs = {
        "kafka_cluster": [{"id": cluster_id}] if cluster_id else None,
        "topic_name": topic_name,
        "partitions_count": body.get("partitions_count"),
    }
    return f"{cluster_id}/{topic_name}", _compact(attrs)


def _topic_credentials(attrs: dict[str, Any]) -> tuple[str, str] | None:
    creds = _first(attrs.get("credentials"))
    if not creds:
        return None
    return creds["key"], creds["secret"]


KAFKA_TOPIC = ResourceSchema(
    resource_type=ResourceType.KAFKA_TOPIC,
    model=KafkaTopicModel,
    collection_path=lambda attrs: _topics_path(_first(attrs["kafka_cluster"])["id"]),
    item_path=_topic_item_path,
    encode_create=_encode_kafka_topic,
    encode_update=_encode_kafka_topic_update,
    decode=_decode_kafka_topic,
    immutable_fields=frozenset({"topic_name", "kafka_cluster", "rest_endpoint"}),
    carried_fields=frozenset({"config", "rest_endpoint", "credentials"}),
    endpoint_of=lambda attrs: attrs.get("rest_endpoint"),
    credentials_of=_topic_credentials,
)


# =============================================================================
# access_point
# =============================================================================

ACCESS_POINTS_PATH = "/networking/v1/access-points"

AWS_EGRESS_BLOCK = "aws_egress_private_link_endpoint"
AZURE_EGRESS_BLOCK = "azure_egress_private_link_endpoint"
AWS_EGRESS_KIND = "AwsEgressPrivateLinkEndpoint"
AZURE_EGRESS_KIND = "AzureEgressPrivateLinkEndpoint"

_ENDPOINT_BLOCKS = {AWS_EGRESS_KIND: AWS_EGRESS_BLOCK, AZURE_EGRESS_KIND: AZURE_EGRESS_BLOCK}

# Server-assigned fields reported under each endpoint variant
_ENDPOINT_STATUS_FIELDS = {
    AWS_EGRESS_KIND: ("vpc_endpoint_id", "vpc_endpoint_dns_name"),
    AZURE_EGRESS_KIND: (
        "private_endpoint_resource_id",
        "private_endpoint_domain",
        "private_endpoint_ip_address",
        "private_endpoint_custom_dns_config_domains",
    ),
}


class AwsEgressEndpoint(_Model):
    kind: Literal["AwsEgressPrivateLinkEndpoint"] = AWS_EGRESS_KIND
    vpc_endpoint_service_name: Annotated[str, Field(min_length=1)]
    enable_high_availability: bool | None = None


class AzureEgressEndpoint(_Model):
    kind: Literal["AzureEgressPrivateLinkEndpoint"] = AZURE_EGRESS_KIND
    private_link_service_resource_id: Annotated[str, Field(min_length=1)]
    private_link_subresource_name: str | None = None


class AccessPointModel(_Model):
    """Access point with its endpoint as a tagged union over endpoint kind.

    The configuration writes the variant as one of two blocks; both are
    lifted into ``endpoint`` so that exactly one variant can exist.
    """

    display_name: str | None = None
    environment: RequiredIdBlock
    gateway: RequiredIdBlock
    endpoint: Annotated[AwsEgressEndpoint | AzureEgressEndpoint, Field(discriminator="kind")]

    @model_validator(mode="before")
    @classmethod
    def lift_endpoint_variant(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        variants = {
            kind: _first(_as_block(data.pop(block_name, None)))
            for kind, block_name in _ENDPOINT_BLOCKS.items()
        }
        present = [kind for kind, block in variants.items() if block]
        if "endpoint" in data:
            if present:
                raise ValueError("endpoint cannot be combined with endpoint variant blocks")
            return data
        if len(present) != 1:
            raise ValueError(
                f"exactly one of {list(_ENDPOINT_BLOCKS.values())} must be set, "
                f"got {[_ENDPOINT_BLOCKS[k] for k in present]}"
            )
        kind = present[0]
        data["endpoint"] = {**variants[kind], "kind": kind}
        return data

    def to_attributes(self) -> dict[str, Any]:
        attrs = self.model_dump(exclude_none=True, exclude={"endpoint"})
        block = self.endpoint.model_dump(exclude_none=True, exclude={"kind"})
        for kind, block_name in _ENDPOINT_BLOCKS.items():
            attrs[block_name] = [block] if self.endpoint.kind == kind else []
        return attrs


def _encode_access_point(attrs: dict[str, Any]) -> dict[str, Any]:
    config: dict[str, Any] = {}
    for kind, block_name in _ENDPOINT_BLOCKS.items():
        block = _first(attrs.get(block_name))
        if block:
            status_fields = _ENDPOINT_STATUS_FIELDS[kind]
            config = {"kind": kind, **{k: v for k, v in block.items() if k not in status_fields}}
    spec = {
        "display_name": attrs.get("display_name"),
        "config": config,
        "environment": _ref(attrs["environment"]),
        "gateway": _ref(attrs["gateway"]),
    }
    return {"spec": _compact(spec)}


def _decode_access_point(body: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    spec = body.get("spec") or {}
    status = body.get("status") or {}
    config = spec.get("config") or {}
    status_config = status.get("config") or {}
    kind = config.get("kind")

    attrs: dict[str, Any] = {
        "display_name": spec.get("display_name"),
        "environment": _block(spec.get("environment"), "id"),
        "gateway": _block(spec.get("gateway"), "id"),
    }
    for variant_kind, block_name in _ENDPOINT_BLOCKS.items():
        if kind != variant_kind:
            attrs[block_name] = []
            continue
        block = {k: v for k, v in config.items() if k != "kind"}
        for status_field in _ENDPOINT_STATUS_FIELDS[variant_kind]:
            if status_config.get(status_field) is not None:
                block[status_field] = status_config[status_field]
        attrs[block_name] = [block]
    return body["id"], _compact(attrs)


ACCESS_POINT = ResourceSchema(
    resource_type=ResourceType.ACCESS_POINT,
    model=AccessPointModel,
    collection_path=lambda _attrs: ACCESS_POINTS_PATH,
    item_path=lambda rid: f"{ACCESS_POINTS_PATH}/{rid}",
    encode_create=_encode_access_point,
    encode_update=lambda rid, attrs: [
        ApiRequest(
            "PATCH",
            f"{ACCESS_POINTS_PATH}/{rid}",
            {"spec": _compact({
                "display_name": attrs.get("display_name"),
                "environment": _ref(attrs["environment"]),
            })},
        )
    ],
    decode=_decode_access_point,
    failure_statuses=frozenset({"FAILED"}),
    immutable_fields=frozenset({"environment", "gateway", AWS_EGRESS_BLOCK, AZURE_EGRESS_BLOCK}),
)


# =============================================================================
# Registry
# =============================================================================

SCHEMAS: dict[ResourceType, ResourceSchema] = {
    schema.resource_type: schema
    for schema in (
        ENVIRONMENT,
        NETWORK,
        PRIVATE_LINK_ACCESS,
        KAFKA_CLUSTER,
        SERVICE_ACCOUNT,
        API_KEY,
        ROLE_BINDING,
        KAFKA_TOPIC,
        ACCESS_POINT,
    )
}


def get_schema(resource_type: ResourceType | str) -> ResourceSchema:
    """Get the schema for a resource type.

    Raises:
        ValueError: If the resource type is not supported.
    """
    try:
        return SCHEMAS[ResourceType(resource_type)]
    except ValueError as e:
        valid = [t.value for t in ResourceType]
        raise ValueError(f"Unknown resource type '{resource_type}'. Valid types: {valid}") from e

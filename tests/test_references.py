"""Tests for cross-instance references."""

from __future__ import annotations

import pytest

from provisioner.errors import DependencyNotReady
from provisioner.models import ResourceInstance, ResourceStatus, ResourceType
from provisioner.references import ReferenceResolver, find_references, lookup_path


@pytest.fixture
def instances() -> dict[str, ResourceInstance]:
    network = ResourceInstance(
        key="network.prod",
        resource_type=ResourceType.NETWORK,
        id="n-abc123",
        status=ResourceStatus.READY,
        observed={"region": "us-west-2", "zones": ["az1", "az2"], "environment": [{"id": "env-1"}]},
    )
    cluster = ResourceInstance(
        key="kafka_cluster.main",
        resource_type=ResourceType.KAFKA_CLUSTER,
        id="lkc-1",
        status=ResourceStatus.PROVISIONING,
        observed={},
    )
    return {network.key: network, cluster.key: cluster}


class TestFindReferences:
    """Tests for find_references."""

    def test_nested(self) -> None:
        """Test references are found anywhere in the tree."""
        value = {
            "network": {"id": "${network.prod.id}"},
            "principal": "User:${service_account.app.id}",
            "list": ["${kafka_cluster.main.rest_endpoint}", 3],
        }
        assert find_references(value) == {
            "network.prod",
            "service_account.app",
            "kafka_cluster.main",
        }

    def test_plain_values(self) -> None:
        """Test values without references yield nothing."""
        assert find_references({"a": "b", "c": 1, "d": None}) == set()


class TestLookupPath:
    """Tests for lookup_path."""

    def test_dict_and_list(self) -> None:
        """Test numeric segments index into lists."""
        tree = {"environment": [{"id": "env-1"}]}
        assert lookup_path(tree, "environment.0.id") == "env-1"

    @pytest.mark.parametrize(
        "path", ["missing", "environment.1.id", "environment.x", "environment.0.id.more"]
    )
    def test_missing(self, path: str) -> None:
        """Test missing segments raise KeyError."""
        with pytest.raises(KeyError):
            lookup_path({"environment": [{"id": "env-1"}]}, path)


class TestReferenceResolver:
    """Tests for ReferenceResolver."""

    def test_whole_reference_keeps_type(self, instances: dict[str, ResourceInstance]) -> None:
        """Test a bare reference resolves to the raw value."""
        resolved = ReferenceResolver(instances).resolve(
            {"zones": "${network.prod.zones}", "network": [{"id": "${network.prod.id}"}]}
        )
        assert resolved == {"zones": ["az1", "az2"], "network": [{"id": "n-abc123"}]}

    def test_embedded_reference_interpolated(self, instances: dict[str, ResourceInstance]) -> None:
        """Test references inside strings become text."""
        resolved = ReferenceResolver(instances).resolve("crn://${network.prod.region}/x")
        assert resolved == "crn://us-west-2/x"

    def test_input_not_modified(self, instances: dict[str, ResourceInstance]) -> None:
        """Test resolution returns a copy."""
        value = {"network": {"id": "${network.prod.id}"}}
        ReferenceResolver(instances).resolve(value)
        assert value == {"network": {"id": "${network.prod.id}"}}

    def test_unready_instance(self, instances: dict[str, ResourceInstance]) -> None:
        """Test references to unready or unknown instances are pending."""
        owner = ResourceInstance(key="kafka_topic.orders", resource_type=ResourceType.KAFKA_TOPIC)

        with pytest.raises(DependencyNotReady) as exc_info:
            ReferenceResolver(instances).resolve(
                {
                    "endpoint": "${kafka_cluster.main.rest_endpoint}",
                    "sa": "${service_account.app.id}",
                },
                owner,
            )

        assert exc_info.value.pending == ["kafka_cluster.main", "service_account.app"]
        assert exc_info.value.resource_type == "kafka_topic"

    def test_missing_attribute(self, instances: dict[str, ResourceInstance]) -> None:
        """Test a ready instance lacking the attribute is reported by path."""
        with pytest.raises(DependencyNotReady) as exc_info:
            ReferenceResolver(instances).resolve("${network.prod.dns_domain}")

        assert exc_info.value.pending == ["network.prod.dns_domain"]

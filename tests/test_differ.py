"""Tests for drift detection and diff normalization."""

from __future__ import annotations

from provisioner.differ import (
    DiffNormalizer,
    DriftDetector,
    FieldChange,
    NormalizationRule,
    NormalizationType,
    _glob_match,
)
from provisioner.resources import ACCESS_POINT, AZURE_EGRESS_BLOCK, NETWORK, SERVICE_ACCOUNT

NETWORK_ATTRS = {
    "display_name": "prod",
    "cloud": "AWS",
    "region": "us-west-2",
    "connection_types": ["PRIVATELINK", "PEERING"],
    "zones": ["usw2-az1", "usw2-az2", "usw2-az3"],
    "environment": [{"id": "env-1"}],
}


class TestGlobMatch:
    """Tests for _glob_match."""

    def test_single_segment(self) -> None:
        """Test * stops at dots."""
        assert _glob_match("config.retention", "config.*")
        assert not _glob_match("config.a.b", "config.*")

    def test_any_depth(self) -> None:
        """Test ** crosses dots."""
        assert _glob_match("config.a.b", "config.**")
        assert _glob_match("anything", "**")

    def test_literal(self) -> None:
        """Test dots in the pattern are literal."""
        assert _glob_match("cloud", "cloud")
        assert not _glob_match("cloudX", "cloud")


class TestNormalizationRule:
    """Tests for NormalizationRule."""

    def test_matches_type_and_path(self) -> None:
        """Test a rule is scoped to its resource type."""
        rule = NormalizationRule(
            resource_type="kafka_topic",
            path_pattern="config.*",
            normalization_type=NormalizationType.NUMERIC_STRING,
        )
        assert rule.matches("kafka_topic", "config.retention")
        assert not rule.matches("network", "config.retention")

    def test_wildcard_type(self) -> None:
        """Test * matches every resource type."""
        rule = NormalizationRule(
            resource_type="*",
            path_pattern="*",
            normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        )
        assert rule.matches("network", "anything.nested")


class TestDiffNormalizer:
    """Tests for DiffNormalizer."""

    def test_empty_equivalence(self) -> None:
        """Test empty values equal missing ones."""
        normalizer = DiffNormalizer()
        assert normalizer.are_equivalent([], None, "network", "zones")
        assert normalizer.are_equivalent("", None, "network", "cidr")
        assert normalizer.are_equivalent({}, None, "network", "x")

    def test_case_insensitive_cloud(self) -> None:
        """Test cloud names compare without case."""
        assert DiffNormalizer().are_equivalent("aws", "AWS", "network", "cloud")

    def test_numeric_topic_config(self) -> None:
        """Test topic config numbers compare by value."""
        normalizer = DiffNormalizer()
        assert normalizer.are_equivalent("3", 3, "kafka_topic", "config.min.insync.replicas")
        assert not normalizer.are_equivalent("3", 3, "network", "config.x")

    def test_unordered_rule(self) -> None:
        """Test custom rules add order independence."""
        normalizer = DiffNormalizer(
            rules=[
                NormalizationRule(
                    resource_type="network",
                    path_pattern="zones",
                    normalization_type=NormalizationType.ARRAY_UNORDERED,
                )
            ]
        )
        assert normalizer.is_unordered("network", "zones")
        assert normalizer.are_equivalent(["b", "a"], ["a", "b"], "network", "zones")

    def test_default_rules_disabled(self) -> None:
        """Test defaults can be turned off."""
        normalizer = DiffNormalizer(enable_default_rules=False)
        assert not normalizer.are_equivalent([], None, "network", "zones")


class TestFieldChange:
    """Tests for FieldChange."""

    def test_attribute(self) -> None:
        """Test the top-level attribute of a nested path."""
        assert FieldChange("environment.0.id", "a", "b").attribute == "environment"
        assert FieldChange("display_name", "a", "b").attribute == "display_name"


class TestDriftDetector:
    """Tests for DriftDetector."""

    def test_no_drift(self) -> None:
        """Test identical attributes produce no changes."""
        result = DriftDetector().diff(NETWORK, NETWORK_ATTRS, dict(NETWORK_ATTRS))
        assert not result.has_changes
        assert result.immutable_violations == set()

    def test_computed_fields_ignored(self) -> None:
        """Test server-added attributes never count as drift."""
        observed = {**NETWORK_ATTRS, "dns_domain": "abc.aws.confluent.cloud"}
        desired = {**NETWORK_ATTRS, "dns_domain": "other"}

        assert not DriftDetector().diff(NETWORK, desired, observed).has_changes

    def test_unset_desired_ignored(self) -> None:
        """Test None in desired state means unspecified."""
        desired = {**NETWORK_ATTRS, "cidr": None}
        observed = {**NETWORK_ATTRS, "cidr": "10.0.0.0/16"}

        assert not DriftDetector().diff(NETWORK, desired, observed).has_changes

    def test_unordered_fields(self) -> None:
        """Test zones and connection types compare as sets."""
        observed = {
            **NETWORK_ATTRS,
            "zones": ["usw2-az3", "usw2-az1", "usw2-az2"],
            "connection_types": ["PEERING", "PRIVATELINK"],
        }
        assert not DriftDetector().diff(NETWORK, NETWORK_ATTRS, observed).has_changes

    def test_mutable_change(self) -> None:
        """Test a display name change is reported without violations."""
        observed = {**NETWORK_ATTRS, "display_name": "old"}

        result = DriftDetector().diff(NETWORK, NETWORK_ATTRS, observed)

        assert result.changed_fields == ["display_name"]
        assert result.changes[0].observed == "old"
        assert result.changes[0].desired == "prod"
        assert result.immutable_violations == set()

    def test_nested_immutable_change(self) -> None:
        """Test a nested change is reported by path and flagged immutable."""
        observed = {**NETWORK_ATTRS, "environment": [{"id": "env-2"}]}

        result = DriftDetector().diff(NETWORK, NETWORK_ATTRS, observed)

        assert result.changed_fields == ["environment.0.id"]
        assert result.immutable_violations == {"environment"}

    def test_never_observed(self) -> None:
        """Test every set attribute differs from a missing observation."""
        result = DriftDetector().diff(SERVICE_ACCOUNT, {"display_name": "app"}, None)
        assert result.changed_fields == ["display_name"]

    def test_server_assigned_endpoint_fields_ignored(self) -> None:
        """Test fields reported only by the API inside a variant block never drift."""
        endpoint = {"private_link_service_resource_id": "/subscriptions/s/pls"}
        observed = {
            AZURE_EGRESS_BLOCK: [
                {
                    **endpoint,
                    "private_endpoint_domain": "dbname.database.windows.net",
                    "private_endpoint_custom_dns_config_domains": ["b.example", "a.example"],
                }
            ]
        }

        result = DriftDetector().diff(ACCESS_POINT, {AZURE_EGRESS_BLOCK: [endpoint]}, observed)

        assert not result.has_changes

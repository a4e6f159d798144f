"""Tests for the run entry point: end-to-end reconciliation through HTTP."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import pytest

from cloud_mock import ScenarioTransport
from provisioner.config import Config, ProviderContext, ReconciliationMode
from provisioner.errors import NotFoundError, ProvisioningFailed
from provisioner.main import JsonFormatter, exit_code_for, reconcile
from provisioner.models import ResourceStatus
from provisioner.reconciler import Action, PassResult, ReconcileResult
from provisioner.spec_loader import SpecLoadError
from provisioner.state import StateStore

DOCUMENT = """
resources:
  - type: environment
    name: prod
    attributes:
      display_name: prod
  - type: service_account
    name: app
    attributes:
      display_name: app-sa
      description: application
  - type: role_binding
    name: app-admin
    attributes:
      principal: User:${service_account.app.id}
      role_name: EnvironmentAdmin
      crn_pattern: ${environment.prod.resource_name}
"""

ENV_CRN = "crn://confluent.cloud/organization=foo/environment=env-1"


def stub_api(transport: ScenarioTransport) -> None:
    transport.stub(
        "POST",
        "/org/v2/environments",
        201,
        {"id": "env-1", "display_name": "prod", "metadata": {"resource_name": ENV_CRN}},
    )
    transport.stub(
        "POST",
        "/iam/v2/service-accounts",
        201,
        {
            "id": "sa-1",
            "api_version": "iam/v2",
            "kind": "ServiceAccount",
            "display_name": "app-sa",
            "description": "application",
        },
    )
    transport.stub(
        "POST",
        "/iam/v2/role-bindings",
        201,
        {
            "id": "rb-1",
            "principal": "User:sa-1",
            "role_name": "EnvironmentAdmin",
            "crn_pattern": ENV_CRN,
        },
    )
    for path in (
        "/org/v2/environments/env-1",
        "/iam/v2/service-accounts/sa-1",
        "/iam/v2/role-bindings/rb-1",
    ):
        transport.stub("DELETE", path, 204)


@pytest.fixture
def config(tmp_path: Path) -> Config:
    specs = tmp_path / "resources.yaml"
    specs.write_text(DOCUMENT)
    return Config(
        context=ProviderContext(endpoint="http://api.test", api_key="key", api_secret="secret"),
        specs_path=specs,
        state_path=tmp_path / "state.yaml",
        reconcile_interval_seconds=0,
        max_passes=3,
    )


class TestReconcile:
    """End-to-end tests for reconcile()."""

    @pytest.mark.asyncio
    async def test_apply_creates_in_dependency_order(self, config: Config) -> None:
        """Test a fresh document is created and converges on the next pass."""
        transport = ScenarioTransport()
        stub_api(transport)

        result = await reconcile(config, transport=transport)

        assert result is not None
        assert result.converged
        assert result.pass_number == 2
        assert exit_code_for(result) == 0
        posts = transport.calls_to("POST")
        assert sorted(posts[:2]) == ["/iam/v2/service-accounts", "/org/v2/environments"]
        assert posts[2] == "/iam/v2/role-bindings"
        assert transport.json_body(2) == {
            "principal": "User:sa-1",
            "role_name": "EnvironmentAdmin",
            "crn_pattern": ENV_CRN,
        }
        assert transport.unmatched == []

        state = StateStore(config.state_path).load()
        assert {key: i.id for key, i in state.items()} == {
            "environment.prod": "env-1",
            "service_account.app": "sa-1",
            "role_binding.app-admin": "rb-1",
        }
        assert all(i.status == ResourceStatus.READY for i in state.values())

    @pytest.mark.asyncio
    async def test_second_run_makes_no_calls(self, config: Config) -> None:
        """Test persisted state prevents a redundant create."""
        transport = ScenarioTransport()
        stub_api(transport)
        await reconcile(config, transport=transport)

        rerun = ScenarioTransport()
        result = await reconcile(config, transport=rerun)

        assert result is not None
        assert result.converged
        assert result.pass_number == 1
        assert rerun.requests == []

    @pytest.mark.asyncio
    async def test_destroy_deletes_dependents_first(self, config: Config) -> None:
        """Test destroy removes everything and empties the state file."""
        transport = ScenarioTransport()
        stub_api(transport)
        await reconcile(config, transport=transport)

        result = await reconcile(config, destroy=True, transport=transport)

        assert result is not None
        assert result.converged
        deletes = transport.calls_to("DELETE")
        assert deletes[0] == "/iam/v2/role-bindings/rb-1"
        assert sorted(deletes[1:]) == [
            "/iam/v2/service-accounts/sa-1",
            "/org/v2/environments/env-1",
        ]
        assert StateStore(config.state_path).load() == {}
        transport.assert_exhausted()

    @pytest.mark.asyncio
    async def test_plan_does_not_call_or_persist(self, config: Config) -> None:
        """Test plan mode reports creates without touching remote or state."""
        transport = ScenarioTransport()
        plan_config = Config(
            context=config.context,
            specs_path=config.specs_path,
            state_path=config.state_path,
            mode=ReconciliationMode.PLAN,
        )

        result = await reconcile(plan_config, transport=transport)

        assert result is not None
        assert not result.converged
        assert {r.action for r in result.results.values()} == {Action.CREATE}
        assert exit_code_for(result) == 0
        assert transport.requests == []
        assert not config.state_path.exists()

    @pytest.mark.asyncio
    async def test_missing_document(self, config: Config, tmp_path: Path) -> None:
        """Test a missing document fails before any call."""
        missing = Config(
            context=config.context,
            specs_path=tmp_path / "missing.yaml",
            state_path=config.state_path,
        )
        with pytest.raises(SpecLoadError):
            await reconcile(missing, transport=ScenarioTransport())


class TestExitCode:
    """Tests for exit_code_for."""

    def test_stopped_before_first_pass(self) -> None:
        """Test a run stopped before any pass is not a failure."""
        assert exit_code_for(None) == 0

    def test_converged(self) -> None:
        """Test a converged pass exits 0."""
        result = PassResult(pass_number=1, results={"a.b": ReconcileResult(key="a.b")})
        assert exit_code_for(result) == 0

    def test_not_converged(self) -> None:
        """Test an apply that ran out of passes exits 1."""
        result = PassResult(
            pass_number=3,
            results={"a.b": ReconcileResult(key="a.b", action=Action.CREATE)},
        )
        assert exit_code_for(result) == 1

    def test_failed_plan(self) -> None:
        """Test a plan with a failed instance exits 1."""
        result = PassResult(
            pass_number=1,
            mode=ReconciliationMode.PLAN,
            results={
                "a.b": ReconcileResult(
                    key="a.b", error=ProvisioningFailed("boom", resource_type="network")
                ),
                "c.d": ReconcileResult(key="c.d", action=Action.UPDATE),
            },
        )
        assert exit_code_for(result) == 1

    def test_plan_with_changes(self) -> None:
        """Test a plan with pending changes exits 0."""
        result = PassResult(
            pass_number=1,
            mode=ReconciliationMode.PLAN,
            results={"a.b": ReconcileResult(key="a.b", action=Action.UPDATE)},
        )
        assert exit_code_for(result) == 0


class TestJsonFormatter:
    """Tests for JsonFormatter."""

    def test_includes_extra_fields(self) -> None:
        """Test extra fields are merged into the JSON record."""
        record = logging.LogRecord(
            name="provisioner.reconciler",
            level=logging.INFO,
            pathname=__file__,
            lineno=1,
            msg="Resource created",
            args=(),
            exc_info=None,
        )
        record.instance = "network.prod"
        record.resource_id = "n-1"

        data = json.loads(JsonFormatter().format(record))

        assert data["message"] == "Resource created"
        assert data["level"] == "INFO"
        assert data["logger"] == "provisioner.reconciler"
        assert data["instance"] == "network.prod"
        assert data["resource_id"] == "n-1"
        assert data["timestamp"].endswith("Z")
        assert "msg" not in data

    def test_includes_exception(self) -> None:
        """Test exception tracebacks are formatted."""
        try:
            raise NotFoundError("gone", resource_type="network", instance_id="n-1")
        except NotFoundError:
            record = logging.LogRecord(
                name="x",
                level=logging.ERROR,
                pathname=__file__,
                lineno=1,
                msg="failed",
                args=(),
                exc_info=sys.exc_info(),
            )

        data = json.loads(JsonFormatter().format(record))
        assert "NotFoundError" in data["exception"]

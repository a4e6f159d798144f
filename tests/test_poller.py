"""Tests for convergence polling."""

from __future__ import annotations

import asyncio

import pytest

from cloud_mock import VirtualClock
from provisioner.config import BackoffStrategy, Config
from provisioner.errors import (
    NotFoundError,
    ProvisioningFailed,
    ProvisioningTimeout,
    TransientNetworkError,
)
from provisioner.models import OperationResult, ResourceType
from provisioner.poller import ConvergencePoller, PollPolicy


class ScriptedReads:
    """Read callable answering from a list of statuses or exceptions."""

    def __init__(self, *outcomes: str | Exception, message: str = "") -> None:
        self.outcomes = list(outcomes)
        self.message = message
        self.calls = 0

    async def __call__(self, resource_id: str) -> OperationResult:
        self.calls += 1
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return OperationResult(
            resource_id=resource_id,
            payload={"status": outcome},
            remote_status=outcome,
            message=self.message,
        )


def make_poller(clock: VirtualClock, **policy: float) -> ConvergencePoller:
    return ConvergencePoller(PollPolicy(**policy), sleep=clock.sleep, clock=clock)


class TestPollPolicy:
    """Tests for the wait schedule."""

    def test_exponential_capped(self) -> None:
        """Test exponential growth is capped at the max interval."""
        policy = PollPolicy(interval_seconds=5, max_interval_seconds=30)
        assert [policy.interval(tick) for tick in range(1, 6)] == [5, 10, 20, 30, 30]

    def test_fixed(self) -> None:
        """Test fixed backoff never grows."""
        policy = PollPolicy(interval_seconds=5, backoff=BackoffStrategy.FIXED)
        assert policy.interval(1) == policy.interval(10) == 5

    def test_from_config(self) -> None:
        """Test policy values come from configuration."""
        config = Config(
            poll_interval_seconds=2,
            poll_max_interval_seconds=8,
            poll_backoff=BackoffStrategy.FIXED,
            provisioning_timeout_seconds=120,
        )
        policy = PollPolicy.from_config(config)
        assert policy.interval_seconds == 2
        assert policy.max_interval_seconds == 8
        assert policy.backoff == BackoffStrategy.FIXED
        assert policy.timeout_seconds == 120


class TestPollUntilTerminal:
    """Tests for polling towards a ready or failed status."""

    @pytest.mark.asyncio
    async def test_immediately_terminal_reads_once(self) -> None:
        """Test a ready object costs one read and no wait."""
        clock = VirtualClock()
        read = ScriptedReads("READY")
        result = await make_poller(clock).poll_until_terminal(
            read, ResourceType.NETWORK, "n-1", {"READY"}
        )
        assert result.remote_status == "READY"
        assert read.calls == 1
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_returns_terminal_read(self) -> None:
        """Test the result is the read that reported the terminal status."""
        clock = VirtualClock()
        read = ScriptedReads("PROVISIONING", "PROVISIONING", "READY")
        result = await make_poller(clock, interval_seconds=1, max_interval_seconds=10).poll_until_terminal(
            read, ResourceType.NETWORK, "n-1", {"READY"}
        )
        assert result.payload == {"status": "READY"}
        assert read.calls == 3
        assert clock.sleeps == [1, 2]

    @pytest.mark.asyncio
    async def test_status_comparison_ignores_case(self) -> None:
        """Test terminal statuses match case-insensitively."""
        read = ScriptedReads("ready")
        result = await make_poller(VirtualClock()).poll_until_terminal(
            read, ResourceType.NETWORK, "n-1", {"READY"}
        )
        assert result.remote_status == "ready"

    @pytest.mark.asyncio
    async def test_failure_status_raises_with_remote_message(self) -> None:
        """Test a failure status stops polling with the API's message."""
        read = ScriptedReads("PROVISIONING", "FAILED", message="quota exceeded in us-west-2")
        with pytest.raises(ProvisioningFailed) as exc_info:
            await make_poller(VirtualClock()).poll_until_terminal(
                read, ResourceType.NETWORK, "n-1", {"READY"}, {"FAILED"}
            )
        assert exc_info.value.message == "quota exceeded in us-west-2"
        assert exc_info.value.remote_status == "FAILED"
        assert exc_info.value.instance_id == "n-1"
        assert read.calls == 2

    @pytest.mark.asyncio
    async def test_failure_without_message(self) -> None:
        """Test a bare failure status still names the status."""
        read = ScriptedReads("FAILED")
        with pytest.raises(ProvisioningFailed, match="remote status FAILED"):
            await make_poller(VirtualClock()).poll_until_terminal(
                read, ResourceType.NETWORK, "n-1", {"READY"}, {"FAILED"}
            )

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        """Test the deadline raises ProvisioningTimeout with the last status."""
        clock = VirtualClock()
        read = ScriptedReads("PROVISIONING")
        poller = make_poller(
            clock, interval_seconds=10, max_interval_seconds=10, timeout_seconds=35
        )
        with pytest.raises(ProvisioningTimeout) as exc_info:
            await poller.poll_until_terminal(read, ResourceType.NETWORK, "n-1", {"READY"})

        assert exc_info.value.last_status == "PROVISIONING"
        assert read.calls == 4
        assert clock.now == 30
        assert clock.now <= 35

    @pytest.mark.asyncio
    async def test_timeout_argument_overrides_policy(self) -> None:
        """Test a per-call timeout replaces the policy deadline."""
        clock = VirtualClock()
        read = ScriptedReads("PROVISIONING")
        poller = make_poller(clock, interval_seconds=1, max_interval_seconds=1)
        with pytest.raises(ProvisioningTimeout):
            await poller.poll_until_terminal(
                read, ResourceType.NETWORK, "n-1", {"READY"}, timeout=3
            )
        assert read.calls == 4

    @pytest.mark.asyncio
    async def test_transient_and_not_found_are_ticks(self) -> None:
        """Test transient failures and eventual-consistency 404s keep polling."""
        read = ScriptedReads(
            NotFoundError("not yet visible"),
            TransientNetworkError("503", status_code=503),
            "READY",
        )
        result = await make_poller(VirtualClock()).poll_until_terminal(
            read, ResourceType.NETWORK, "n-1", {"READY"}
        )
        assert result.remote_status == "READY"
        assert read.calls == 3

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self) -> None:
        """Test cancelling a poll stops it without swallowing CancelledError."""
        read = ScriptedReads("PROVISIONING")
        poller = ConvergencePoller(PollPolicy(interval_seconds=60, max_interval_seconds=60))
        task = asyncio.create_task(
            poller.poll_until_terminal(read, ResourceType.NETWORK, "n-1", {"READY"})
        )
        while read.calls == 0:
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert read.calls == 1


class TestPollUntilGone:
    """Tests for polling a deletion to completion."""

    @pytest.mark.asyncio
    async def test_returns_on_not_found(self) -> None:
        """Test polling stops at the first NotFound."""
        clock = VirtualClock()
        read = ScriptedReads("DELETING", NotFoundError("gone"))
        await make_poller(clock, interval_seconds=1).poll_until_gone(
            read, ResourceType.NETWORK, "n-1"
        )
        assert read.calls == 2
        assert clock.sleeps == [1]

    @pytest.mark.asyncio
    async def test_timeout_while_present(self) -> None:
        """Test an object that never disappears times out."""
        read = ScriptedReads("DELETING")
        poller = make_poller(VirtualClock(), interval_seconds=5, max_interval_seconds=5)
        with pytest.raises(ProvisioningTimeout, match="still present"):
            await poller.poll_until_gone(read, ResourceType.NETWORK, "n-1", timeout=12)
        assert read.calls == 3

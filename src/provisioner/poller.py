"""Convergence polling for asynchronously provisioned resources.

Some resource kinds accept a Create or Update immediately and finish the
work in the background (PROVISIONING, then READY or FAILED). The poller
reads such an object until it reports a terminal status.

GUARANTEES:
- The first Read happens immediately, without an initial wait
- Exactly one Read per tick
- A failure status raises ProvisioningFailed carrying the remote message
- The deadline is checked before every wait; exceeding it raises ProvisioningTimeout
- Cancellation propagates unchanged, callers decide what status to keep
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass

from .config import (
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_POLL_MAX_INTERVAL_SECONDS,
    DEFAULT_PROVISIONING_TIMEOUT_SECONDS,
    BackoffStrategy,
    Config,
)
from .errors import NotFoundError, ProvisioningFailed, ProvisioningTimeout, TransientNetworkError
from .models import OperationResult, ResourceType

logger = logging.getLogger(__name__)

BACKOFF_MULTIPLIER = 2.0


@dataclass(frozen=True)
class PollPolicy:
    """Wait schedule and overall deadline for one poll."""

    interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    max_interval_seconds: float = DEFAULT_POLL_MAX_INTERVAL_SECONDS
    backoff: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    multiplier: float = BACKOFF_MULTIPLIER
    timeout_seconds: float = DEFAULT_PROVISIONING_TIMEOUT_SECONDS

    @classmethod
    def from_config(cls, config: Config) -> PollPolicy:
        return cls(
            interval_seconds=config.poll_interval_seconds,
            max_interval_seconds=config.poll_max_interval_seconds,
            backoff=config.poll_backoff,
            timeout_seconds=config.provisioning_timeout_seconds,
        )

    def interval(self, tick: int) -> float:
        """Wait after the given (1-based) tick."""
        if self.backoff == BackoffStrategy.FIXED:
            return self.interval_seconds
        return min(self.interval_seconds * self.multiplier ** (tick - 1), self.max_interval_seconds)


class ConvergencePoller:
    """Reads a remote object until it reaches a terminal status.

    Args:
        policy: Wait schedule and default deadline.
        sleep: Awaitable sleep, replaceable in tests.
        clock: Monotonic clock in seconds, replaceable in tests.
    """

    def __init__(
        self,
        policy: PollPolicy | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._policy = policy or PollPolicy()
        self._sleep = sleep
        self._clock = clock

    @property
    def policy(self) -> PollPolicy:
        return self._policy

    async def poll_until_terminal(
        self,
        read: Callable[[str], Awaitable[OperationResult]],
        resource_type: ResourceType,
        resource_id: str,
        terminal_statuses: Iterable[str],
        failure_statuses: Iterable[str] = (),
        timeout: float | None = None,
    ) -> OperationResult:
        """Read until the object reports a terminal status.

        Transient failures and NotFound (eventual consistency right after a
        create) count as non-terminal ticks.

        Returns:
            The OperationResult of the terminal Read.

        Raises:
            ProvisioningFailed: On a failure status.
            ProvisioningTimeout: If the deadline passes first.
        """
        terminal = {s.upper() for s in terminal_statuses}
        failures = {s.upper() for s in failure_statuses}
        deadline = self._clock() + (timeout if timeout is not None else self._policy.timeout_seconds)
        last_status = ""
        tick = 0

        while True:
            tick += 1
            try:
                result = await read(resource_id)
            except (TransientNetworkError, NotFoundError) as e:
                logger.debug(
                    "Poll read did not succeed, will retry",
                    extra={
                        "resource_type": resource_type.value,
                        "resource_id": resource_id,
                        "tick": tick,
                        "error": str(e),
                    },
                )
            else:
                last_status = result.remote_status.upper()
                if last_status in failures:
                    raise ProvisioningFailed(
                        result.message or f"remote status {last_status}",
                        remote_status=last_status,
                        resource_type=resource_type.value,
                        instance_id=resource_id,
                    )
                if last_status in terminal:
                    logger.info(
                        "Resource reached terminal status",
                        extra={
                            "resource_type": resource_type.value,
                            "resource_id": resource_id,
                            "status": last_status,
                            "ticks": tick,
                        },
                    )
                    return result

            wait = self._policy.interval(tick)
            if self._clock() + wait > deadline:
                raise ProvisioningTimeout(
                    f"did not reach {sorted(terminal)} before timeout "
                    f"(last status: {last_status or 'unknown'})",
                    last_status=last_status,
                    resource_type=resource_type.value,
                    instance_id=resource_id,
                )
            await self._sleep(wait)

    async def poll_until_gone(
        self,
        read: Callable[[str], Awaitable[OperationResult]],
        resource_type: ResourceType,
        resource_id: str,
        timeout: float | None = None,
    ) -> None:
        """Read until the object reports NotFound.

        Raises:
            ProvisioningTimeout: If the object still exists at the deadline.
        """
        deadline = self._clock() + (timeout if timeout is not None else self._policy.timeout_seconds)
        last_status = ""
        tick = 0

        while True:
            tick += 1
            try:
                result = await read(resource_id)
            except NotFoundError:
                logger.info(
                    "Resource deletion confirmed",
                    extra={
                        "resource_type": resource_type.value,
                        "resource_id": resource_id,
                        "ticks": tick,
                    },
                )
                return
            except TransientNetworkError as e:
                logger.debug(
                    "Poll read failed transiently, will retry",
                    extra={"resource_id": resource_id, "tick": tick, "error": str(e)},
                )
            else:
                last_status = result.remote_status.upper()

            wait = self._policy.interval(tick)
            if self._clock() + wait > deadline:
                raise ProvisioningTimeout(
                    f"still present before timeout (last status: {last_status or 'unknown'})",
                    last_status=last_status,
                    resource_type=resource_type.value,
                    instance_id=resource_id,
                )
            await self._sleep(wait)

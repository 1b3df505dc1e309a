"""
Dependency wait strategies.

Before a dependent container is started again, the container it depends on
must satisfy the dependency condition:

- started:   nothing to wait for
- completed: the container must reach a not-running state (one-shot jobs,
             migrations). An unclean exit code is reported but still lets
             the dependent start.
- healthy:   the container's health status is polled until it reports
             healthy (or has no healthcheck), becomes unhealthy, or the
             deadline passes.

Both waits are bounded by a 5 minute deadline. The clock and sleep function
are injectable so the state machine can be driven by a fake clock in tests.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

import requests

from updates.types import DependencyCondition
from utils.async_docker import async_docker_call
from utils.image_id import short_id

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 10
DEFAULT_DEADLINE = 300

HEALTH_HEALTHY = "healthy"
HEALTH_UNHEALTHY = "unhealthy"
HEALTH_NONE = "none"


class WaitOutcome(Enum):
    READY = "ready"
    UNCLEAN_EXIT = "unclean_exit"
    UNHEALTHY = "unhealthy"
    TIMEOUT = "timeout"
    ERROR = "error"


@dataclass(frozen=True)
class WaitResult:
    """Result of waiting on a depended-on container."""

    outcome: WaitOutcome
    detail: str = ""
    exit_code: Optional[int] = None

    @property
    def should_start(self) -> bool:
        """Dependent may be started (an unclean exit still allows it)."""
        return self.outcome in (WaitOutcome.READY, WaitOutcome.UNCLEAN_EXIT)


class DependencyWaiter:
    """Waits on a depended-on container according to a dependency condition."""

    def __init__(
        self,
        client: Any,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable = asyncio.sleep,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        deadline: float = DEFAULT_DEADLINE,
    ):
        self.client = client
        self.clock = clock
        self.sleep = sleep
        self.poll_interval = poll_interval
        self.deadline = deadline

    async def wait(self, condition: DependencyCondition, container_id: str) -> WaitResult:
        if condition == DependencyCondition.STARTED:
            return WaitResult(WaitOutcome.READY)
        if condition == DependencyCondition.COMPLETED:
            return await self.wait_for_exit(container_id)
        return await self.wait_for_health(container_id)

    async def wait_for_exit(self, container_id: str) -> WaitResult:
        """
        Block until the container is no longer running.

        Returns:
            READY on exit code 0, UNCLEAN_EXIT on any other exit code,
            TIMEOUT when the deadline passes, ERROR on transport failures
        """
        logger.debug(f"Waiting for container {short_id(container_id)} to exit")
        try:
            response = await asyncio.wait_for(
                async_docker_call(
                    self.client.api.wait,
                    container_id,
                    timeout=self.deadline,
                    condition="not-running",
                ),
                timeout=self.deadline,
            )
        except (asyncio.TimeoutError, requests.exceptions.ReadTimeout):
            return WaitResult(WaitOutcome.TIMEOUT, "not exiting in a reasonable amount of time")
        except requests.exceptions.ConnectionError as e:
            # urllib3 read timeouts surface as ConnectionError from the docker SDK
            if "timed out" in str(e).lower():
                return WaitResult(WaitOutcome.TIMEOUT, "not exiting in a reasonable amount of time")
            return WaitResult(WaitOutcome.ERROR, str(e))
        except Exception as e:
            return WaitResult(WaitOutcome.ERROR, str(e))

        error = (response or {}).get("Error")
        if error and error.get("Message"):
            return WaitResult(WaitOutcome.ERROR, error["Message"])

        exit_code = int((response or {}).get("StatusCode", 0))
        if exit_code != 0:
            return WaitResult(WaitOutcome.UNCLEAN_EXIT, f"exit code {exit_code}", exit_code=exit_code)
        return WaitResult(WaitOutcome.READY, exit_code=0)

    async def wait_for_health(self, container_id: str) -> WaitResult:
        """
        Poll the container's health status until it settles or the deadline passes.

        Returns:
            READY when healthy or without healthcheck, UNHEALTHY when unhealthy,
            TIMEOUT when the deadline passes, ERROR when inspect fails
        """
        deadline = self.clock() + self.deadline

        while True:
            await self.sleep(self.poll_interval)
            if self.clock() >= deadline:
                return WaitResult(WaitOutcome.TIMEOUT, "not starting or becoming healthy in a reasonable amount of time")

            logger.debug(f"Waiting on container {short_id(container_id)} to start or become healthy")
            try:
                attrs = await async_docker_call(self.client.api.inspect_container, container_id)
            except Exception as e:
                return WaitResult(WaitOutcome.ERROR, str(e))

            health = (attrs.get("State") or {}).get("Health") or {}
            status = health.get("Status") or HEALTH_NONE

            if status in (HEALTH_HEALTHY, HEALTH_NONE):
                return WaitResult(WaitOutcome.READY)
            if status == HEALTH_UNHEALTHY:
                return WaitResult(WaitOutcome.UNHEALTHY, "became unhealthy")
            # "starting": keep polling

"""
Container Dependency Resolution

Finds containers that declare a compose depends_on relationship on a
container being updated, stops them before the update and starts them
again afterwards once the dependency condition is met.

The depends_on label written by docker compose looks like:
    db:service_healthy:true,cache:service_started:false

Every entry is dependency[:condition[:restart]]. A restart flag of false
means the dependent can live through a recreation of its dependency, so it
is neither stopped nor started.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from updates.types import ContainerRecord, DependencyCondition
from utils.async_docker import async_docker_call
from utils.container_health import DependencyWaiter, WaitOutcome
from utils.labels import LABEL_DEPENDS_ON, LABEL_STOP_TIMEOUT, label_int, parse_bool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DependencyEntry:
    """One entry of a depends_on label."""
    dependency: str
    condition: DependencyCondition = DependencyCondition.HEALTHY
    restart: bool = True


def parse_depends_on(value: Optional[str]) -> List[DependencyEntry]:
    """
    Parse a depends_on label value.

    Unknown conditions fall back to healthy, unparsable restart flags to true.

    Examples:
        "api"                                       -> healthy, restart
        "api:service_started"                       -> started, restart
        "api:service_completed_successfully:false"  -> completed, no restart
    """
    entries = []
    for raw in (value or "").split(","):
        parts = raw.strip().split(":")
        if not parts[0]:
            continue

        condition = DependencyCondition.HEALTHY
        restart = True
        if len(parts) > 1:
            condition = DependencyCondition.from_compose(parts[1].lower())
        if len(parts) > 2:
            try:
                restart = parse_bool(parts[2])
            except ValueError:
                restart = True

        entries.append(DependencyEntry(parts[0], condition, restart))
    return entries


def find_dependency_entry(value: Optional[str], name: str) -> Optional[DependencyEntry]:
    """First depends_on entry naming the container, or None."""
    for entry in parse_depends_on(value):
        if entry.dependency == name:
            return entry
    return None


@dataclass(frozen=True)
class DependentContainer:
    """Running container that depends on a container being updated."""
    id: str
    name: str
    stop_timeout: int
    condition: DependencyCondition

    @classmethod
    def from_summary(cls, summary: Dict[str, Any], condition: DependencyCondition, stop_timeout: int) -> 'DependentContainer':
        names = summary.get("Names") or [summary["Id"]]
        labels = summary.get("Labels") or {}
        return cls(
            id=summary["Id"],
            name=names[0].lstrip("/"),
            stop_timeout=label_int(labels, LABEL_STOP_TIMEOUT, stop_timeout),
            condition=condition,
        )


class DependencyResolver:
    """Discovers, stops and restarts the dependents of a container."""

    def __init__(self, client: Any, stop_timeout: int, waiter: Optional[DependencyWaiter] = None):
        self.client = client
        self.stop_timeout = stop_timeout
        self.waiter = waiter or DependencyWaiter(client)

    async def get_dependents(self, container: ContainerRecord) -> List[DependentContainer]:
        """
        List running containers whose depends_on label names the container.

        Raises:
            docker.errors.DockerException: Listing containers failed
        """
        logger.debug(f"Fetching containers depending on {container.name}")
        summaries = await async_docker_call(
            self.client.api.containers,
            filters={"label": LABEL_DEPENDS_ON, "status": "running"},
        )

        dependents = []
        for summary in summaries:
            value = (summary.get("Labels") or {}).get(LABEL_DEPENDS_ON)
            entry = find_dependency_entry(value, container.name)
            if entry is None or not entry.restart:
                continue
            dependents.append(DependentContainer.from_summary(summary, entry.condition, self.stop_timeout))

        if dependents:
            logger.info(f"Container {container.name} has {len(dependents)} dependent container(s): "
                        f"{', '.join(d.name for d in dependents)}")
        return dependents

    async def stop_dependents(self, dependents: List[DependentContainer]) -> List[str]:
        """Stop every dependent; failures become warnings."""
        warnings = []
        for dependent in dependents:
            logger.debug(f"Stopping dependent container {dependent.name}")
            try:
                await async_docker_call(self.client.api.stop, dependent.id, timeout=dependent.stop_timeout)
            except Exception as e:
                logger.error(f"Failed to stop dependent container {dependent.name}: {e}")
                warnings.append(f"failed to stop container {dependent.name}: {e}")
        return warnings

    async def start_dependents(self, dependents: List[DependentContainer], depends_on: ContainerRecord) -> List[str]:
        """
        Start every dependent once the recreated container satisfies its condition.

        Args:
            dependents: Containers stopped before the update
            depends_on: The recreated container

        Returns:
            Warning strings, never raises for per-dependent failures
        """
        warnings = []
        for dependent in dependents:
            warning = await self._start_dependent(dependent, depends_on)
            if warning:
                logger.warning(warning)
                warnings.append(warning)
        return warnings

    async def _start_dependent(self, dependent: DependentContainer, depends_on: ContainerRecord) -> Optional[str]:
        logger.debug(f"Starting dependent container {dependent.name} "
                     f"({dependent.condition.value} on {depends_on.name})")

        result = await self.waiter.wait(dependent.condition, depends_on.id)

        if not result.should_start:
            if result.outcome == WaitOutcome.TIMEOUT:
                return (f"timed out starting container {dependent.name} due to {depends_on.name} "
                        f"{result.detail}")
            if result.outcome == WaitOutcome.UNHEALTHY:
                return f"failed to start container {dependent.name} because {depends_on.name} became unhealthy"
            return (f"failed to start container {dependent.name} due to an error while waiting "
                    f"on {depends_on.name}: {result.detail}")

        warning = None
        if result.outcome == WaitOutcome.UNCLEAN_EXIT:
            warning = f"container {depends_on.name} exit code not clean: {result.exit_code}"

        try:
            await async_docker_call(self.client.api.start, dependent.id)
        except Exception as e:
            logger.error(f"Failed to start dependent container {dependent.name}: {e}")
            start_warning = f"failed to start container {dependent.name} depending on {depends_on.name}: {e}"
            return f"{warning}; {start_warning}" if warning else start_warning

        logger.debug(f"Started dependent container {dependent.name}")
        return warning

"""
DependencyHealthGraph - Health state per dependency with cascading degradation.

The graph is built once from the configured dependencies and edges. Nodes live
in an arena (list) and edges are integer indices into it; the topological order
is computed at build time, so a cyclic configuration is rejected up front and
propagation always terminates.

Each node has an own state, the worse of what its breaker and its health check
report, and an effective state: the worst of its own state and the effective
state of every upstream. HealthMonitor runs the health checks with a timeout,
on demand or as an APScheduler interval job.
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Iterable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger
from pydantic import BaseModel

from travel_planner.services.circuit_breaker import CircuitState
from travel_planner.services.config import DependencyEdge


class HealthState(str, Enum):
    """Health of a dependency, ordered from best to worst."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]

    @classmethod
    def worst(cls, states: Iterable["HealthState"]) -> "HealthState":
        return max(states, key=lambda s: s.severity, default=cls.HEALTHY)


_SEVERITY = {
    HealthState.HEALTHY: 0,
    HealthState.DEGRADED: 1,
    HealthState.UNHEALTHY: 2,
}


class HealthRecord(BaseModel):
    """Public health snapshot of one dependency."""

    service_id: str
    state: HealthState = HealthState.HEALTHY
    own_state: HealthState = HealthState.HEALTHY
    consecutive_failures: int = 0  # Breaker failure streak
    check_failures: int = 0  # Failed health checks in a row
    degraded_by: list[str] = []  # Upstreams worsening the effective state
    updated_at: datetime


@dataclass
class _Node:
    service_id: str
    own_state: HealthState = HealthState.HEALTHY
    state: HealthState = HealthState.HEALTHY
    breaker_state: HealthState = HealthState.HEALTHY
    check_state: HealthState = HealthState.HEALTHY
    consecutive_failures: int = 0
    check_failures: int = 0
    upstream: list[int] = field(default_factory=list)
    downstream: list[int] = field(default_factory=list)
    updated_at: datetime = field(default_factory=datetime.now)


class DependencyHealthGraph:
    """
    Tracks health per dependency and propagates degradation along edges.

    Implements the BreakerListener protocol, so it can be attached to a
    CircuitBreakerRegistry directly.

    Usage:
        graph = DependencyHealthGraph(
            ["database", "search"],
            [DependencyEdge(upstream="database", dependent="search")],
        )
        graph.report_status("database", HealthState.UNHEALTHY)
        graph.get("search").state  # HealthState.UNHEALTHY
    """

    def __init__(
        self,
        dependencies: Iterable[str],
        edges: Iterable[DependencyEdge] = (),
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._clock = clock
        self._nodes: list[_Node] = []
        self._index: dict[str, int] = {}

        for service_id in dependencies:
            if service_id in self._index:
                raise ValueError(f"Duplicate dependency in health graph: {service_id}")
            self._index[service_id] = len(self._nodes)
            self._nodes.append(_Node(service_id=service_id, updated_at=clock()))

        for edge in edges:
            up = self._require(edge.upstream)
            down = self._require(edge.dependent)
            if up == down:
                raise ValueError(f"Self-dependency not allowed: {edge.upstream}")
            if down not in self._nodes[up].downstream:
                self._nodes[up].downstream.append(down)
                self._nodes[down].upstream.append(up)

        self._topo_rank = self._topological_rank()

    def _require(self, service_id: str) -> int:
        try:
            return self._index[service_id]
        except KeyError:
            raise ValueError(f"Edge references unknown dependency: {service_id}") from None

    def _topological_rank(self) -> list[int]:
        """Kahn's algorithm. Returns each node's position in topological order."""
        in_degree = [len(node.upstream) for node in self._nodes]
        queue = deque(i for i, d in enumerate(in_degree) if d == 0)
        rank = [-1] * len(self._nodes)
        position = 0

        while queue:
            i = queue.popleft()
            rank[i] = position
            position += 1
            for j in self._nodes[i].downstream:
                in_degree[j] -= 1
                if in_degree[j] == 0:
                    queue.append(j)

        if position != len(self._nodes):
            cyclic = [self._nodes[i].service_id for i, r in enumerate(rank) if r < 0]
            raise ValueError(f"Dependency graph contains a cycle among: {cyclic}")
        return rank

    # BreakerListener protocol

    def breaker_state_changed(
        self,
        service_id: str,
        old_state: CircuitState,
        new_state: CircuitState,
        failure_count: int,
    ) -> None:
        if service_id not in self._index:
            return
        node = self._nodes[self._index[service_id]]
        node.consecutive_failures = failure_count

        if new_state == CircuitState.OPEN:
            node.breaker_state = HealthState.UNHEALTHY
        elif new_state == CircuitState.HALF_OPEN:
            node.breaker_state = HealthState.DEGRADED
        else:
            node.breaker_state = HealthState.DEGRADED if failure_count else HealthState.HEALTHY

        self._refresh(self._index[service_id])

    def breaker_failures_changed(self, service_id: str, failure_count: int) -> None:
        # Only sent while the breaker is CLOSED
        if service_id not in self._index:
            return
        node = self._nodes[self._index[service_id]]
        node.consecutive_failures = failure_count
        node.breaker_state = HealthState.DEGRADED if failure_count else HealthState.HEALTHY
        self._refresh(self._index[service_id])

    # Health check reporting (HealthMonitor, or any other external check)

    def report_status(
        self,
        service_id: str,
        state: HealthState,
        failures: int | None = None,
    ) -> None:
        """Record a health check result for a dependency and propagate."""
        index = self._require(service_id)
        node = self._nodes[index]
        if failures is not None:
            node.check_failures = failures
        elif state == HealthState.HEALTHY:
            node.check_failures = 0
        node.check_state = state
        self._refresh(index)

    def _refresh(self, index: int) -> None:
        node = self._nodes[index]
        node.updated_at = self._clock()
        own = HealthState.worst([node.breaker_state, node.check_state])
        if node.own_state != own:
            logger.info(
                f"Dependency '{node.service_id}' own health: {node.own_state.value} -> {own.value}"
            )
            node.own_state = own
        self._propagate(index)

    def _propagate(self, start: int) -> None:
        """Recompute effective state of start and everything reachable from it."""
        reachable = {start}
        stack = [start]
        while stack:
            i = stack.pop()
            for j in self._nodes[i].downstream:
                if j not in reachable:
                    reachable.add(j)
                    stack.append(j)

        # Upstreams always come first in topological order
        for i in sorted(reachable, key=lambda n: self._topo_rank[n]):
            node = self._nodes[i]
            effective = HealthState.worst(
                [node.own_state] + [self._nodes[u].state for u in node.upstream]
            )
            if effective != node.state:
                if i != start:
                    logger.warning(
                        f"Dependency '{node.service_id}' {node.state.value} -> "
                        f"{effective.value} (cascaded)"
                    )
                node.state = effective
                node.updated_at = self._clock()

    # Queries

    def get(self, service_id: str) -> HealthRecord:
        return self._record(self._nodes[self._require(service_id)])

    def state_of(self, service_id: str) -> HealthState:
        return self._nodes[self._require(service_id)].state

    def snapshot(self) -> dict[str, HealthRecord]:
        """Health records of every dependency."""
        return {node.service_id: self._record(node) for node in self._nodes}

    def overall_state(self) -> HealthState:
        return HealthState.worst(node.state for node in self._nodes)

    def upstreams_of(self, service_id: str) -> list[str]:
        return [self._nodes[u].service_id for u in self._nodes[self._require(service_id)].upstream]

    def unhealthy_upstreams(self, service_id: str) -> list[str]:
        """Direct upstreams whose effective state is unhealthy."""
        return [
            self._nodes[u].service_id
            for u in self._nodes[self._require(service_id)].upstream
            if self._nodes[u].state == HealthState.UNHEALTHY
        ]

    def _record(self, node: _Node) -> HealthRecord:
        degraded_by = [
            self._nodes[u].service_id
            for u in node.upstream
            if self._nodes[u].state.severity > node.own_state.severity
        ]
        return HealthRecord(
            service_id=node.service_id,
            state=node.state,
            own_state=node.own_state,
            consecutive_failures=node.consecutive_failures,
            check_failures=node.check_failures,
            degraded_by=degraded_by,
            updated_at=node.updated_at,
        )


HealthCheck = Callable[[], Awaitable[bool]]


class HealthMonitor:
    """
    Runs health checks concurrently, each bounded by a timeout, and feeds the
    results into a DependencyHealthGraph.

    A check returning True marks the dependency healthy. A check returning
    False, raising or timing out is a failure: the first failures mark it
    degraded, `unhealthy_after` consecutive failures mark it unhealthy.

    Usage:
        monitor = HealthMonitor(graph, timeout=5)
        monitor.register("amadeus_auth", auth.health_check)
        await monitor.run_once()
        monitor.start(interval=60)
    """

    def __init__(
        self,
        graph: DependencyHealthGraph,
        timeout: float = 5.0,
        unhealthy_after: int = 2,
    ):
        if timeout <= 0:
            raise ValueError("health check timeout must be positive")
        if unhealthy_after < 1:
            raise ValueError("unhealthy_after must be >= 1")
        self.graph = graph
        self.timeout = timeout
        self.unhealthy_after = unhealthy_after
        self._checks: dict[str, HealthCheck] = {}
        self._failures: dict[str, int] = {}
        self.scheduler = AsyncIOScheduler()

    def register(self, service_id: str, check: HealthCheck) -> None:
        self.graph.state_of(service_id)  # Unknown dependency -> ValueError
        self._checks[service_id] = check
        self._failures.setdefault(service_id, 0)

    @property
    def service_ids(self) -> list[str]:
        return list(self._checks)

    async def run_once(self) -> dict[str, bool]:
        """Run every check once. Returns the pass/fail result per dependency."""
        service_ids = list(self._checks)
        results = await asyncio.gather(*(self._run_check(sid) for sid in service_ids))
        return dict(zip(service_ids, results))

    async def _run_check(self, service_id: str) -> bool:
        try:
            ok = bool(await asyncio.wait_for(self._checks[service_id](), self.timeout))
        except asyncio.TimeoutError:
            logger.warning(f"Health check '{service_id}' timed out after {self.timeout}s")
            ok = False
        except Exception as e:
            logger.warning(f"Health check '{service_id}' failed: {e}")
            ok = False

        if ok:
            self._failures[service_id] = 0
            self.graph.report_status(service_id, HealthState.HEALTHY, 0)
        else:
            failures = self._failures[service_id] + 1
            self._failures[service_id] = failures
            state = (
                HealthState.UNHEALTHY
                if failures >= self.unhealthy_after
                else HealthState.DEGRADED
            )
            self.graph.report_status(service_id, state, failures)
        return ok

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self, interval: float) -> None:
        """Check every `interval` seconds, starting now."""
        if interval <= 0:
            raise ValueError("health check interval must be positive")
        if self.running:
            logger.warning("Health checks are already scheduled")
            return

        self.scheduler.add_job(
            self.run_once,
            trigger="interval",
            seconds=interval,
            next_run_time=datetime.now(),
            id="health_checks",
            name="Dependency health checks",
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(f"Health checks started for {self.service_ids} every {interval}s")

    def stop(self) -> None:
        if not self.running:
            return
        self.scheduler.shutdown(wait=False)
        logger.info("Health checks stopped")

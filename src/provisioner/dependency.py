"""Dependency ordering and gating between resource instances.

This module implements dependency management for one reconciliation pass:
1. Dependency graph construction from ``depends_on`` declarations
2. Cycle detection; instances on or behind a cycle are held back
3. Wave ordering for execution (dependencies first, dependents first on delete)
4. Gating: an instance is only created or updated once all of its
   dependencies are ready, and only deleted once nothing managed needs it

EXAMPLE DOCUMENT:
```yaml
resources:
  - type: access_point
    name: egress
    depends_on:
      - network.prod        # explicit
    attributes:
      gateway:
        id: ${network.prod.gateway.0.id}   # inferred from the reference
```
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field

from .errors import DependencyCycle, DependencyNotReady, DependentsStillManaged
from .models import ResourceInstance, ResourceStatus

logger = logging.getLogger(__name__)


@dataclass
class DependencyNode:
    """A node in the dependency graph."""

    key: str
    depends_on: list[str] = field(default_factory=list)


@dataclass
class DependencyGraph:
    """Directed graph of instance dependencies."""

    nodes: dict[str, DependencyNode] = field(default_factory=dict)

    @classmethod
    def from_instances(cls, instances: Mapping[str, ResourceInstance]) -> DependencyGraph:
        graph = cls()
        for instance in instances.values():
            graph.add_node(instance.key, sorted(instance.depends_on))
        return graph

    def add_node(self, key: str, depends_on: list[str] | None = None) -> None:
        """Add a node, creating placeholder nodes for unknown dependencies."""
        if key in self.nodes:
            if depends_on:
                self.nodes[key].depends_on = depends_on
        else:
            self.nodes[key] = DependencyNode(key=key, depends_on=depends_on or [])

        for dep in depends_on or []:
            if dep not in self.nodes:
                self.nodes[dep] = DependencyNode(key=dep)

    def reachable(self, key: str) -> set[str]:
        """Keys ``key`` depends on, directly or transitively."""
        seen: set[str] = set()
        stack = list(self.nodes[key].depends_on)
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.nodes[current].depends_on)
        return seen

    def cycle_members(self) -> list[str]:
        """Keys that sit on a dependency cycle, sorted."""
        return sorted(key for key in self.nodes if key in self.reachable(key))

    def blocked_by_cycles(self) -> dict[str, list[str]]:
        """Map each key on or depending on a cycle to the cycle members it reaches.

        Keys absent from the result can be ordered and reconciled normally.
        """
        members = set(self.cycle_members())
        if not members:
            return {}
        blocked: dict[str, list[str]] = {}
        for key in self.nodes:
            reached = (self.reachable(key) | {key}) & members
            if reached:
                blocked[key] = sorted(reached)
        return blocked

    def validate(self) -> None:
        """Check the graph for cycles.

        Raises:
            DependencyCycle: Naming every node on a cycle.
        """
        members = self.cycle_members()
        if members:
            raise DependencyCycle(members)

    def waves(self) -> list[list[str]]:
        """Group keys into waves; every dependency sits in an earlier wave.

        Keys on or behind a cycle are left out; see blocked_by_cycles().
        """
        blocked = self.blocked_by_cycles()
        nodes = {key: node for key, node in self.nodes.items() if key not in blocked}

        dependents: dict[str, list[str]] = {key: [] for key in nodes}
        in_degree: dict[str, int] = {key: 0 for key in nodes}
        for node in nodes.values():
            for dep in node.depends_on:
                dependents[dep].append(node.key)
                in_degree[node.key] += 1

        result: list[list[str]] = []
        current = sorted(key for key, degree in in_degree.items() if degree == 0)
        while current:
            result.append(current)
            following: list[str] = []
            for key in current:
                for dependent in dependents[key]:
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        following.append(dependent)
            current = sorted(following)
        return result

    def topological_sort(self) -> list[str]:
        """Return keys in dependency order (dependencies first)."""
        return [key for wave in self.waves() for key in wave]

    def dependents_of(self, key: str) -> list[str]:
        return sorted(node.key for node in self.nodes.values() if key in node.depends_on)


class DependencyGate:
    """Decides whether an instance may be operated on now.

    Reads the status of other instances only; it never modifies them.
    """

    def unready_dependencies(
        self, instance: ResourceInstance, instances: Mapping[str, ResourceInstance]
    ) -> list[str]:
        """Dependencies of ``instance`` that are not ready, sorted."""
        pending = []
        for dep in sorted(instance.depends_on):
            upstream = instances.get(dep)
            if upstream is None or not upstream.is_ready:
                pending.append(dep)
        return pending

    def is_authorized(
        self, instance: ResourceInstance, instances: Mapping[str, ResourceInstance]
    ) -> bool:
        """True when every dependency of ``instance`` is ready."""
        return not self.unready_dependencies(instance, instances)

    def authorize(
        self, instance: ResourceInstance, instances: Mapping[str, ResourceInstance]
    ) -> None:
        """Raise unless ``instance`` may be created or updated now.

        Raises:
            DependencyNotReady: Listing the dependencies still pending.
        """
        pending = self.unready_dependencies(instance, instances)
        if pending:
            logger.info(
                "Dependencies not ready, deferring",
                extra={"instance": instance.key, "pending": pending},
            )
            raise DependencyNotReady(
                pending,
                resource_type=instance.resource_type.value,
                instance_id=instance.id,
            )

    def blocking_dependents(
        self, instance: ResourceInstance, instances: Mapping[str, ResourceInstance]
    ) -> list[str]:
        """Dependents of ``instance`` that still exist, sorted.

        Raises:
            DependentsStillManaged: If any of them is still declared in
                configuration, so the delete can never proceed by waiting.
        """
        dependents = [
            other
            for other in instances.values()
            if instance.key in other.depends_on and other.status != ResourceStatus.DELETED
        ]
        managed = sorted(other.key for other in dependents if other.is_managed)
        if managed:
            raise DependentsStillManaged(
                managed,
                resource_type=instance.resource_type.value,
                instance_id=instance.id,
            )
        # Remaining dependents are being deleted in this or an earlier wave
        return sorted(other.key for other in dependents if other.exists_remotely)

"""
Pitboss — Dependency Graph

Which top-level state namespaces depend on which. The causal analyzer uses
it to relate a change in one namespace to an issue raised in another, and
to walk a root cause back past the first change it found.
"""

from __future__ import annotations

from collections import defaultdict, deque
from typing import Protocol, runtime_checkable


@runtime_checkable
class DependencyLookup(Protocol):
    def get_dependencies(self, component: str) -> list[str]: ...

    def get_dependents(self, component: str) -> list[str]: ...


# Card-server topology: component → what it depends on
_DEFAULT_TOPOLOGY: dict[str, list[str]] = {
    "database": [],
    "server": ["database"],
    "game": ["server"],
    "players": ["game", "database"],
    "system": [],
    "monitoring": ["system", "game"],
}


class DependencyGraph:
    def __init__(self) -> None:
        self._dependencies: dict[str, list[str]] = {}
        self._dependents: dict[str, list[str]] = defaultdict(list)

    @classmethod
    def default(cls) -> DependencyGraph:
        graph = cls()
        for component, deps in _DEFAULT_TOPOLOGY.items():
            graph.add_component(component, deps)
        return graph

    def add_component(self, component: str, dependencies: list[str] | None = None) -> None:
        """Declare a component and what it depends on. Re-adding extends the list."""
        existing = self._dependencies.setdefault(component, [])
        for dep in dependencies or []:
            if dep in existing:
                continue
            existing.append(dep)
            self._dependencies.setdefault(dep, [])
            if component not in self._dependents[dep]:
                self._dependents[dep].append(component)

    def get_dependencies(self, component: str) -> list[str]:
        return list(self._dependencies.get(component, []))

    def get_dependents(self, component: str) -> list[str]:
        return list(self._dependents.get(component, []))

    def trace_impact(self, component: str) -> list[str]:
        """Every component transitively affected by a change to this one."""
        seen: set[str] = {component}
        order: list[str] = []
        queue: deque[str] = deque([component])
        while queue:
            current = queue.popleft()
            for dependent in self._dependents.get(current, []):
                if dependent not in seen:
                    seen.add(dependent)
                    order.append(dependent)
                    queue.append(dependent)
        return order

    @property
    def components(self) -> list[str]:
        return sorted(self._dependencies)

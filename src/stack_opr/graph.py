"""Graph module for stack orchestration.

Builds the dependency DAG over provisioning units and computes a layered
deployment order: every unit lands in exactly one layer, after all of its
dependencies. Units in the same layer are independent of each other.

Also hosts stable_order(), the source-order-preserving topological sort
shared by resource nodes within a unit and by manifest documents.
"""

import heapq
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Iterable

from common import DriverError

logger = logging.getLogger(__name__)


class GraphError(DriverError):
    """Base class for dependency graph errors."""


class DuplicateUnitError(GraphError):
    """A unit name was registered twice."""


class UnknownDependencyError(GraphError):
    """A unit depends on a name that is not registered."""


class CycleError(GraphError):
    """The dependency graph contains at least one cycle.

    Attributes:
        cycles: Each cycle as a sorted list of member names
        units: Sorted names of every member of every cycle
    """

    def __init__(self, cycles: list[list[str]]):
        self.cycles = cycles
        self.units = sorted({name for cycle in cycles for name in cycle})
        described = '; '.join(' -> '.join(c) for c in cycles)
        super().__init__(f"Dependency cycle detected: {described}")


@dataclass
class UnitNode:
    """A provisioning unit in the stack graph.

    Attributes:
        name: Unique unit name
        depends_on: Names of units this one depends on
        dependents: Names of units that depend on this one
    """
    name: str
    depends_on: set[str] = field(default_factory=set)
    dependents: set[str] = field(default_factory=set)

    @property
    def is_root(self) -> bool:
        return not self.depends_on

    def __repr__(self) -> str:
        return f"UnitNode({self.name}, depends_on={sorted(self.depends_on)})"


def find_cycles(names: Iterable[str], deps: dict[str, Iterable[str]]) -> list[list[str]]:
    """Return every cycle among names (strongly connected components).

    Only components with more than one member, or a single member that
    depends on itself, are reported. Edges leaving names are ignored.
    """
    members = set(names)
    index: dict[str, int] = {}
    low: dict[str, int] = {}
    stack: list[str] = []
    on_stack: set[str] = set()
    cycles: list[list[str]] = []
    counter = 0

    def visit(name: str) -> None:
        nonlocal counter
        index[name] = low[name] = counter
        counter += 1
        stack.append(name)
        on_stack.add(name)
        for dep in sorted(deps.get(name, ())):
            if dep not in members:
                continue
            if dep not in index:
                visit(dep)
                low[name] = min(low[name], low[dep])
            elif dep in on_stack:
                low[name] = min(low[name], index[dep])
        if low[name] == index[name]:
            component = []
            while True:
                member = stack.pop()
                on_stack.discard(member)
                component.append(member)
                if member == name:
                    break
            if len(component) > 1 or name in deps.get(name, ()):
                cycles.append(sorted(component))

    for name in sorted(members):
        if name not in index:
            visit(name)
    return sorted(cycles)


def stable_order(ids: list[str], deps: dict[str, Iterable[str]]) -> list[str]:
    """Topologically sort ids, otherwise preserving their given order.

    Among all items whose dependencies are already placed, the one that
    appears first in ids is placed next. Dependencies naming ids outside
    the list are ignored (callers validate those).

    Raises:
        CycleError: If the dependencies among ids contain a cycle
    """
    position = {item: i for i, item in enumerate(ids)}
    waiting: dict[str, set[str]] = {
        item: {d for d in deps.get(item, ()) if d in position} for item in ids
    }
    dependents: dict[str, list[str]] = {item: [] for item in ids}
    for item, item_deps in waiting.items():
        for dep in item_deps:
            dependents[dep].append(item)

    ready = [position[item] for item, item_deps in waiting.items() if not item_deps]
    heapq.heapify(ready)
    ordered: list[str] = []
    while ready:
        item = ids[heapq.heappop(ready)]
        ordered.append(item)
        for dependent in dependents[item]:
            waiting[dependent].discard(item)
            if not waiting[dependent]:
                heapq.heappush(ready, position[dependent])

    if len(ordered) != len(ids):
        placed = set(ordered)
        leftover = [item for item in ids if item not in placed]
        raise CycleError(find_cycles(leftover, waiting))
    return ordered


class StackGraph:
    """Dependency graph over provisioning units.

    Units are registered either in dependency order with register_unit(),
    or two-phase: declare_unit() for every unit, then link_unit() for each.
    """

    def __init__(self) -> None:
        self._units: dict[str, UnitNode] = {}

    def declare_unit(self, name: str) -> UnitNode:
        """Add a unit with no edges yet.

        Raises:
            DuplicateUnitError: If name is already registered
        """
        if name in self._units:
            raise DuplicateUnitError(f"Unit '{name}' is already registered")
        node = UnitNode(name=name)
        self._units[name] = node
        return node

    def link_unit(self, name: str, depends_on: Iterable[str]) -> None:
        """Add dependency edges from an already-declared unit.

        Raises:
            UnknownDependencyError: If name or any dependency is not registered
        """
        depends_on = set(depends_on)
        if name not in self._units:
            raise UnknownDependencyError(f"Unit '{name}' is not registered")
        unknown = sorted(d for d in depends_on if d not in self._units)
        if unknown:
            raise UnknownDependencyError(
                f"Unit '{name}' depends on unregistered unit(s): {', '.join(unknown)}")
        node = self._units[name]
        for dep in depends_on:
            node.depends_on.add(dep)
            self._units[dep].dependents.add(name)

    def register_unit(self, name: str, depends_on: Iterable[str] = ()) -> UnitNode:
        """Declare and link a unit whose dependencies are already registered.

        The graph is unchanged if registration fails.

        Raises:
            DuplicateUnitError: If name is already registered
            UnknownDependencyError: If a dependency is not registered
        """
        depends_on = set(depends_on)
        if name in self._units:
            raise DuplicateUnitError(f"Unit '{name}' is already registered")
        unknown = sorted(d for d in depends_on if d not in self._units and d != name)
        if unknown:
            raise UnknownDependencyError(
                f"Unit '{name}' depends on unregistered unit(s): {', '.join(unknown)}")
        node = self.declare_unit(name)
        self.link_unit(name, depends_on)
        return node

    @property
    def names(self) -> list[str]:
        return list(self._units)

    def __contains__(self, name: object) -> bool:
        return name in self._units

    def __len__(self) -> int:
        return len(self._units)

    def get_unit(self, name: str) -> UnitNode:
        """Get a UnitNode by name.

        Raises:
            KeyError: If unit name not found
        """
        return self._units[name]

    def compute_order(self) -> list[list[str]]:
        """Return units grouped into deployment layers.

        Layer 0 holds units without dependencies; each following layer holds
        the units whose dependencies all sit in earlier layers. Names within
        a layer are sorted for stable output; their order is not significant.

        Raises:
            CycleError: If no valid layering exists
        """
        scheduled: set[str] = set()
        pending = set(self._units)
        layers: list[list[str]] = []

        while pending:
            layer = sorted(
                name for name in pending
                if self._units[name].depends_on <= scheduled
            )
            if not layer:
                deps = {name: self._units[name].depends_on for name in pending}
                cycles = find_cycles(pending, deps)
                logger.error(f"Cannot order units: {cycles}")
                raise CycleError(cycles)
            layers.append(layer)
            scheduled.update(layer)
            pending.difference_update(layer)

        return layers

    def dependencies_of(self, name: str, transitive: bool = True) -> set[str]:
        """Units name depends on (directly, or through other units)."""
        return self._walk(name, lambda n: n.depends_on, transitive)

    def dependents_of(self, name: str, transitive: bool = True) -> set[str]:
        """Units that depend on name (directly, or through other units)."""
        return self._walk(name, lambda n: n.dependents, transitive)

    def _walk(self, name: str, edges, transitive: bool) -> set[str]:
        start = self._units[name]
        if not transitive:
            return set(edges(start))
        seen: set[str] = set()
        queue: deque[str] = deque(edges(start))
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(edges(self._units[current]))
        return seen

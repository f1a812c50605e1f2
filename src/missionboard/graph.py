"""Dependency graph analysis for work items.

The graph maps an item ID to the IDs it depends on. All traversals are
iterative so very large backlogs never hit the interpreter recursion limit.
Dependencies on IDs that do not exist are tolerated: they are ignored for
depth and cycle computation and reported separately as ``MISSING_DEPENDENCY``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from missionboard.stages import Stage

logger = logging.getLogger(__name__)

Graph = dict[str, list[str]]


@dataclass(slots=True)
class GraphNode:
    id: str
    dependencies: list[str] = field(default_factory=list)
    stage: Stage = Stage.BRIEFINGS
    title: str = ""


@dataclass(slots=True, frozen=True)
class MissingDependency:
    item: str
    dependency: str

    @property
    def message(self) -> str:
        return f"Item {self.item} depends on non-existent item {self.dependency}"

    def to_dict(self) -> dict[str, str]:
        return {
            "item": self.item,
            "error": "MISSING_DEPENDENCY",
            "dependency": self.dependency,
            "message": self.message,
        }


@dataclass(slots=True)
class DependencyReport:
    valid: bool
    total_items: int
    cycles: list[list[str]]
    validation_errors: list[MissingDependency]
    depths: dict[str, int]
    max_depth: int
    parallel_waves: int
    ready_items: list[str]
    waves: dict[int, list[str]]
    graph: Graph

    def to_dict(self, *, verbose: bool = False) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "valid": self.valid,
            "totalItems": self.total_items,
            "cycles": [list(cycle) for cycle in self.cycles],
            "depths": dict(self.depths),
            "maxDepth": self.max_depth,
            "parallelWaves": self.parallel_waves,
            "readyItems": list(self.ready_items),
        }
        if self.validation_errors:
            payload["validationErrors"] = [error.to_dict() for error in self.validation_errors]
        if verbose:
            payload["waves"] = {str(depth): ids for depth, ids in self.waves.items()}
            payload["graph"] = {key: list(value) for key, value in self.graph.items()}
        return payload


def build_graph(items: Iterable[GraphNode]) -> Graph:
    graph: Graph = {}
    for item in items:
        graph[item.id] = list(dict.fromkeys(item.dependencies or []))
    return graph


def _canonical_cycle(cycle: list[str]) -> tuple[str, ...]:
    body = cycle[:-1]
    pivot = body.index(min(body))
    return tuple(body[pivot:] + body[:pivot])


def detect_cycles(graph: Mapping[str, list[str]]) -> list[list[str]]:
    """Return every distinct cycle found by a depth-first walk.

    Each cycle is reported as a closed path: the repeated node appears first
    and last, so a cycle over ``k`` nodes yields ``k + 1`` entries.
    """
    visited: set[str] = set()
    cycles: list[list[str]] = []
    seen: set[tuple[str, ...]] = set()

    for root in graph:
        if root in visited:
            continue
        path: list[str] = [root]
        on_stack: set[str] = {root}
        visited.add(root)
        stack = [(root, iter(graph.get(root, [])))]
        while stack:
            node, deps = stack[-1]
            advanced = False
            for dep in deps:
                if dep not in graph:
                    continue
                if dep in on_stack:
                    cycle = path[path.index(dep) :] + [dep]
                    key = _canonical_cycle(cycle)
                    if key not in seen:
                        seen.add(key)
                        cycles.append(cycle)
                    continue
                if dep in visited:
                    continue
                visited.add(dep)
                on_stack.add(dep)
                path.append(dep)
                stack.append((dep, iter(graph.get(dep, []))))
                advanced = True
                break
            if not advanced:
                stack.pop()
                on_stack.discard(node)
                path.pop()
    return cycles


def calculate_depths(graph: Mapping[str, list[str]]) -> dict[str, int]:
    """Longest dependency chain below each item; leaves have depth 0.

    Back edges of a cycle are ignored so the computation always terminates.
    """
    depths: dict[str, int] = {}
    for root in graph:
        if root in depths:
            continue
        in_progress: set[str] = set()
        stack: list[tuple[str, bool]] = [(root, False)]
        while stack:
            node, expanded = stack.pop()
            if expanded:
                in_progress.discard(node)
                resolved = [depths[dep] for dep in graph.get(node, []) if dep in depths]
                depths[node] = 1 + max(resolved) if resolved else 0
                continue
            if node in depths or node in in_progress:
                continue
            in_progress.add(node)
            stack.append((node, True))
            for dep in graph.get(node, []):
                if dep in graph and dep not in depths and dep not in in_progress:
                    stack.append((dep, False))
    return {item_id: depths[item_id] for item_id in graph}


def group_waves(depths: Mapping[str, int]) -> dict[int, list[str]]:
    waves: dict[int, list[str]] = {}
    for item_id, depth in depths.items():
        waves.setdefault(depth, []).append(item_id)
    return {depth: sorted(waves[depth]) for depth in sorted(waves)}


def find_ready_items(items: Mapping[str, GraphNode]) -> list[str]:
    """Items still in ``briefings`` whose dependencies are all ``done``."""
    ready: list[str] = []
    for item_id, item in items.items():
        if item.stage is not Stage.BRIEFINGS:
            continue
        if all(
            dep in items and items[dep].stage is Stage.DONE for dep in item.dependencies or []
        ):
            ready.append(item_id)
    return ready


def validate_dependencies(items: Mapping[str, GraphNode]) -> list[MissingDependency]:
    errors: list[MissingDependency] = []
    for item_id, item in items.items():
        for dep in item.dependencies or []:
            if dep not in items:
                errors.append(MissingDependency(item=item_id, dependency=dep))
    return errors


def find_cycles_with(
    graph: Mapping[str, list[str]], item_id: str, dependencies: list[str]
) -> list[list[str]]:
    """Cycles that would exist if ``item_id`` depended on ``dependencies``."""
    candidate: Graph = {key: list(value) for key, value in graph.items()}
    candidate[item_id] = list(dependencies)
    return [cycle for cycle in detect_cycles(candidate) if item_id in cycle]


def analyze(items: Iterable[GraphNode], *, strict: bool = False) -> DependencyReport:
    by_id = {item.id: item for item in items}
    graph = build_graph(by_id.values())
    validation_errors = validate_dependencies(by_id)
    for error in validation_errors:
        logger.warning(error.message)
    cycles = detect_cycles(graph)
    depths = calculate_depths(graph)
    waves = group_waves(depths)
    valid = not cycles and (not strict or not validation_errors)
    return DependencyReport(
        valid=valid,
        total_items=len(by_id),
        cycles=cycles,
        validation_errors=validation_errors,
        depths=depths,
        max_depth=max(depths.values(), default=0),
        parallel_waves=len(waves),
        ready_items=find_ready_items(by_id),
        waves=waves,
        graph=graph,
    )

"""Sequence resolver - expands a playbook into an ordered plan of stages.

Resolution flattens the playbook's sequence and stages into candidate
invocations, looks up each task's dependencies in the registry, rejects
cycles with Kahn's algorithm, and partitions the candidates into stages that
are separated by hard synchronization barriers.
"""

from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from loguru import logger

from orchestra.core.exceptions import CycleDetected, ExplicitOrderViolatesDependency
from orchestra.planning.models import (
    InlineTask,
    Plan,
    Playbook,
    Stage,
    Task,
    TaskInvocation,
    TaskRef,
)
from orchestra.planning.registry import TaskRegistry

IMPLICIT_STAGE_NAME = "Sequence"


@dataclass(frozen=True)
class _Group:
    """Declared stage boundary (or the implicit sequence stage)."""

    name: str
    parallel: bool
    continue_on_error: bool | None


@dataclass(frozen=True)
class _Candidate:
    position: int
    entry: TaskRef | InlineTask
    group: _Group
    task: Task

    @property
    def number(self) -> str:
        return self.task.number


class SequenceResolver:
    """
    Resolve a playbook against the task registry into a ``Plan``.

    Explicit ordering always wins: a sequence that places a task before one of
    its dependencies is rejected instead of silently reordered. Within each
    declared stage, tasks are split into maximal runs of mutually independent
    tasks. Playbooks with ``InferOrder`` (ad-hoc selections) are instead staged
    by dependency level.

    Example:
        >>> resolver = SequenceResolver(registry)
        >>> plan = resolver.resolve(playbook)
        >>> plan.partition()
        [['0100'], ['0200']]
    """

    def __init__(self, registry: TaskRegistry) -> None:
        """
        Initialize the resolver.

        Args:
            registry: Read-only task registry consulted for dependencies.
        """
        self.registry = registry

    def resolve(
        self,
        playbook: Playbook,
        overrides: Mapping[str, Any] | None = None,
    ) -> Plan:
        """
        Resolve a playbook into a plan.

        Args:
            playbook: Loaded playbook (never mutated).
            overrides: Variable overrides layered over the playbook variables
                for the invocations' execution context.

        Returns:
            Plan with ordered stages.

        Raises:
            UnknownTask: If a referenced task is not registered.
            CycleDetected: If candidate dependencies form a cycle.
            ExplicitOrderViolatesDependency: If explicit order places a task
                before its dependency.
        """
        candidates = self._flatten(playbook)
        variables = {**playbook.variables, **(overrides or {})}

        if not candidates:
            logger.info(f"Playbook '{playbook.name}' has no tasks; resolved to an empty plan")
            return Plan(playbook=playbook.name, stages=[], variables=variables)

        if playbook.infer_order:
            candidates = self._deduplicate(candidates)

        graph = self.build_graph(candidates)
        levels = self.topological_levels(graph, playbook.name)

        if playbook.infer_order:
            groups = self._stage_by_levels(candidates, levels)
        else:
            self._validate_explicit_order(candidates, graph, playbook.name)
            groups = self._stage_by_runs(candidates, graph)

        stages = [
            self._build_stage(name, members, graph, playbook, variables)
            for name, members in groups
        ]

        logger.info(
            f"Resolved playbook '{playbook.name}' into {len(stages)} stages "
            f"with {len(candidates)} tasks"
        )
        for index, stage in enumerate(stages):
            logger.debug(
                f"Stage {index} '{stage.name}': {stage.task_numbers} "
                f"(parallel={stage.parallel_eligible})"
            )

        return Plan(playbook=playbook.name, stages=stages, variables=variables)

    # =========================================================================
    # FLATTENING
    # =========================================================================

    def _flatten(self, playbook: Playbook) -> list[_Candidate]:
        """Flatten sequence and stages into candidates in declared order."""
        entries: list[tuple[TaskRef | InlineTask, _Group]] = []

        if playbook.sequence:
            implicit = _Group(IMPLICIT_STAGE_NAME, playbook.parallel, None)
            entries.extend((entry, implicit) for entry in playbook.sequence)

        for stage in playbook.stages or []:
            group = _Group(stage.name, stage.parallel, stage.continue_on_error)
            entries.extend((entry, group) for entry in stage.tasks)

        return [
            _Candidate(
                position=position,
                entry=entry,
                group=group,
                task=self.registry.require(entry.number, playbook.name),
            )
            for position, (entry, group) in enumerate(entries)
        ]

    @staticmethod
    def _deduplicate(candidates: list[_Candidate]) -> list[_Candidate]:
        seen: set[str] = set()
        unique = []
        for candidate in candidates:
            if candidate.number in seen:
                logger.warning(f"Ignoring repeated task {candidate.number} in ad-hoc selection")
                continue
            seen.add(candidate.number)
            unique.append(candidate)
        return unique

    # =========================================================================
    # GRAPH BUILDING
    # =========================================================================

    def build_graph(self, candidates: list[_Candidate]) -> dict[str, list[str]]:
        """
        Build the dependency graph restricted to candidate tasks.

        Dependencies outside the candidate set are treated as satisfied by
        earlier runs.

        Returns:
            Dictionary mapping task number -> sorted dependency numbers.
        """
        numbers = {c.number for c in candidates}
        graph: dict[str, list[str]] = {}

        for number in sorted(numbers):
            deps = self.registry.dependencies_of(number)
            external = deps - numbers
            if external:
                logger.debug(
                    f"Task {number} dependencies outside this plan: {sorted(external)}"
                )
            graph[number] = sorted(deps & numbers)

        return graph

    # =========================================================================
    # CYCLE DETECTION
    # =========================================================================

    def topological_levels(
        self,
        graph: dict[str, list[str]],
        playbook: str | None = None,
    ) -> list[list[str]]:
        """
        Compute dependency levels with Kahn's algorithm.

        Each level holds the tasks whose dependencies are all placed in earlier
        levels, sorted by number.

        Raises:
            CycleDetected: If the queue empties while tasks remain unplaced.
        """
        in_degree = {node: len(deps) for node, deps in graph.items()}
        dependents: dict[str, list[str]] = {node: [] for node in graph}
        for node, deps in graph.items():
            for dep in deps:
                dependents[dep].append(node)

        queue: deque[str] = deque(sorted(n for n, d in in_degree.items() if d == 0))
        levels: list[list[str]] = []

        while queue:
            level = sorted(queue)
            queue.clear()
            levels.append(level)
            for node in level:
                for dependent in dependents[node]:
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        queue.append(dependent)

        placed = {n for level in levels for n in level}
        remaining = set(graph) - placed
        if remaining:
            subgraph = {n: [d for d in graph[n] if d in remaining] for n in sorted(remaining)}
            cycles = self.detect_cycles(subgraph)
            cycle = cycles[0] if cycles else None
            logger.error(f"Cannot schedule tasks {sorted(remaining)}: circular dependency")
            raise CycleDetected(remaining, playbook, cycle)

        return levels

    def detect_cycles(
        self,
        graph: dict[str, list[str]],
    ) -> list[list[str]] | None:
        """
        Detect cycles in the dependency graph using DFS.

        Args:
            graph: Dependency graph (task number -> [dependency numbers]).

        Returns:
            List of cycle paths if found, None otherwise.

        Example:
            >>> resolver.detect_cycles({"0100": ["0200"], "0200": ["0100"]})
            [['0100', '0200', '0100']]
        """
        WHITE, GRAY, BLACK = 0, 1, 2
        colors: dict[str, int] = {node: WHITE for node in graph}
        cycles: list[list[str]] = []

        def dfs(node: str, path: list[str]) -> bool:
            colors[node] = GRAY
            path.append(node)

            for neighbor in graph.get(node, []):
                if neighbor not in colors:
                    continue
                if colors[neighbor] == GRAY:
                    cycle_start = path.index(neighbor)
                    cycles.append(path[cycle_start:] + [neighbor])
                    return True
                if colors[neighbor] == WHITE and dfs(neighbor, path):
                    return True

            path.pop()
            colors[node] = BLACK
            return False

        for node in sorted(graph):
            if colors[node] == WHITE:
                dfs(node, [])

        return cycles if cycles else None

    # =========================================================================
    # STAGING
    # =========================================================================

    def _validate_explicit_order(
        self,
        candidates: list[_Candidate],
        graph: dict[str, list[str]],
        playbook: str,
    ) -> None:
        first_position: dict[str, int] = {}
        for candidate in candidates:
            first_position.setdefault(candidate.number, candidate.position)

        for candidate in candidates:
            for dep in graph[candidate.number]:
                if first_position[dep] > candidate.position:
                    raise ExplicitOrderViolatesDependency(candidate.number, dep, playbook)

    def _stage_by_runs(
        self,
        candidates: list[_Candidate],
        graph: dict[str, list[str]],
    ) -> list[tuple[str, list[_Candidate]]]:
        """Split each declared group into maximal runs of independent tasks."""
        grouped: list[tuple[_Group, list[_Candidate]]] = []
        for candidate in candidates:
            if grouped and grouped[-1][0] is candidate.group:
                grouped[-1][1].append(candidate)
            else:
                grouped.append((candidate.group, [candidate]))

        stages: list[tuple[str, list[_Candidate]]] = []
        for group, members in grouped:
            runs: list[list[_Candidate]] = []
            current: list[_Candidate] = []
            current_numbers: set[str] = set()

            for candidate in members:
                deps = set(graph[candidate.number])
                if current and (deps & current_numbers or candidate.number in current_numbers):
                    runs.append(current)
                    current, current_numbers = [], set()
                current.append(candidate)
                current_numbers.add(candidate.number)
            if current:
                runs.append(current)

            if len(runs) == 1:
                stages.append((group.name, runs[0]))
            else:
                stages.extend(
                    (f"{group.name} [{i}]", run) for i, run in enumerate(runs, start=1)
                )

        return stages

    def _stage_by_levels(
        self,
        candidates: list[_Candidate],
        levels: list[list[str]],
    ) -> list[tuple[str, list[_Candidate]]]:
        by_number = {c.number: c for c in candidates}
        stages = []
        for index, level in enumerate(levels, start=1):
            members = [by_number[n] for n in level]
            declared = {m.task.stage for m in members}
            name = declared.pop() if len(declared) == 1 else f"Level {index}"
            stages.append((name, members))
        return stages

    def _build_stage(
        self,
        name: str,
        members: list[_Candidate],
        graph: dict[str, list[str]],
        playbook: Playbook,
        variables: dict[str, Any],
    ) -> Stage:
        group = members[0].group
        # One non-parallel-safe task forces the whole batch to run sequentially
        parallel_eligible = group.parallel and all(m.task.parallel_safe for m in members)

        invocations = []
        for member in members:
            entry = member.entry
            continue_on_error = entry.continue_on_error
            if continue_on_error is None:
                continue_on_error = member.group.continue_on_error
            if continue_on_error is None:
                continue_on_error = playbook.continue_on_error

            invocations.append(
                TaskInvocation(
                    task=member.task,
                    position=member.position,
                    stage=name,
                    arguments=entry.render_arguments() if isinstance(entry, InlineTask) else [],
                    variables=variables,
                    timeout=entry.timeout,
                    continue_on_error=continue_on_error,
                    dependencies=tuple(graph[member.number]),
                )
            )

        return Stage(name=name, parallel_eligible=parallel_eligible, invocations=invocations)


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================


def resolve_playbook(
    playbook: Playbook,
    registry: TaskRegistry,
    overrides: Mapping[str, Any] | None = None,
) -> Plan:
    """
    Convenience function to resolve a playbook.

    Example:
        >>> plan = resolve_playbook(playbook, registry)
        >>> plan.total_stages
        2
    """
    return SequenceResolver(registry).resolve(playbook, overrides)

"""Dependency graph analysis over issues."""

import logging
import math
from collections import deque
from dataclasses import dataclass, field

from agent_dispatch.core.relationships import parse_relationships
from agent_dispatch.db.models import DependencyGraph, DependencyScore, Issue, IssueDependency

logger = logging.getLogger(__name__)


@dataclass
class GraphValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _add_unique(items: list[int], value: int):
    if value not in items:
        items.append(value)


class DependencyGraphAnalyzer:
    """Builds and queries a dependency graph. Holds no state between calls."""

    def build_graph(self, issues: list[Issue]) -> DependencyGraph:
        nodes: dict[int, IssueDependency] = {
            issue.number: IssueDependency(issue_number=issue.number) for issue in issues
        }

        for issue in issues:
            node = nodes[issue.number]
            parsed = parse_relationships(issue.body, issue.number)

            for number in parsed.blocked_by:
                _add_unique(node.depends_on, number)
            for number in parsed.blocks:
                _add_unique(node.blocks, number)
            for number in parsed.related:
                _add_unique(node.related_to, number)
            for number in parsed.children:
                _add_unique(node.subtasks, number)
                _add_unique(node.related_to, number)
            for number in parsed.parents:
                _add_unique(node.related_to, number)

        # Mirror edges so that depends_on and blocks agree on both ends.
        for number, node in nodes.items():
            for dep in node.depends_on:
                if dep in nodes:
                    _add_unique(nodes[dep].blocks, number)
            for blocked in node.blocks:
                if blocked in nodes:
                    _add_unique(nodes[blocked].depends_on, number)

        graph = DependencyGraph(nodes=nodes)
        graph.roots = [n for n, node in nodes.items() if not node.depends_on]
        graph.leaves = [n for n, node in nodes.items() if not node.blocks]
        graph.cycles = self.detect_cycles(graph)
        if graph.cycles:
            logger.warning("Dependency graph has %d cycle(s): %s", len(graph.cycles), graph.cycles)
        return graph

    def detect_cycles(self, graph: DependencyGraph) -> list[list[int]]:
        cycles: list[list[int]] = []
        visited: set[int] = set()
        on_stack: set[int] = set()

        def visit(number: int, path: list[int]):
            visited.add(number)
            on_stack.add(number)
            path = path + [number]

            node = graph.nodes.get(number)
            for dep in node.depends_on if node else []:
                if dep in on_stack:
                    cycles.append(path[path.index(dep):])
                elif dep not in visited and dep in graph.nodes:
                    visit(dep, path)

            on_stack.discard(number)

        for number in graph.nodes:
            if number not in visited:
                visit(number, [])

        return cycles

    def calculate_blocking_score(self, issue_number: int, graph: DependencyGraph) -> int:
        """Count the issues transitively blocked by ``issue_number``."""
        memo: dict[int, set[int]] = {}

        def blocked_set(number: int, visiting: set[int]) -> set[int]:
            if number in memo:
                return memo[number]
            if number in visiting:
                return set()
            visiting = visiting | {number}
            result: set[int] = set()
            node = graph.nodes.get(number)
            for blocked in node.blocks if node else []:
                result.add(blocked)
                result |= blocked_set(blocked, visiting)
            memo[number] = result
            return result

        blocked = blocked_set(issue_number, set())
        blocked.discard(issue_number)
        return len(blocked)

    def calculate_depth_from_root(self, issue_number: int, graph: DependencyGraph) -> float:
        queue = deque((root, 0) for root in graph.roots)
        seen = set(graph.roots)
        while queue:
            number, depth = queue.popleft()
            if number == issue_number:
                return depth
            node = graph.nodes.get(number)
            for blocked in node.blocks if node else []:
                if blocked not in seen:
                    seen.add(blocked)
                    queue.append((blocked, depth + 1))
        return math.inf

    def calculate_dependency_score(self, issue_number: int, graph: DependencyGraph,
                                   statuses: dict[int, str] | None = None) -> DependencyScore:
        node = graph.nodes.get(issue_number) or IssueDependency(issue_number=issue_number)
        statuses = statuses or {}
        return DependencyScore(
            issue_number=issue_number,
            blocking_score=self.calculate_blocking_score(issue_number, graph),
            blocked_by_count=len(node.depends_on),
            is_blocked=any(statuses.get(dep) != "closed" for dep in node.depends_on),
            is_leaf=not node.blocks,
            depth_from_root=self.calculate_depth_from_root(issue_number, graph),
        )

    def get_unblocked_issues(self, graph: DependencyGraph, statuses: dict[int, str]) -> list[int]:
        """Open issues whose every dependency is known to be closed."""
        unblocked = []
        for number, node in graph.nodes.items():
            if statuses.get(number) != "open":
                continue
            if all(statuses.get(dep) == "closed" for dep in node.depends_on):
                unblocked.append(number)
        return unblocked

    def validate_graph(self, graph: DependencyGraph) -> GraphValidation:
        validation = GraphValidation(valid=True)
        for cycle in graph.cycles or self.detect_cycles(graph):
            validation.errors.append(
                "Circular dependency: " + " -> ".join(f"#{n}" for n in cycle + cycle[:1])
            )

        for number, node in graph.nodes.items():
            for dep in node.depends_on:
                if dep not in graph.nodes:
                    validation.warnings.append(f"#{number} depends on #{dep}, which is not in the graph")
            for blocked in node.blocks:
                if blocked not in graph.nodes:
                    validation.warnings.append(f"#{number} blocks #{blocked}, which is not in the graph")

        validation.valid = not validation.errors
        return validation

    def get_dependency_path(self, from_issue: int, to_issue: int,
                            graph: DependencyGraph) -> list[int] | None:
        """Shortest path along ``blocks`` edges, or None if unreachable."""
        if from_issue not in graph.nodes:
            return None
        queue = deque([[from_issue]])
        seen = {from_issue}
        while queue:
            path = queue.popleft()
            if path[-1] == to_issue:
                return path
            node = graph.nodes.get(path[-1])
            for blocked in node.blocks if node else []:
                if blocked not in seen:
                    seen.add(blocked)
                    queue.append(path + [blocked])
        return None

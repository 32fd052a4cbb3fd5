from __future__ import annotations

from collections import deque


def _bfs(starts: set[str], edges: dict[str, set[str]]) -> set[str]:
    seen: set[str] = set()
    queue: deque[str] = deque()

    # Sorted so the visit order is the same on every run.
    for pkg in sorted(starts):
        if pkg not in seen:
            seen.add(pkg)
            queue.append(pkg)

    while queue:
        current = queue.popleft()
        for neighbour in sorted(edges.get(current, ())):
            if neighbour not in seen:
                seen.add(neighbour)
                queue.append(neighbour)

    return seen


def find_affected_packages(
    directly_changed: set[str],
    reverse_deps: dict[str, set[str]],
) -> set[str]:
    """BFS over reverse dependencies to find all transitively affected packages.

    Args:
        directly_changed: Set of package ids that were directly changed.
        reverse_deps: Mapping of package id → set of packages that depend on it.

    Returns:
        All transitively affected packages, including the directly changed ones.
    """
    return _bfs(directly_changed, reverse_deps)


def find_reachable_packages(
    roots: set[str],
    forward_deps: dict[str, set[str]],
) -> set[str]:
    """BFS over forward dependencies: the roots plus everything they depend on."""
    return _bfs(roots, forward_deps)

from __future__ import annotations

import logging
from collections.abc import Collection, Iterable, Sequence
from dataclasses import dataclass

from cratetrace.diff import check_force_triggers, map_files_to_packages
from cratetrace.graph import DependencyGraph, Package

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AffectedResult:
    force_all: bool
    changed_crates: tuple[str, ...] = ()
    affected_library_members: tuple[str, ...] = ()
    affected_binary_members: tuple[str, ...] = ()

    @classmethod
    def empty(cls) -> AffectedResult:
        return cls(force_all=False)

    def to_dict(self) -> dict:
        return {
            "changed_crates": list(self.changed_crates),
            "affected_library_members": list(self.affected_library_members),
            "affected_binary_members": list(self.affected_binary_members),
            "force_all": self.force_all,
        }


def is_excluded(package: Package, excluded: Iterable[str]) -> bool:
    """Check whether a package is hidden from results.

    Entries containing ``/`` are path rules matched against the package's
    directory relative to the workspace root: ``tools/`` matches every package
    under ``tools/``, ``tools/tool-alpha`` that exact directory. Other entries
    are compared against the package name.
    """
    for entry in excluded:
        if "/" in entry:
            prefix = entry.removesuffix("/")
            rel = package.relative_dir
            if rel == prefix or rel.startswith(prefix + "/"):
                return True
        elif package.name == entry:
            return True
    return False


def _names(
    graph: DependencyGraph,
    ids: Iterable[str],
    excluded: Collection[str],
    *,
    binary_only: bool = False,
) -> tuple[str, ...]:
    names = set()
    for pkg_id in ids:
        if not graph.is_workspace_member(pkg_id):
            continue
        package = graph.packages[pkg_id]
        if is_excluded(package, excluded):
            continue
        if binary_only and not package.is_binary:
            continue
        names.add(package.name)
    return tuple(sorted(names))


def compute_affected(
    graph: DependencyGraph,
    changed_files: Sequence[str],
    force_triggers: Sequence[str] = (),
    excluded: Collection[str] = (),
) -> AffectedResult:
    """Compute which workspace packages are affected by a set of changed files.

    ``excluded`` hides packages from all three output lists but does not
    prune the traversal: an excluded package still links its dependents to
    the changes below it. Exclusions apply the same way under force-all.

    Raises:
        ValueError: If a force trigger is not a valid glob.
    """
    if not changed_files:
        return AffectedResult.empty()

    force_all = check_force_triggers(list(changed_files), list(force_triggers))

    direct_ids = map_files_to_packages(changed_files, graph.workspace_packages())
    logger.debug("Directly changed: %s", sorted(direct_ids))

    if force_all:
        affected_ids = graph.query_workspace()
    else:
        affected_ids = graph.query_reverse(direct_ids)
    logger.debug(
        "Affected set has %d packages (force_all=%s)", len(affected_ids), force_all
    )

    return AffectedResult(
        force_all=force_all,
        changed_crates=_names(graph, direct_ids, excluded),
        affected_library_members=_names(graph, affected_ids, excluded),
        affected_binary_members=_names(graph, affected_ids, excluded, binary_only=True),
    )

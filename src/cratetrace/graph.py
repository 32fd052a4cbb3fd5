from __future__ import annotations

import enum
import json
import logging
import os
import subprocess
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from cratetrace.traverse import find_affected_packages, find_reachable_packages

logger = logging.getLogger(__name__)

SUPPORTED_METADATA_VERSIONS = {1}

CARGO_TIMEOUT = 120

_LIBRARY_KINDS = {"lib", "rlib", "dylib", "cdylib", "staticlib", "proc-macro"}


class TargetKind(enum.Enum):
    LIBRARY = "library"
    BINARY = "binary"
    OTHER = "other"

    @classmethod
    def from_cargo(cls, kind: str) -> TargetKind:
        """Classify a Cargo target kind string (``bin``, ``lib``, ``test``...)."""
        if kind == "bin":
            return cls.BINARY
        if kind in _LIBRARY_KINDS:
            return cls.LIBRARY
        return cls.OTHER


@dataclass(frozen=True)
class Package:
    id: str
    name: str
    relative_dir: str
    target_kinds: frozenset[TargetKind] = frozenset()

    @property
    def is_binary(self) -> bool:
        return TargetKind.BINARY in self.target_kinds


@dataclass
class DependencyGraph:
    """Package graph for one workspace.

    ``forward[a]`` holds the ids ``a`` depends on, ``reverse[b]`` the ids
    that depend on ``b``. Built once by :func:`parse_metadata` and only
    queried afterwards.
    """

    workspace_root: str = ""
    packages: dict[str, Package] = field(default_factory=dict)
    workspace_members: set[str] = field(default_factory=set)
    forward: dict[str, set[str]] = field(default_factory=lambda: defaultdict(set))
    reverse: dict[str, set[str]] = field(default_factory=lambda: defaultdict(set))
    _reverse_cache: dict[frozenset[str], frozenset[str]] = field(
        default_factory=dict, repr=False, compare=False
    )

    def workspace_packages(self) -> list[Package]:
        members = [self.packages[pkg_id] for pkg_id in self.workspace_members]
        return sorted(members, key=lambda p: p.name)

    def is_workspace_member(self, pkg_id: str) -> bool:
        return pkg_id in self.workspace_members

    def query_reverse(self, seed_ids) -> frozenset[str]:
        """Ids of the seeds plus every package depending on them transitively.

        Raises:
            KeyError: If a seed id is not part of this graph.
        """
        seeds = frozenset(seed_ids)
        for pkg_id in seeds:
            if pkg_id not in self.packages:
                raise KeyError(f"Package id {pkg_id!r} is not in the dependency graph")
        cached = self._reverse_cache.get(seeds)
        if cached is None:
            cached = frozenset(find_affected_packages(set(seeds), self.reverse))
            self._reverse_cache[seeds] = cached
        return cached

    def query_workspace(self) -> frozenset[str]:
        """Ids reachable from the workspace members, the members included."""
        return frozenset(
            find_reachable_packages(set(self.workspace_members), self.forward)
        )


def _metadata_path(path: str) -> PurePosixPath:
    # Windows hosts report paths like C:\ws\lib\Cargo.toml.
    return PurePosixPath(path.replace("\\", "/"))


def _relative_dir(manifest_path: str, workspace_root: PurePosixPath) -> str:
    pkg_dir = _metadata_path(manifest_path).parent
    try:
        return pkg_dir.relative_to(workspace_root).as_posix()
    except ValueError:
        return pkg_dir.as_posix()


def _target_kinds(targets: list[dict]) -> frozenset[TargetKind]:
    kinds = set()
    for target in targets:
        for kind in target.get("kind", []):
            kinds.add(TargetKind.from_cargo(kind))
    return frozenset(kinds)


def _edge_kinds_allowed(
    kinds: list[str | None], *, include_dev: bool, include_build: bool
) -> bool:
    """Whether an edge declared with ``kinds`` survives the dev/build filters."""
    for kind in kinds:
        if kind == "dev" and not include_dev:
            continue
        if kind == "build" and not include_build:
            continue
        return True
    return False


def _resolve_edges(
    resolve: dict, *, include_dev: bool, include_build: bool
) -> list[tuple[str, str]]:
    edges = []
    for node in resolve.get("nodes", []):
        node_id = node["id"]
        deps = node.get("deps")
        if deps is None:
            # Very old cargo: plain id list, no dependency kinds.
            edges.extend((node_id, dep_id) for dep_id in node.get("dependencies", []))
            continue
        for dep in deps:
            kinds = [k.get("kind") for k in dep.get("dep_kinds", [])] or [None]
            if _edge_kinds_allowed(
                kinds, include_dev=include_dev, include_build=include_build
            ):
                edges.append((node_id, dep["pkg"]))
    return edges


def _path_dependency_edges(
    packages: dict[str, Package],
    raw_packages: dict[str, dict],
    members: set[str],
    *,
    include_dev: bool,
    include_build: bool,
) -> list[tuple[str, str]]:
    """Edges between workspace members when ``resolve`` is absent (``--no-deps``)."""
    by_name = {packages[pkg_id].name: pkg_id for pkg_id in members}
    edges = []
    for pkg_id in members:
        for dep in raw_packages[pkg_id].get("dependencies", []):
            if dep.get("path") is None:
                continue
            target = by_name.get(dep.get("name", ""))
            if target is None:
                continue
            if _edge_kinds_allowed(
                [dep.get("kind")], include_dev=include_dev, include_build=include_build
            ):
                edges.append((pkg_id, target))
    return edges


def parse_metadata(
    data: dict,
    *,
    include_dev: bool = True,
    include_build: bool = True,
) -> DependencyGraph:
    """Build the dependency graph from ``cargo metadata --format-version 1`` output.

    Args:
        data: Decoded metadata JSON.
        include_dev: Whether dev-dependency edges are part of the graph.
        include_build: Whether build-dependency edges are part of the graph.

    Returns:
        A DependencyGraph with forward and reverse edges.

    Raises:
        ValueError: If the metadata is malformed or describes no workspace.
    """
    if not isinstance(data, dict):
        raise ValueError("cargo metadata must be a JSON object")

    version = data.get("version")
    if version not in SUPPORTED_METADATA_VERSIONS:
        logger.warning(
            "cargo metadata format version %s is not recognized (supported: %s). "
            "Results may be unreliable.",
            version,
            SUPPORTED_METADATA_VERSIONS,
        )

    for key in ("packages", "workspace_members", "workspace_root"):
        if key not in data:
            raise ValueError(f"cargo metadata is missing the {key!r} key")

    raw_members = data["workspace_members"]
    if not isinstance(raw_members, list):
        member_type = type(raw_members).__name__
        raise ValueError(f"workspace_members must be a list, got {member_type}")
    if not raw_members:
        raise ValueError("cargo metadata lists no workspace members")

    workspace_root = _metadata_path(data["workspace_root"])
    graph = DependencyGraph(workspace_root=workspace_root.as_posix())

    raw_packages: dict[str, dict] = {}
    for pkg_data in data["packages"]:
        try:
            pkg_id = pkg_data["id"]
            package = Package(
                id=pkg_id,
                name=pkg_data["name"],
                relative_dir=_relative_dir(pkg_data["manifest_path"], workspace_root),
                target_kinds=_target_kinds(pkg_data.get("targets", [])),
            )
        except KeyError as exc:
            raise ValueError(f"cargo metadata package entry is missing {exc}") from exc
        graph.packages[pkg_id] = package
        raw_packages[pkg_id] = pkg_data

    seen_names: dict[str, str] = {}
    for pkg_id in raw_members:
        if pkg_id not in graph.packages:
            raise ValueError(f"Workspace member {pkg_id!r} has no package entry")
        name = graph.packages[pkg_id].name
        if name in seen_names and seen_names[name] != pkg_id:
            raise ValueError(f"Two workspace members are named {name!r}")
        seen_names[name] = pkg_id
        graph.workspace_members.add(pkg_id)

    resolve = data.get("resolve")
    if resolve:
        edges = _resolve_edges(
            resolve, include_dev=include_dev, include_build=include_build
        )
    else:
        logger.debug("No resolve section, using path dependencies between members")
        edges = _path_dependency_edges(
            graph.packages,
            raw_packages,
            graph.workspace_members,
            include_dev=include_dev,
            include_build=include_build,
        )

    for source, target in edges:
        if source not in graph.packages or target not in graph.packages:
            logger.warning("Dropping edge %s -> %s to an unknown package", source, target)
            continue
        graph.forward[source].add(target)
        graph.reverse[target].add(source)

    logger.debug(
        "Parsed %d packages (%d workspace members) rooted at %s",
        len(graph.packages),
        len(graph.workspace_members),
        graph.workspace_root,
    )
    return graph


def read_metadata_file(
    path: Path,
    *,
    include_dev: bool = True,
    include_build: bool = True,
) -> DependencyGraph:
    """Build the dependency graph from a saved ``cargo metadata`` JSON file.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        ValueError: If the file is not valid metadata JSON.
        RuntimeError: If the file cannot be read.
    """
    try:
        data = json.loads(Path(path).read_text())
    except json.JSONDecodeError as exc:
        raise ValueError(f"{path} is not valid JSON: {exc}") from exc
    except FileNotFoundError:
        raise
    except (PermissionError, OSError) as exc:
        raise RuntimeError(f"Cannot read {path}: {exc}") from exc
    return parse_metadata(data, include_dev=include_dev, include_build=include_build)


def load_cargo_metadata(
    manifest_path: Path | None = None,
    *,
    cwd: Path | None = None,
    no_deps: bool = False,
    include_dev: bool = True,
    include_build: bool = True,
) -> DependencyGraph:
    """Run ``cargo metadata`` and build the dependency graph from its output."""
    cmd = ["cargo", "metadata", "--format-version", "1"]
    if no_deps:
        cmd.append("--no-deps")
    if manifest_path is not None:
        cmd.extend(["--manifest-path", os.fspath(manifest_path)])
    logger.debug("Running %s", " ".join(cmd))
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            cwd=cwd,
            timeout=CARGO_TIMEOUT,
        )
    except subprocess.TimeoutExpired:
        raise RuntimeError(f"cargo metadata timed out after {CARGO_TIMEOUT} seconds")
    except FileNotFoundError:
        raise RuntimeError("cargo executable not found on PATH")
    if result.returncode != 0:
        raise ValueError(
            "Failed to load package graph. Is this a Cargo workspace?\n"
            f"{result.stderr.strip()}"
        )
    try:
        data = json.loads(result.stdout)
    except json.JSONDecodeError as exc:
        raise ValueError(f"cargo metadata printed invalid JSON: {exc}") from exc
    return parse_metadata(data, include_dev=include_dev, include_build=include_build)

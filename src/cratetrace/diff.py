from __future__ import annotations

import logging
import subprocess
from collections.abc import Iterable
from pathlib import Path, PurePosixPath

from cratetrace.globs import compile_triggers
from cratetrace.graph import Package

logger = logging.getLogger(__name__)


GIT_TIMEOUT = 30


def _git(args: list[str], cwd: Path | None) -> subprocess.CompletedProcess[str]:
    try:
        return subprocess.run(
            ["git", *args],
            capture_output=True,
            text=True,
            cwd=cwd,
            timeout=GIT_TIMEOUT,
        )
    except subprocess.TimeoutExpired:
        raise RuntimeError(f"git command timed out after {GIT_TIMEOUT} seconds")


def get_git_root(cwd: Path | None = None) -> Path:
    """Get the git repository root directory."""
    result = _git(["rev-parse", "--show-toplevel"], cwd)
    if result.returncode != 0:
        raise ValueError("Not a git repository. Run cratetrace from within a git repo.")
    root = result.stdout.strip()
    logger.debug("Git root: %s", root)
    return Path(root)


def get_changed_files(base_ref: str, repo_root: Path | None = None) -> list[str]:
    """Files changed between the merge base of ``base_ref`` and HEAD.

    Returns paths relative to the git root.
    """
    if not base_ref or not base_ref.strip():
        raise ValueError("base_ref must not be empty")
    if "\x00" in base_ref:
        raise ValueError("base_ref must not contain null bytes")
    result = _git(["diff", "--name-only", f"{base_ref}...HEAD"], repo_root)
    if result.returncode != 0:
        stderr = result.stderr.strip()
        if "unknown revision" in stderr:
            raise ValueError(
                f"Could not resolve ref '{base_ref}'. Does the branch/ref exist? "
                "Try 'git fetch' or use --base with a valid ref.\n"
                "If running in CI, ensure you checkout with fetch-depth: 0."
            )
        raise RuntimeError(f"git diff failed: {stderr}")
    files = [f for f in result.stdout.splitlines() if f.strip()]
    logger.debug("Changed files (%d): %s", len(files), files)
    return files


def relativize_to_workspace(
    changed_files: list[str],
    git_root: Path,
    workspace_root: Path,
) -> list[str]:
    """Convert git-root-relative paths to workspace-root-relative paths.

    Files outside the workspace are dropped.
    """
    workspace_root = workspace_root.resolve()
    git_root = git_root.resolve()

    if workspace_root == git_root:
        return changed_files

    try:
        prefix = workspace_root.relative_to(git_root).as_posix()
    except ValueError:
        return []

    prefix_with_slash = prefix + "/"
    result = []
    for f in changed_files:
        if f.startswith(prefix_with_slash):
            result.append(f[len(prefix_with_slash) :])
        elif f == prefix:
            result.append(".")
    return result


def _dir_parts(package: Package) -> tuple[str, ...]:
    return PurePosixPath(package.relative_dir).parts


def _belongs_to(file_parts: tuple[str, ...], dir_parts: tuple[str, ...]) -> bool:
    # Whole components only: "lib-core-ext/x" is not under "lib-core".
    return file_parts[: len(dir_parts)] == dir_parts


def packages_for_file(filepath: str, packages: Iterable[Package]) -> list[str]:
    """Names of every package whose directory contains ``filepath``."""
    file_parts = PurePosixPath(filepath).parts
    return sorted(
        pkg.name for pkg in packages if _belongs_to(file_parts, _dir_parts(pkg))
    )


def map_files_to_packages(
    changed_files: list[str],
    packages: Iterable[Package],
) -> set[str]:
    """Map workspace-relative changed files to the ids of the packages they touch.

    A file belongs to a package when the package's relative directory is a
    component-wise prefix of the file path. Files outside every package
    contribute nothing.

    Args:
        changed_files: File paths relative to the workspace root.
        packages: Workspace packages from the dependency graph.

    Returns:
        Ids of the directly changed packages.
    """
    package_dirs = [(pkg, _dir_parts(pkg)) for pkg in packages]
    directly_changed: set[str] = set()

    for filepath in changed_files:
        file_parts = PurePosixPath(filepath).parts
        matched = False
        for pkg, dir_parts in package_dirs:
            if _belongs_to(file_parts, dir_parts):
                directly_changed.add(pkg.id)
                matched = True
        if not matched:
            logger.debug("%s is outside every workspace package", filepath)

    return directly_changed


def check_force_triggers(changed_files: list[str], force_triggers: list[str]) -> bool:
    """Whether any changed file matches any force-trigger glob.

    Raises:
        ValueError: If a trigger pattern is malformed, before any file is matched.
    """
    matcher = compile_triggers(force_triggers)
    if matcher is None:
        return False
    for filepath in changed_files:
        if matcher.match(filepath):
            logger.debug("%s matches a force trigger", filepath)
            return True
    return False

from __future__ import annotations

import argparse
import json
import logging
import os
import subprocess
import sys
from pathlib import Path

from cratetrace import __version__
from cratetrace.affected import AffectedResult, compute_affected
from cratetrace.diff import (
    get_changed_files,
    get_git_root,
    packages_for_file,
    relativize_to_workspace,
)
from cratetrace.graph import DependencyGraph, load_cargo_metadata, read_metadata_file

logger = logging.getLogger(__name__)

# Keys written to the GitHub output file, in this order.
OUTPUT_KEYS = (
    "changed_crates",
    "affected_library_members",
    "affected_binary_members",
    "force_all",
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cratetrace",
        description="Affected-crate detection for Cargo workspaces",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--changed-file",
        action="append",
        metavar="PATH",
        help="Changed file relative to the workspace root (repeatable). "
        "Overrides $CHANGED_FILES.",
    )
    parser.add_argument(
        "--base",
        metavar="REF",
        help="Compute changed files with 'git diff REF...HEAD' instead",
    )
    parser.add_argument(
        "--force-trigger",
        action="append",
        metavar="PATTERN",
        help=(
            "Glob pattern that marks every member as affected when a changed "
            "file matches it (repeatable, merged with $FORCE_TRIGGERS). "
            "A trailing / matches the directory and everything inside it."
        ),
    )
    parser.add_argument(
        "--exclude",
        action="append",
        metavar="RULE",
        help=(
            "Hide a member from the output (repeatable, merged with "
            "$EXCLUDED_MEMBERS). Rules containing / match the member "
            "directory, e.g. tools/; other rules match the crate name."
        ),
    )
    parser.add_argument(
        "--manifest-path",
        help="Path to the workspace Cargo.toml passed to cargo metadata",
    )
    parser.add_argument(
        "--metadata-file",
        help="Read saved 'cargo metadata --format-version 1' JSON instead of running cargo",
    )
    parser.add_argument(
        "--no-deps",
        action="store_true",
        help="Run cargo metadata with --no-deps (path dependencies only)",
    )
    parser.add_argument(
        "--no-dev",
        action="store_true",
        help="Exclude dev dependencies from the dependency graph",
    )
    parser.add_argument(
        "--no-build",
        action="store_true",
        help="Exclude build dependencies from the dependency graph",
    )
    parser.add_argument(
        "--github-output",
        metavar="PATH",
        help="Append key=value outputs to this file (default: $GITHUB_OUTPUT)",
    )
    output_group = parser.add_mutually_exclusive_group()
    output_group.add_argument(
        "--names",
        action="store_true",
        help="Output affected member names, one per line",
    )
    output_group.add_argument(
        "--binaries",
        action="store_true",
        help="Output affected members with a binary target, one per line",
    )
    output_group.add_argument(
        "--paths",
        action="store_true",
        help="Output affected member directories, one per line",
    )
    output_group.add_argument(
        "--text",
        action="store_true",
        help="Output a human-readable summary",
    )
    parser.add_argument(
        "--detailed",
        action="store_true",
        help="Show changed files and their package mapping",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose/debug logging to stderr",
    )
    return parser


def _split_env(name: str) -> list[str]:
    """Whitespace-separated (spaces or newlines) entries of an env var."""
    return os.environ.get(name, "").split()


def _load_graph(args: argparse.Namespace) -> DependencyGraph:
    if args.metadata_file:
        return read_metadata_file(
            Path(args.metadata_file),
            include_dev=not args.no_dev,
            include_build=not args.no_build,
        )
    manifest_path = Path(args.manifest_path) if args.manifest_path else None
    return load_cargo_metadata(
        manifest_path,
        no_deps=args.no_deps,
        include_dev=not args.no_dev,
        include_build=not args.no_build,
    )


def _git_changed_files(base_ref: str, workspace_root: Path) -> list[str]:
    """Changed files since ``base_ref``, relative to ``workspace_root``."""
    git_root = get_git_root(cwd=workspace_root)
    changed = get_changed_files(base_ref, repo_root=git_root)
    return relativize_to_workspace(changed, git_root, workspace_root)


def _changed_files(args: argparse.Namespace) -> list[str]:
    if args.changed_file is not None:
        return [f for f in args.changed_file if f.strip()]
    return _split_env("CHANGED_FILES")


def run(args: argparse.Namespace) -> dict:
    """Orchestrate the full pipeline: inputs -> graph -> affected sets."""
    graph = None
    if args.base:
        # Diff paths are anchored on the root cargo reports, not on the cwd.
        graph = _load_graph(args)
        changed_files = _git_changed_files(args.base, Path(graph.workspace_root))
    else:
        changed_files = _changed_files(args)
    force_triggers = [*(args.force_trigger or []), *_split_env("FORCE_TRIGGERS")]
    excluded = {*(args.exclude or []), *_split_env("EXCLUDED_MEMBERS")}
    logger.debug("Force triggers: %s", force_triggers)
    logger.debug("Excluded: %s", sorted(excluded))

    # Nothing changed: skip loading the graph entirely.
    if not changed_files:
        return {
            **AffectedResult.empty().to_dict(),
            "packages": {},
            "changed_files": [],
            "file_mapping": {},
        }

    if graph is None:
        graph = _load_graph(args)
    result = compute_affected(graph, changed_files, force_triggers, excluded)

    members = graph.workspace_packages()
    file_mapping: dict[str, list[str]] = {}
    if args.detailed:
        for filepath in changed_files:
            file_mapping[filepath] = packages_for_file(filepath, members)

    return {
        **result.to_dict(),
        "packages": {pkg.name: pkg for pkg in members},
        "changed_files": changed_files,
        "file_mapping": file_mapping,
    }


def _compact(value) -> str:
    return json.dumps(value, separators=(",", ":"))


def write_github_output(path: str, result: dict) -> None:
    """Append the outputs as key=value lines to a GitHub Actions output file."""
    with open(path, "a", encoding="utf-8") as fh:
        for key in OUTPUT_KEYS:
            fh.write(f"{key}={_compact(result[key])}\n")
    logger.debug("Wrote outputs to %s", path)


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        stream=sys.stderr,
        format="%(name)s: %(message)s",
    )

    try:
        result = run(args)
    except (
        FileNotFoundError,
        ValueError,
        RuntimeError,
        subprocess.CalledProcessError,
        subprocess.TimeoutExpired,
        OSError,
    ) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    if args.names:
        for name in result["affected_library_members"]:
            print(name)
    elif args.binaries:
        for name in result["affected_binary_members"]:
            print(name)
    elif args.paths:
        packages = result["packages"]
        for name in result["affected_library_members"]:
            print(packages[name].relative_dir)
    elif args.text:
        _print_human(result, detailed=args.detailed)
    else:
        github_output = args.github_output or os.environ.get("GITHUB_OUTPUT")
        if github_output:
            try:
                write_github_output(github_output, result)
            except OSError as e:
                print(f"Error: cannot write {github_output}: {e}", file=sys.stderr)
                sys.exit(1)
            return
        out = {key: result[key] for key in OUTPUT_KEYS}
        if args.detailed:
            out["file_mapping"] = result["file_mapping"]
        print(json.dumps(out, sort_keys=True, separators=(",", ":")))


def _print_human(result: dict, *, detailed: bool = False) -> None:
    changed = set(result["changed_crates"])
    affected = result["affected_library_members"]
    binaries = set(result["affected_binary_members"])

    if result["force_all"]:
        print("Force trigger matched — all members affected")
        print()

    if detailed:
        file_mapping = result["file_mapping"]
        print(f"Changed files ({len(file_mapping)}):")
        for filepath, names in sorted(file_mapping.items()):
            label = ", ".join(names) if names else "(unmatched)"
            print(f"  {filepath}  -> {label}")
        print()

    if not affected:
        print("No affected members.")
        return

    print(f"Affected members ({len(affected)}):")
    for name in affected:
        marker = " (direct)" if name in changed else " (transitive)"
        if name in binaries:
            marker += " [bin]"
        print(f"  - {name}{marker}")

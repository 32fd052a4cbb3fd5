import json

import pytest

WORKSPACE_ROOT = "/ws"


def pkg_id(name: str, rel_dir: str | None = None) -> str:
    return f"path+file://{WORKSPACE_ROOT}/{rel_dir or name}#{name}@0.1.0"


def make_package(name, rel_dir=None, kinds=("lib",), deps=()):
    """One ``packages[]`` entry. ``deps`` is a list of (name, kind) pairs."""
    rel_dir = rel_dir or name
    return {
        "name": name,
        "version": "0.1.0",
        "id": pkg_id(name, rel_dir),
        "source": None,
        "manifest_path": f"{WORKSPACE_ROOT}/{rel_dir}/Cargo.toml",
        "targets": [
            {
                "kind": [kind],
                "name": name.replace("-", "_"),
                "src_path": f"{WORKSPACE_ROOT}/{rel_dir}/src/{kind}.rs",
            }
            for kind in kinds
        ],
        "dependencies": [
            {"name": dep, "kind": kind, "path": f"{WORKSPACE_ROOT}/{dep}"}
            for dep, kind in deps
        ],
    }


def make_metadata(packages, edges, *, external=(), with_resolve=True):
    """Metadata document for ``packages``; ``edges`` maps id -> [(dep id, kind)]."""
    data = {
        "packages": [*packages, *external],
        "workspace_members": [p["id"] for p in packages],
        "workspace_root": WORKSPACE_ROOT,
        "target_directory": f"{WORKSPACE_ROOT}/target",
        "version": 1,
        "resolve": None,
    }
    if with_resolve:
        data["resolve"] = {
            "root": None,
            "nodes": [
                {
                    "id": p["id"],
                    "dependencies": [dep for dep, _ in edges.get(p["id"], [])],
                    "deps": [
                        {
                            "name": dep.split("#")[1].split("@")[0].replace("-", "_"),
                            "pkg": dep,
                            "dep_kinds": [{"kind": kind, "target": None}],
                        }
                        for dep, kind in edges.get(p["id"], [])
                    ],
                    "features": [],
                }
                for p in data["packages"]
            ],
        }
    return data


# lib-utils <- lib-core <- {lib-core-ext, app-alpha, app-beta}
# app-beta -> lib-standalone, tools/tool-alpha -> lib-utils
# lib-with-tests stands alone with a test target; lib-utils uses serde.
SERDE = {
    "name": "serde",
    "version": "1.0.0",
    "id": "registry+https://github.com/rust-lang/crates.io-index#serde@1.0.0",
    "source": "registry+https://github.com/rust-lang/crates.io-index",
    "manifest_path": "/home/user/.cargo/registry/src/serde-1.0.0/Cargo.toml",
    "targets": [{"kind": ["lib"], "name": "serde", "src_path": "src/lib.rs"}],
    "dependencies": [],
}

WORKSPACE_PACKAGES = [
    make_package("lib-utils"),
    make_package("lib-core", deps=[("lib-utils", None)]),
    make_package("lib-core-ext", deps=[("lib-core", None)]),
    make_package("lib-standalone"),
    make_package("lib-with-tests", kinds=("lib", "test")),
    make_package("app-alpha", kinds=("bin",), deps=[("lib-core", None)]),
    make_package(
        "app-beta",
        kinds=("bin",),
        deps=[("lib-core", None), ("lib-standalone", None)],
    ),
    make_package(
        "tool-alpha",
        rel_dir="tools/tool-alpha",
        kinds=("bin",),
        deps=[("lib-utils", None)],
    ),
]

WORKSPACE_EDGES = {
    pkg_id("lib-utils"): [(SERDE["id"], None)],
    pkg_id("lib-core"): [(pkg_id("lib-utils"), None)],
    pkg_id("lib-core-ext"): [(pkg_id("lib-core"), None)],
    pkg_id("app-alpha"): [(pkg_id("lib-core"), None)],
    pkg_id("app-beta"): [(pkg_id("lib-core"), None), (pkg_id("lib-standalone"), None)],
    pkg_id("tool-alpha", "tools/tool-alpha"): [(pkg_id("lib-utils"), None)],
}

WORKSPACE_METADATA = make_metadata(
    WORKSPACE_PACKAGES, WORKSPACE_EDGES, external=[SERDE]
)


def rooted_metadata(root: str) -> dict:
    """``WORKSPACE_METADATA`` with every workspace path moved under ``root``."""
    text = json.dumps(WORKSPACE_METADATA)
    text = text.replace(f'"{WORKSPACE_ROOT}/', f'"{root}/')
    text = text.replace(f'"{WORKSPACE_ROOT}"', f'"{root}"')
    return json.loads(text)


ALL_MEMBERS = [
    "app-alpha",
    "app-beta",
    "lib-core",
    "lib-core-ext",
    "lib-standalone",
    "lib-utils",
    "lib-with-tests",
    "tool-alpha",
]

# core <- app (normal), core <- bench-suite (dev), core <- codegen (build)
KINDS_PACKAGES = [
    make_package("core"),
    make_package("app", kinds=("bin",), deps=[("core", None)]),
    make_package("bench-suite", deps=[("core", "dev")]),
    make_package("codegen", deps=[("core", "build")]),
]

KINDS_EDGES = {
    pkg_id("app"): [(pkg_id("core"), None)],
    pkg_id("bench-suite"): [(pkg_id("core"), "dev")],
    pkg_id("codegen"): [(pkg_id("core"), "build")],
}

KINDS_METADATA = make_metadata(KINDS_PACKAGES, KINDS_EDGES)


@pytest.fixture
def workspace_metadata(tmp_path):
    metadata_file = tmp_path / "metadata.json"
    metadata_file.write_text(json.dumps(WORKSPACE_METADATA))
    return metadata_file


@pytest.fixture
def kinds_metadata(tmp_path):
    metadata_file = tmp_path / "metadata.json"
    metadata_file.write_text(json.dumps(KINDS_METADATA))
    return metadata_file

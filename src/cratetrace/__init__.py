"""Affected-crate detection for Cargo workspaces."""

from cratetrace.affected import AffectedResult, compute_affected

__version__ = "0.1.0"

__all__ = ["AffectedResult", "compute_affected", "__version__"]

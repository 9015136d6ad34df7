"""Hierarchical rollup cascade."""

from webtop.rollup.cascade import RefreshResult, RollupCascade
from webtop.rollup.levels import DEFAULT_LEVELS, RAW_LEVEL, RollupLevel, validate_cascade

__all__ = [
    "DEFAULT_LEVELS",
    "RAW_LEVEL",
    "RefreshResult",
    "RollupCascade",
    "RollupLevel",
    "validate_cascade",
]

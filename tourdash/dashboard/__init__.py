"""
Creator dashboard aggregation.

DashboardAggregationFacade loads the flattened creator composite through the
cache tiers and keeps it in sync with remote changes.
"""

from tourdash.dashboard.models import (
    SLICES,
    CreatorNotFoundError,
    DashboardComposite,
    DashboardStats,
    DataIntegrityError,
    DuplicateCreatorError,
    flatten_creator_tree,
)
from tourdash.dashboard.facade import DashboardAggregationFacade, DashboardWatch

__all__ = [
    "SLICES",
    "CreatorNotFoundError",
    "DashboardComposite",
    "DashboardStats",
    "DataIntegrityError",
    "DuplicateCreatorError",
    "flatten_creator_tree",
    "DashboardAggregationFacade",
    "DashboardWatch",
]

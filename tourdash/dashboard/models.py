"""
Dashboard composite and its flattening.

The creator row is fetched once with its nested relations:

    creators -> end_clients -> projects -> {chatbots, analytics, requests}

and flattened top-down into per-resource lists. Every list handed out is a
deep copy, so later invalidation of a slice never reaches a composite a
caller already holds.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple


class DataIntegrityError(Exception):
    """The remote data violates an invariant the dashboard relies on."""

    def __init__(self, message: str, user_id: str = None):
        super().__init__(message)
        self.user_id = user_id


class CreatorNotFoundError(DataIntegrityError):
    """No creator record for the user."""


class DuplicateCreatorError(DataIntegrityError):
    """More than one creator record for the user."""


# Slices of the composite, in display order
SLICES = (
    "clients",
    "projects",
    "chatbots",
    "analytics",
    "requests",
    "support_requests",
    "chatbot_requests",
    "leads",
    "assets",
)

_NESTED = {
    "creator": "end_clients",
    "client": "projects",
    "project": ("chatbots", "analytics", "requests"),
}


@dataclass
class DashboardStats:
    total_clients: int = 0
    total_projects: int = 0
    total_chatbots: int = 0
    total_leads: int = 0
    total_views: float = 0
    active_projects: int = 0

    @classmethod
    def from_slices(
        cls,
        clients: List[Dict],
        projects: List[Dict],
        chatbots: List[Dict],
        leads: List[Dict],
        analytics: List[Dict],
    ) -> "DashboardStats":
        total_views = sum(
            row.get("metric_value") or 0
            for row in analytics
            if row.get("metric_type") == "view"
        )
        return cls(
            total_clients=len(clients),
            total_projects=len(projects),
            total_chatbots=len(chatbots),
            total_leads=len(leads),
            total_views=total_views,
            active_projects=sum(1 for p in projects if p.get("status") == "active"),
        )


@dataclass
class DashboardComposite:
    """Flattened dashboard data for one creator."""
    creator: Dict[str, Any]
    clients: List[Dict[str, Any]] = field(default_factory=list)
    projects: List[Dict[str, Any]] = field(default_factory=list)
    chatbots: List[Dict[str, Any]] = field(default_factory=list)
    analytics: List[Dict[str, Any]] = field(default_factory=list)
    requests: List[Dict[str, Any]] = field(default_factory=list)
    support_requests: List[Dict[str, Any]] = field(default_factory=list)
    chatbot_requests: List[Dict[str, Any]] = field(default_factory=list)
    leads: List[Dict[str, Any]] = field(default_factory=list)
    assets: List[Dict[str, Any]] = field(default_factory=list)
    stats: DashboardStats = field(default_factory=DashboardStats)
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def creator_id(self) -> Optional[str]:
        return self.creator.get("id")

    def get_slice(self, resource: str) -> List[Dict[str, Any]]:
        """Deep copy of one slice."""
        if resource not in SLICES:
            raise KeyError(f"Unknown dashboard slice: {resource}")
        return copy.deepcopy(getattr(self, resource))

    def slices(self) -> Dict[str, List[Dict[str, Any]]]:
        return {resource: self.get_slice(resource) for resource in SLICES}

    def to_dict(self) -> Dict[str, Any]:
        data = {"creator": copy.deepcopy(self.creator)}
        data.update(self.slices())
        data["stats"] = self.stats.__dict__.copy()
        data["fetched_at"] = self.fetched_at.isoformat()
        return data


def _strip(row: Dict[str, Any], keys) -> Dict[str, Any]:
    if isinstance(keys, str):
        keys = (keys,)
    return {k: copy.deepcopy(v) for k, v in row.items() if k not in keys}


def flatten_creator_tree(
    creator_row: Dict[str, Any],
) -> Tuple[Dict[str, Any], Dict[str, List[Dict[str, Any]]]]:
    """
    Split a nested creator row into the bare creator and per-resource lists.

    Nested relation keys are removed from every level; a missing or null
    relation counts as empty.
    """
    creator = _strip(creator_row, _NESTED["creator"])
    slices = {"clients": [], "projects": [], "chatbots": [], "analytics": [], "requests": []}

    for client in creator_row.get("end_clients") or []:
        slices["clients"].append(_strip(client, _NESTED["client"]))
        for project in client.get("projects") or []:
            slices["projects"].append(_strip(project, _NESTED["project"]))
            for relation in _NESTED["project"]:
                slices[relation].extend(
                    copy.deepcopy(row) for row in project.get(relation) or []
                )

    return creator, slices

"""
Analytics data models.

Two remote shapes feed the same metric model:

- ``EventMetric``: one row of the ``analytics`` table, already canonical
  (``metric_type`` + ``metric_value``).
- ``ImportedMetric``: one row of ``imported_analytics`` (spreadsheet
  import), carrying page views, visitors and average time together.

``RawMetric`` is the tagged union of both; ``normalize`` turns either into
``CanonicalMetric`` instances.
"""

from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Optional, Union


class MetricType(str, Enum):
    VIEW = "view"
    UNIQUE_VISITOR = "unique_visitor"
    TIME_SPENT = "time_spent"
    HOTSPOT_CLICK = "hotspot_click"
    CHATBOT_INTERACTION = "chatbot_interaction"
    LEAD_GENERATED = "lead_generated"
    SATISFACTION = "satisfaction"
    CONVERSION = "conversion"


class ScopeKind(str, Enum):
    PROJECT = "project"
    END_CLIENT = "end_client"
    CREATOR = "creator"


SCOPE_COLUMNS = {
    ScopeKind.PROJECT: "project_id",
    ScopeKind.END_CLIENT: "end_client_id",
    ScopeKind.CREATOR: "creator_id",
}


@dataclass(frozen=True)
class AnalyticsScope:
    """
    Aggregation scope: exactly one of project, end client or creator.

    The three are mutually exclusive filters, never combined.
    """
    project_id: Optional[str] = None
    end_client_id: Optional[str] = None
    creator_id: Optional[str] = None

    def __post_init__(self):
        given = [v for v in (self.project_id, self.end_client_id, self.creator_id) if v]
        if len(given) != 1:
            raise ValueError(
                "AnalyticsScope needs exactly one of project_id, end_client_id, creator_id "
                f"(got {len(given)})"
            )

    @classmethod
    def project(cls, project_id: str) -> "AnalyticsScope":
        return cls(project_id=project_id)

    @classmethod
    def end_client(cls, end_client_id: str) -> "AnalyticsScope":
        return cls(end_client_id=end_client_id)

    @classmethod
    def creator(cls, creator_id: str) -> "AnalyticsScope":
        return cls(creator_id=creator_id)

    @property
    def kind(self) -> ScopeKind:
        if self.project_id:
            return ScopeKind.PROJECT
        if self.end_client_id:
            return ScopeKind.END_CLIENT
        return ScopeKind.CREATOR

    @property
    def value(self) -> str:
        return self.project_id or self.end_client_id or self.creator_id

    @property
    def column(self) -> str:
        return SCOPE_COLUMNS[self.kind]

    def as_filters(self) -> Dict[str, str]:
        return {self.column: self.value}

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.value}"


@dataclass(frozen=True)
class EventMetric:
    """Row of the ``analytics`` table."""
    id: str
    metric_type: str
    metric_value: float
    date: Optional[str] = None
    project_id: Optional[str] = None
    end_client_id: Optional[str] = None
    creator_id: Optional[str] = None
    created_at: Optional[str] = None


@dataclass(frozen=True)
class ImportedMetric:
    """Row of the ``imported_analytics`` table."""
    id: str
    page_views: float = 0
    visitors: float = 0
    avg_time: float = 0
    total_time: float = 0
    date: Optional[str] = None
    resource_code: Optional[str] = None
    project_id: Optional[str] = None
    end_client_id: Optional[str] = None
    creator_id: Optional[str] = None
    created_at: Optional[str] = None


RawMetric = Union[EventMetric, ImportedMetric]


@dataclass(frozen=True)
class CanonicalMetric:
    """Single normalized analytics fact."""
    source_id: str
    metric_type: str
    value: float
    date: Optional[str] = None
    project_id: Optional[str] = None
    end_client_id: Optional[str] = None
    creator_id: Optional[str] = None
    created_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class UnifiedAnalytics:
    """Aggregates for one scope."""
    total_views: float = 0
    total_visitors: float = 0
    avg_engagement_time: int = 0
    total_leads: float = 0
    conversion_rate: float = 0.0
    avg_satisfaction: float = 0.0
    last_activity: Optional[str] = None
    metric_count: int = 0
    error: Optional[str] = None
    computed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["computed_at"] = self.computed_at.isoformat() if self.computed_at else None
        return data


@dataclass
class DailyPoint:
    """Per-date totals for charts."""
    date: str
    views: float = 0
    visitors: float = 0
    leads: float = 0
    avg_time: float = 0.0
    metrics: Dict[str, float] = field(default_factory=dict)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp as written by PostgREST. None if unparsable."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.replace(tzinfo=None) - parsed.utcoffset()
    return parsed

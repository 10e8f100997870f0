"""
Normalization of raw analytics rows into canonical metrics.

Imported rows expand into up to three metrics whose ``source_id`` is
``"{row_id}_{suffix}"``. The suffixes keep them disjoint from event-row ids,
so merging both sources never counts a row twice. Zero or absent fields are
skipped: a ``time_spent`` of 0 would drag the engagement average down.
"""

from typing import Any, Dict, Iterable, List, Optional, Union

from tourdash.analytics.models import (
    CanonicalMetric,
    EventMetric,
    ImportedMetric,
    MetricType,
    RawMetric,
)


# (row attribute, metric type, source id suffix)
IMPORTED_FIELDS = (
    ("page_views", MetricType.VIEW, "pv"),
    ("visitors", MetricType.UNIQUE_VISITOR, "uv"),
    ("avg_time", MetricType.TIME_SPENT, "time"),
)


def to_number(value: Any, field_name: str = "value") -> Union[int, float]:
    """Coerce a numeric column. None counts as 0; garbage raises ValueError."""
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise ValueError(f"{field_name}: boolean is not a number")
    if isinstance(value, (int, float)):
        return value
    try:
        number = float(str(value).strip())
    except ValueError:
        raise ValueError(f"{field_name}: not a number: {value!r}")
    return int(number) if number.is_integer() else number


def _str_or_none(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def event_from_row(row: Dict[str, Any]) -> EventMetric:
    return EventMetric(
        id=str(row["id"]),
        metric_type=str(row["metric_type"]),
        metric_value=to_number(row.get("metric_value"), "metric_value"),
        date=_str_or_none(row.get("date")),
        project_id=row.get("project_id"),
        end_client_id=row.get("end_client_id"),
        creator_id=row.get("creator_id"),
        created_at=_str_or_none(row.get("created_at")),
    )


def imported_from_row(row: Dict[str, Any]) -> ImportedMetric:
    return ImportedMetric(
        id=str(row["id"]),
        page_views=to_number(row.get("page_views"), "page_views"),
        visitors=to_number(row.get("visitors"), "visitors"),
        avg_time=to_number(row.get("avg_time"), "avg_time"),
        total_time=to_number(row.get("total_time"), "total_time"),
        date=_str_or_none(row.get("date")),
        resource_code=row.get("resource_code"),
        project_id=row.get("project_id"),
        end_client_id=row.get("end_client_id"),
        creator_id=row.get("creator_id"),
        created_at=_str_or_none(row.get("created_at")),
    )


def normalize(raw: RawMetric) -> List[CanonicalMetric]:
    """Expand one raw row into its canonical metrics."""
    if isinstance(raw, EventMetric):
        return [CanonicalMetric(
            source_id=raw.id,
            metric_type=raw.metric_type,
            value=raw.metric_value,
            date=raw.date,
            project_id=raw.project_id,
            end_client_id=raw.end_client_id,
            creator_id=raw.creator_id,
            created_at=raw.created_at,
        )]

    if isinstance(raw, ImportedMetric):
        metrics = []
        for attr, metric_type, suffix in IMPORTED_FIELDS:
            value = getattr(raw, attr)
            if not value or value <= 0:
                continue
            metrics.append(CanonicalMetric(
                source_id=f"{raw.id}_{suffix}",
                metric_type=metric_type.value,
                value=value,
                date=raw.date,
                project_id=raw.project_id,
                end_client_id=raw.end_client_id,
                creator_id=raw.creator_id,
                created_at=raw.created_at,
            ))
        return metrics

    raise TypeError(f"Unsupported raw metric: {type(raw).__name__}")


def normalize_rows(
    event_rows: Iterable[Dict[str, Any]],
    imported_rows: Iterable[Dict[str, Any]],
) -> List[CanonicalMetric]:
    """Parse and normalize both remote tables into one metric list."""
    raw: List[RawMetric] = [event_from_row(row) for row in event_rows]
    raw.extend(imported_from_row(row) for row in imported_rows)

    metrics: List[CanonicalMetric] = []
    for item in raw:
        metrics.extend(normalize(item))
    return metrics

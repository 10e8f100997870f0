"""
Analytics spreadsheet import and reset.

CSV exports from the tour hosting platform carry one row per day and
resource with the columns ``date, resource_code, pv, uv, duration,
avg_duration``. Rows are validated one by one; a file with any row error
is rejected as a whole so partial imports never skew totals.

Accepted rows land in ``imported_analytics`` as
``page_views / visitors / total_time / avg_time``.
"""

import csv
import io
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from tourdash.cache.query_cache import KeyedQueryCache
from tourdash.integrations.base import Filter, RemoteDataSource
from tourdash.realtime.events import ANALYTICS_TABLES, ChangeEvent, ChangeKind
from tourdash.realtime.stream import ChangeStream


logger = logging.getLogger(__name__)

MAX_FILE_BYTES = 10 * 1024 * 1024

REQUIRED_COLUMNS = ("date", "resource_code", "pv", "uv", "duration", "avg_duration")

# Header variants seen in exports, after lowercasing
COLUMN_ALIASES = {
    "resourcecode": "resource_code",
    "resource code": "resource_code",
    "avgduration": "avg_duration",
    "avg duration": "avg_duration",
}

DATE_FORMATS = ("%Y-%m-%d", "%Y/%m/%d", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S")

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


@dataclass
class ImportedRow:
    date: str
    resource_code: str
    page_views: int
    visitors: int
    total_time: int
    avg_time: int


@dataclass
class ImportSummary:
    total_rows: int = 0
    total_views: int = 0
    total_visitors: int = 0
    avg_duration: int = 0
    date_start: Optional[str] = None
    date_end: Optional[str] = None
    resource_codes: List[str] = field(default_factory=list)


@dataclass
class ImportValidation:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    rows: List[ImportedRow] = field(default_factory=list)
    summary: ImportSummary = field(default_factory=ImportSummary)


def normalize_header(header: Optional[str]) -> str:
    name = (header or "").strip().replace('"', "").lower()
    return COLUMN_ALIASES.get(name, name)


def parse_int(value: Any) -> Optional[int]:
    """Leading integer of a cell ("12.7" -> 12). Empty counts as 0."""
    text = str(value if value is not None else "").strip()
    if not text:
        return 0
    match = _LEADING_INT.match(text)
    return int(match.group(1)) if match else None


def parse_date(value: str) -> Optional[date]:
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    return None


def parse_analytics_csv(text: str) -> ImportValidation:
    """Validate a CSV export and turn it into rows ready for import."""
    if len(text.encode("utf-8")) > MAX_FILE_BYTES:
        return ImportValidation(is_valid=False, errors=["File size exceeds 10MB limit"])

    reader = csv.reader(io.StringIO(text.lstrip("\ufeff")))
    records = [row for row in reader if any(cell.strip() for cell in row)]
    if not records:
        return ImportValidation(
            is_valid=False,
            errors=[f"Missing required columns: {', '.join(REQUIRED_COLUMNS)}"],
            warnings=["No valid data rows found"],
        )

    headers = [normalize_header(h) for h in records[0]]
    errors: List[str] = []
    warnings: List[str] = []

    missing = [col for col in REQUIRED_COLUMNS if col not in headers]
    if missing:
        errors.append(f"Missing required columns: {', '.join(missing)}")

    rows: List[ImportedRow] = []
    resource_codes: List[str] = []
    dates: List[date] = []

    for index, record in enumerate(records[1:], start=1):
        cells = {
            header: record[i].strip().replace('"', "") if i < len(record) else ""
            for i, header in enumerate(headers)
        }
        row_errors = []

        raw_date = cells.get("date", "")
        parsed_date = None
        if not raw_date:
            row_errors.append(f"Row {index}: Missing date")
        else:
            parsed_date = parse_date(raw_date)
            if parsed_date is None:
                row_errors.append(f"Row {index}: Invalid date format ({raw_date})")

        resource_code = cells.get("resource_code", "")
        if not resource_code:
            row_errors.append(f"Row {index}: Missing resource_code")

        numbers = {}
        for column, label in (("pv", "PV"), ("uv", "UV"),
                              ("duration", "duration"), ("avg_duration", "avg_duration")):
            value = parse_int(cells.get(column, ""))
            if value is None or value < 0:
                row_errors.append(f"Row {index}: Invalid {label} value")
            numbers[column] = value

        if row_errors:
            errors.extend(row_errors)
            continue

        dates.append(parsed_date)
        if resource_code not in resource_codes:
            resource_codes.append(resource_code)
        rows.append(ImportedRow(
            date=parsed_date.isoformat(),
            resource_code=resource_code,
            page_views=numbers["pv"],
            visitors=numbers["uv"],
            total_time=numbers["duration"],
            avg_time=numbers["avg_duration"],
        ))

    summary = ImportSummary(
        total_rows=len(rows),
        total_views=sum(r.page_views for r in rows),
        total_visitors=sum(r.visitors for r in rows),
        avg_duration=int(sum(r.avg_time for r in rows) / len(rows) + 0.5) if rows else 0,
        date_start=min(dates).isoformat() if dates else None,
        date_end=max(dates).isoformat() if dates else None,
        resource_codes=resource_codes,
    )

    if not rows:
        warnings.append("No valid data rows found")
    if len(resource_codes) > 1:
        warnings.append(f"Multiple resource codes found: {', '.join(resource_codes)}")

    return ImportValidation(
        is_valid=not errors,
        errors=errors,
        warnings=warnings,
        rows=rows,
        summary=summary,
    )


class AnalyticsImporter:
    """
    Writes validated imports and resets a client's analytics.

    Both operations drop the cached analytics rows and publish a change
    event, so open dashboards and reconcilers refresh.
    """

    def __init__(
        self,
        source: RemoteDataSource,
        stream: Optional[ChangeStream] = None,
        query_cache: Optional[KeyedQueryCache] = None,
    ):
        self.source = source
        self.stream = stream
        self.query_cache = query_cache

    async def import_rows(
        self,
        validation: ImportValidation,
        project_id: str,
        end_client_id: str,
        creator_id: Optional[str] = None,
    ) -> int:
        """
        Insert every validated row into ``imported_analytics``.

        Args:
            validation: Result of ``parse_analytics_csv``; must be valid
            project_id: Project the rows are attributed to
            end_client_id: End client the rows are attributed to
            creator_id: Stored on each row when given

        Returns:
            Number of rows inserted.

        Raises:
            ValueError: Invalid or empty file
            RemoteFetchError: Insert failed
        """
        if not validation.is_valid:
            raise ValueError(f"Cannot import invalid file: {'; '.join(validation.errors[:5])}")
        if not validation.rows:
            raise ValueError("Nothing to import")

        payload = []
        for row in validation.rows:
            record = {
                "page_views": row.page_views,
                "visitors": row.visitors,
                "total_time": row.total_time,
                "avg_time": row.avg_time,
                "date": row.date,
                "resource_code": row.resource_code,
                "project_id": project_id,
                "end_client_id": end_client_id,
            }
            if creator_id:
                record["creator_id"] = creator_id
            payload.append(record)

        inserted = await self.source.insert("imported_analytics", payload)
        count = len(inserted) if inserted else len(payload)
        logger.info(
            f"Imported {count} analytics rows for client {end_client_id} "
            f"(project {project_id})"
        )
        self._changed("imported_analytics", ChangeKind.INSERT, {
            "end_client_id": end_client_id,
            "project_id": project_id,
            "rows": count,
        })
        return count

    async def reset(self, end_client_id: str) -> Dict[str, int]:
        """Delete all analytics of an end client from both tables."""
        deleted = {}
        for table in sorted(ANALYTICS_TABLES):
            deleted[table] = await self.source.delete(
                table, [Filter.eq("end_client_id", end_client_id)]
            )
            self._changed(table, ChangeKind.DELETE, {"end_client_id": end_client_id})
        logger.info(f"Reset analytics for client {end_client_id}: {deleted}")
        return deleted

    def _changed(self, table: str, kind: ChangeKind, payload: Dict[str, Any]) -> None:
        if self.query_cache is not None:
            self.query_cache.invalidate_resource(table)
        if self.stream is not None:
            self.stream.publish(ChangeEvent(table=table, kind=kind, payload=payload))

"""
Remote data source interface.

The hosted relational store is reached by table name plus equality /
inclusion predicates. Nested "include related table" selects are passed
through ``select`` untouched.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence


class RemoteFetchError(Exception):
    """A remote read or write failed (network, non-2xx, auth expiry)."""

    def __init__(self, message: str, table: str = None, status_code: int = None):
        super().__init__(message)
        self.table = table
        self.status_code = status_code


@dataclass(frozen=True)
class Filter:
    """Column predicate: ``eq`` or ``in``."""
    column: str
    op: str
    value: Any

    @classmethod
    def eq(cls, column: str, value: Any) -> "Filter":
        return cls(column, "eq", value)

    @classmethod
    def in_(cls, column: str, values: Iterable[Any]) -> "Filter":
        return cls(column, "in", tuple(values))

    def matches(self, row: Dict[str, Any]) -> bool:
        if self.op == "eq":
            return row.get(self.column) == self.value
        if self.op == "in":
            return row.get(self.column) in self.value
        raise ValueError(f"Unknown filter op: {self.op}")

    def to_param(self) -> str:
        """PostgREST query-string form (``eq.x`` / ``in.(a,b)``)."""
        if self.op == "in":
            return "in.(" + ",".join(str(v) for v in self.value) + ")"
        return f"{self.op}.{self.value}"


def filters_from_dict(values: Optional[Dict[str, Any]]) -> List[Filter]:
    """Equality filters from a column -> value map. Lists become ``in``."""
    filters = []
    for column, value in sorted((values or {}).items()):
        if isinstance(value, (list, tuple, set, frozenset)):
            filters.append(Filter.in_(column, sorted(value, key=str)))
        else:
            filters.append(Filter.eq(column, value))
    return filters


class RemoteDataSource(ABC):
    """Abstract base class for the remote relational store."""

    @abstractmethod
    async def query(
        self,
        table: str,
        filters: Optional[Sequence[Filter]] = None,
        select: str = "*",
        order_by: Optional[str] = None,
        descending: bool = True,
    ) -> List[Dict[str, Any]]:
        """Rows of ``table`` matching every filter."""
        pass

    @abstractmethod
    async def insert(self, table: str, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Insert rows. Returns the stored rows."""
        pass

    @abstractmethod
    async def update(
        self,
        table: str,
        values: Dict[str, Any],
        filters: Sequence[Filter],
    ) -> List[Dict[str, Any]]:
        """Update matching rows. Returns the updated rows."""
        pass

    @abstractmethod
    async def delete(self, table: str, filters: Sequence[Filter]) -> int:
        """Delete matching rows. Returns how many were removed."""
        pass

    async def close(self) -> None:
        pass

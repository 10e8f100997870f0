"""
Persistent Preference Cache

Durable key/value store with a TTL per record, used for user preferences,
dashboard view state and recent-search history.

Unlike the in-memory tiers this survives a restart, so the age of a record
is computed from its persisted ``stored_at`` timestamp.

Failure contract: a broken database or an unparsable value never reaches
the caller. ``read`` falls back, ``write``/``remove`` return False, and the
problem is logged.
"""

import copy
import json
import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from tourdash.cache.entry_store import TTL, ttl_seconds
from tourdash.database.models import PreferenceRecord


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreferencePreset:
    """Named preference slot with its TTL and default value."""
    key: str
    ttl: timedelta
    default: Any


PREFERENCE_PRESETS: Dict[str, PreferencePreset] = {
    "user-preferences": PreferencePreset(
        key="user-preferences",
        ttl=timedelta(hours=24),
        default={
            "theme": "light",
            "sidebar_collapsed": False,
            "default_view": "overview",
            "notifications": {"email": True, "push": False, "sms": False},
            "dashboard": {
                "items_per_page": 10,
                "sort_by": "created_at",
                "sort_order": "desc",
            },
        },
    ),
    "dashboard-settings": PreferencePreset(
        key="dashboard-settings",
        ttl=timedelta(hours=24),
        default={
            "selected_clients": [],
            "selected_projects": [],
            "date_range": "30d",
            "view_mode": "grid",
            "filters": {"status": "all", "priority": "all", "type": "all"},
        },
    ),
    "recent-searches": PreferencePreset(
        key="recent-searches",
        ttl=timedelta(days=7),
        default=[],
    ),
    "form-data": PreferencePreset(
        key="form-data",
        ttl=timedelta(hours=1),
        default={},
    ),
    "static-data": PreferencePreset(
        key="static-data",
        ttl=timedelta(days=7),
        default={"countries": [], "timezones": [], "currencies": [], "languages": []},
    ),
}

RECENT_SEARCH_LIMIT = 10


def serialize_value(value: Any) -> str:
    """
    Serialize a Python value to JSON text for persistence.

    Uses a default handler for dates and simple objects.
    """
    def default_handler(obj):
        if hasattr(obj, 'isoformat'):
            return obj.isoformat()
        if hasattr(obj, '__dict__'):
            return obj.__dict__
        return str(obj)

    return json.dumps(value, default=default_handler, ensure_ascii=False)


def deserialize_value(data: str) -> Any:
    return json.loads(data)


def _default_session_factory() -> Session:
    from tourdash.database.session import get_session_factory
    return get_session_factory()()


class PersistentPreferenceCache:
    """
    Preference cache backed by the ``preference_cache`` table.

    Usage:
        prefs = PersistentPreferenceCache()
        settings = prefs.read("dashboard-settings", {}, owner_id=user_id)
        prefs.write("dashboard-settings", settings, owner_id=user_id)
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        default_ttl: TTL = timedelta(hours=24),
        clock: Callable[[], float] = time.time,
        enabled: bool = True,
    ):
        self._session_factory = session_factory or _default_session_factory
        self.default_ttl = ttl_seconds(default_ttl)
        self._clock = clock
        self.enabled = enabled
        self._stats = {
            "reads": 0,
            "fallbacks": 0,
            "writes": 0,
            "errors": 0,
        }

    def _find(self, db: Session, owner_id: str, key: str) -> Optional[PreferenceRecord]:
        return db.query(PreferenceRecord).filter(
            PreferenceRecord.owner_id == owner_id,
            PreferenceRecord.key == key,
        ).first()

    def read(self, key: str, fallback: Any = None, owner_id: str = "") -> Any:
        """
        Get a stored preference.

        Args:
            key: Preference key (e.g. ``"dashboard-settings"``)
            fallback: Value returned when nothing usable is stored
            owner_id: Owner the record belongs to

        Returns:
            Stored value, or ``fallback`` when missing, expired or
            unreadable. Expired records are deleted.
        """
        self._stats["reads"] += 1
        if not self.enabled:
            self._stats["fallbacks"] += 1
            return fallback

        try:
            db = self._session_factory()
        except Exception as e:
            return self._degrade(f"Preference store unavailable for {key}: {e}", fallback)

        try:
            record = self._find(db, owner_id, key)
            if record is None:
                self._stats["fallbacks"] += 1
                return fallback

            age = self._clock() - record.stored_at
            if age > record.ttl_seconds:
                db.delete(record)
                db.commit()
                logger.debug(f"Discarded expired preference {owner_id}/{key}")
                self._stats["fallbacks"] += 1
                return fallback

            return deserialize_value(record.value)

        except (ValueError, TypeError) as e:
            return self._degrade(f"Unparsable preference {key}: {e}", fallback)
        except Exception as e:
            db.rollback()
            return self._degrade(f"Error reading preference {key}: {e}", fallback)
        finally:
            db.close()

    def write(
        self,
        key: str,
        value: Any,
        ttl: Optional[TTL] = None,
        owner_id: str = "",
    ) -> bool:
        """
        Upsert a value with a fresh timestamp.

        Args:
            key: Preference key
            value: JSON-serializable value
            ttl: Lifetime (seconds or timedelta), defaults to ``default_ttl``
            owner_id: Owner the record belongs to

        Returns:
            True if stored, False if disabled, unserializable or the
            store failed
        """
        if not self.enabled:
            return False

        try:
            payload = serialize_value(value)
        except (TypeError, ValueError) as e:
            self._stats["errors"] += 1
            logger.error(f"Cannot serialize preference {key}: {e}")
            return False

        ttl_value = ttl_seconds(ttl) if ttl is not None else self.default_ttl

        try:
            db = self._session_factory()
        except Exception as e:
            self._stats["errors"] += 1
            logger.error(f"Preference store unavailable for {key}: {e}")
            return False

        try:
            record = self._find(db, owner_id, key)
            if record is None:
                record = PreferenceRecord(owner_id=owner_id, key=key)
                db.add(record)
            record.value = payload
            record.stored_at = self._clock()
            record.ttl_seconds = ttl_value
            db.commit()
            self._stats["writes"] += 1
            return True
        except Exception as e:
            db.rollback()
            self._stats["errors"] += 1
            logger.error(f"Error setting preference {key}: {e}")
            return False
        finally:
            db.close()

    def remove(self, key: str, owner_id: str = "") -> bool:
        """Delete a record. Returns True if something was removed."""
        try:
            db = self._session_factory()
        except Exception as e:
            self._stats["errors"] += 1
            logger.error(f"Preference store unavailable for {key}: {e}")
            return False

        try:
            deleted = db.query(PreferenceRecord).filter(
                PreferenceRecord.owner_id == owner_id,
                PreferenceRecord.key == key,
            ).delete()
            db.commit()
            return deleted > 0
        except Exception as e:
            db.rollback()
            self._stats["errors"] += 1
            logger.error(f"Error removing preference {key}: {e}")
            return False
        finally:
            db.close()

    def purge_expired(self) -> int:
        """Delete every expired record across owners."""
        try:
            db = self._session_factory()
        except Exception as e:
            logger.error(f"Preference store unavailable for purge: {e}")
            return 0

        try:
            now = self._clock()
            expired = [
                record for record in db.query(PreferenceRecord).all()
                if now - record.stored_at > record.ttl_seconds
            ]
            for record in expired:
                db.delete(record)
            db.commit()
            if expired:
                logger.info(f"Purged {len(expired)} expired preference records")
            return len(expired)
        except Exception as e:
            db.rollback()
            logger.error(f"Preference purge failed: {e}")
            return 0
        finally:
            db.close()

    # =========================================================================
    # Presets
    # =========================================================================

    def read_preset(self, name: str, owner_id: str = "") -> Any:
        """Read a named preset, falling back to a copy of its default."""
        preset = PREFERENCE_PRESETS[name]
        return self.read(preset.key, copy.deepcopy(preset.default), owner_id=owner_id)

    def write_preset(self, name: str, value: Any, owner_id: str = "") -> bool:
        preset = PREFERENCE_PRESETS[name]
        return self.write(preset.key, value, ttl=preset.ttl, owner_id=owner_id)

    def push_recent_search(
        self,
        term: str,
        owner_id: str = "",
        limit: int = RECENT_SEARCH_LIMIT,
    ) -> List[str]:
        """Move ``term`` to the front of the recent-search list."""
        term = term.strip()
        searches = self.read_preset("recent-searches", owner_id=owner_id)
        if not isinstance(searches, list):
            searches = []
        if term:
            searches = [term] + [s for s in searches if s != term]
            searches = searches[:limit]
            self.write_preset("recent-searches", searches, owner_id=owner_id)
        return searches

    def _degrade(self, message: str, fallback: Any) -> Any:
        self._stats["errors"] += 1
        self._stats["fallbacks"] += 1
        logger.warning(message)
        return fallback

    def get_stats(self) -> Dict[str, Any]:
        return {"enabled": self.enabled, "backend": "sql", **self._stats}

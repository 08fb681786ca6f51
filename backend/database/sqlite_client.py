"""
SQLite entity store
Local/demo backend with the same table layout as the production database
"""
import sqlite3
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from database.store import TABLES, ChangeListener, EntityStore, notify
from errors import ConstraintViolationError, RecordNotFoundError, StoreError, TransportError
from models.production_models import PARENT_FIELDS, ChangeEvent, ChangeType, EntityKind

logger = logging.getLogger(__name__)


_STAGE_COLUMNS = """
    name TEXT NOT NULL,
    custom_label TEXT,
    color TEXT,
    position INTEGER NOT NULL DEFAULT 0,
    assignee_id TEXT,
    estimated_hours REAL,
    actual_hours REAL,
    notes TEXT,
    due_date TEXT,
    started_at TEXT,
    completed_at TEXT,
    created_at TEXT,
    updated_at TEXT
"""

SCHEMA = f"""
CREATE TABLE IF NOT EXISTS production_zones (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    name TEXT NOT NULL,
    color TEXT,
    position INTEGER NOT NULL DEFAULT 0,
    progress INTEGER NOT NULL DEFAULT 0 CHECK (progress BETWEEN 0 AND 100),
    items_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS production_items (
    id TEXT PRIMARY KEY,
    project_id TEXT,
    zone_id TEXT NOT NULL REFERENCES production_zones(id) ON DELETE CASCADE,
    code TEXT NOT NULL,
    name TEXT NOT NULL,
    quantity REAL NOT NULL DEFAULT 1,
    unit TEXT NOT NULL DEFAULT 'шт',
    current_stage TEXT,
    progress INTEGER NOT NULL DEFAULT 0 CHECK (progress BETWEEN 0 AND 100),
    position INTEGER NOT NULL DEFAULT 0,
    materials TEXT,
    technical_notes TEXT,
    manager_comment TEXT,
    due_date TEXT,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS production_components (
    id TEXT PRIMARY KEY,
    item_id TEXT NOT NULL REFERENCES production_items(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    material TEXT,
    quantity REAL NOT NULL DEFAULT 1,
    unit TEXT NOT NULL DEFAULT 'шт',
    progress INTEGER NOT NULL DEFAULT 0 CHECK (progress BETWEEN 0 AND 100),
    position INTEGER NOT NULL DEFAULT 0,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS production_stages (
    id TEXT PRIMARY KEY,
    component_id TEXT NOT NULL REFERENCES production_components(id) ON DELETE CASCADE,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'in_progress', 'qa', 'completed')),
    {_STAGE_COLUMNS}
);

CREATE TABLE IF NOT EXISTS production_item_stages (
    id TEXT PRIMARY KEY,
    item_id TEXT NOT NULL REFERENCES production_items(id) ON DELETE CASCADE,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'in_progress', 'completed')),
    {_STAGE_COLUMNS}
);

CREATE TABLE IF NOT EXISTS production_component_materials (
    id TEXT PRIMARY KEY,
    component_id TEXT NOT NULL REFERENCES production_components(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    material_type TEXT,
    thickness REAL,
    quantity REAL,
    unit TEXT,
    color TEXT,
    finish TEXT,
    wood_species TEXT,
    grade TEXT,
    brand TEXT,
    article TEXT,
    notes TEXT,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS production_component_parts (
    id TEXT PRIMARY KEY,
    component_id TEXT NOT NULL REFERENCES production_components(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    quantity REAL NOT NULL DEFAULT 1,
    width REAL,
    height REAL,
    depth REAL,
    material TEXT,
    notes TEXT,
    position INTEGER NOT NULL DEFAULT 0,
    created_at TEXT,
    updated_at TEXT
);
"""


class SQLiteStore(EntityStore):
    """Entity store on a local SQLite database

    If a listener is given it receives a ChangeEvent after every
    successful write, with the owning project id resolved.
    """

    def __init__(self, db_path: str, listener: Optional[ChangeListener] = None):
        self.db_path = db_path
        self.listener = listener
        self.conn = None
        self._lock = threading.RLock()
        self._columns: Dict[EntityKind, List[str]] = {}
        self._init_database()

    def _init_database(self):
        """Create database schema if not exists"""
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.conn.executescript(SCHEMA)
        self.conn.commit()

        for kind, table in TABLES.items():
            rows = self.conn.execute(f"PRAGMA table_info({table})").fetchall()
            self._columns[kind] = [row["name"] for row in rows]

        logger.info(f"SQLite store initialized: {self.db_path}")

    # ================================================================
    # EntityStore
    # ================================================================
    def get(self, kind: EntityKind, record_id: str) -> Dict[str, Any]:
        with self._lock:
            row = self._execute(
                kind, record_id,
                f"SELECT * FROM {TABLES[kind]} WHERE id = ?", (record_id,)
            ).fetchone()
        if row is None:
            raise RecordNotFoundError(kind.value, record_id)
        return dict(row)

    def list(self, kind: EntityKind, parent_id: str) -> List[Dict[str, Any]]:
        order = "position, rowid" if "position" in self._columns[kind] else "rowid"
        with self._lock:
            rows = self._execute(
                kind, None,
                f"SELECT * FROM {TABLES[kind]} WHERE {PARENT_FIELDS[kind]} = ? ORDER BY {order}",
                (parent_id,)
            ).fetchall()
        return [dict(row) for row in rows]

    def create(self, kind: EntityKind, data: Dict[str, Any]) -> Dict[str, Any]:
        now = datetime.now(timezone.utc).isoformat()
        record = dict(data)
        record.setdefault("id", str(uuid.uuid4()))
        record.setdefault("created_at", now)
        record["updated_at"] = now
        self._check_columns(kind, record)

        columns = list(record)
        placeholders = ", ".join("?" for _ in columns)
        with self._lock:
            self._write(
                kind, record["id"],
                f"INSERT INTO {TABLES[kind]} ({', '.join(columns)}) VALUES ({placeholders})",
                [record[c] for c in columns]
            )
            created = self.get(kind, record["id"])

        logger.debug(f"Created {kind.value} {created['id']}")
        self._publish(kind, created, ChangeType.INSERT)
        return created

    def update(self, kind: EntityKind, record_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        changes = {k: v for k, v in patch.items() if k not in ("id", "created_at")}
        changes["updated_at"] = datetime.now(timezone.utc).isoformat()
        self._check_columns(kind, changes)

        assignments = ", ".join(f"{c} = ?" for c in changes)
        with self._lock:
            cursor = self._write(
                kind, record_id,
                f"UPDATE {TABLES[kind]} SET {assignments} WHERE id = ?",
                [*changes.values(), record_id]
            )
            if cursor.rowcount == 0:
                raise RecordNotFoundError(kind.value, record_id)
            updated = self.get(kind, record_id)

        self._publish(kind, updated, ChangeType.UPDATE)
        return updated

    def delete(self, kind: EntityKind, record_id: str) -> None:
        with self._lock:
            existing = self.get(kind, record_id)
            project_id = self._project_id_for(kind, existing)
            self._write(kind, record_id, f"DELETE FROM {TABLES[kind]} WHERE id = ?", (record_id,))

        logger.debug(f"Deleted {kind.value} {record_id}")
        notify(self.listener, ChangeEvent(kind, record_id, ChangeType.DELETE, project_id))

    def close(self):
        """Close database connection"""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.info("SQLite store closed")

    # ================================================================
    # Internals
    # ================================================================
    def _check_columns(self, kind: EntityKind, record: Dict[str, Any]):
        unknown = sorted(set(record) - set(self._columns[kind]))
        if unknown:
            raise ConstraintViolationError(
                f"Unknown column(s) for {kind.value}: {', '.join(unknown)}", kind.value, record.get("id")
            )

    def _execute(self, kind: EntityKind, record_id: Optional[str], sql: str, params) -> sqlite3.Cursor:
        if self.conn is None:
            raise TransportError("SQLite store is closed", kind.value, record_id)
        try:
            return self.conn.execute(sql, params)
        except sqlite3.IntegrityError as e:
            raise ConstraintViolationError(str(e), kind.value, record_id) from e
        except sqlite3.OperationalError as e:
            raise TransportError(str(e), kind.value, record_id) from e
        except sqlite3.Error as e:
            raise StoreError(str(e), kind.value, record_id) from e

    def _write(self, kind: EntityKind, record_id: Optional[str], sql: str, params) -> sqlite3.Cursor:
        try:
            cursor = self._execute(kind, record_id, sql, params)
            self.conn.commit()
            return cursor
        except StoreError:
            if self.conn is not None:
                self.conn.rollback()
            raise

    def _publish(self, kind: EntityKind, record: Dict[str, Any], event_type: ChangeType):
        if self.listener is None:
            return
        with self._lock:
            project_id = self._project_id_for(kind, record)
        notify(self.listener, ChangeEvent(kind, record["id"], event_type, project_id))

    def _project_id_for(self, kind: EntityKind, record: Dict[str, Any]) -> Optional[str]:
        """Walk up the tree to the project owning a record"""
        if kind in (EntityKind.ZONE, EntityKind.ITEM):
            return record.get("project_id")

        if kind in (EntityKind.COMPONENT, EntityKind.ITEM_STAGE):
            item_id = record.get("item_id")
        else:
            row = self.conn.execute(
                "SELECT item_id FROM production_components WHERE id = ?",
                (record.get("component_id"),)
            ).fetchone()
            item_id = row["item_id"] if row else None

        row = self.conn.execute(
            "SELECT project_id FROM production_items WHERE id = ?", (item_id,)
        ).fetchone()
        return row["project_id"] if row else None

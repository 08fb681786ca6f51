import logging
from typing import Any, Dict, List, Optional

import httpx
from postgrest.exceptions import APIError
from supabase import create_client

from config import Config
from database.store import TABLES, EntityStore
from errors import ConstraintViolationError, RecordNotFoundError, StoreError, TransportError
from models.production_models import PARENT_FIELDS, EntityKind

logger = logging.getLogger(__name__)

# Domain field -> column name where the production schema differs
COLUMN_ALIASES: Dict[EntityKind, Dict[str, str]] = {
    EntityKind.ZONE: {"progress": "progress_percent"},
    EntityKind.ITEM: {"progress": "progress_percent"},
}

# Tables without a position column, ordered by creation instead
_ORDER_BY_CREATED = {EntityKind.MATERIAL}


class SupabaseStore(EntityStore):
    """Entity store on the production Supabase (PostgREST) database"""

    def __init__(self, client=None):
        self.client = client or create_client(Config.SUPABASE_URL, Config.SUPABASE_KEY)
        logger.info("Supabase client initialized")

    def get(self, kind: EntityKind, record_id: str) -> Dict[str, Any]:
        result = self._run(kind, record_id, self.client.table(TABLES[kind])
                           .select("*")
                           .eq("id", record_id)
                           .limit(1))
        if not result.data:
            raise RecordNotFoundError(kind.value, record_id)
        return self._from_row(kind, result.data[0])

    def list(self, kind: EntityKind, parent_id: str) -> List[Dict[str, Any]]:
        order_column = "created_at" if kind in _ORDER_BY_CREATED else "position"
        result = self._run(kind, None, self.client.table(TABLES[kind])
                           .select("*")
                           .eq(PARENT_FIELDS[kind], parent_id)
                           .order(order_column))
        return [self._from_row(kind, row) for row in result.data or []]

    def create(self, kind: EntityKind, data: Dict[str, Any]) -> Dict[str, Any]:
        result = self._run(kind, data.get("id"), self.client.table(TABLES[kind])
                           .insert(self._to_row(kind, data)))
        if not result.data:
            raise StoreError(f"Insert into {TABLES[kind]} returned no data", kind.value)
        return self._from_row(kind, result.data[0])

    def update(self, kind: EntityKind, record_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        result = self._run(kind, record_id, self.client.table(TABLES[kind])
                           .update(self._to_row(kind, patch))
                           .eq("id", record_id))
        if not result.data:
            raise RecordNotFoundError(kind.value, record_id)
        return self._from_row(kind, result.data[0])

    def delete(self, kind: EntityKind, record_id: str) -> None:
        self.get(kind, record_id)
        self._run(kind, record_id, self.client.table(TABLES[kind])
                  .delete()
                  .eq("id", record_id))
        logger.debug(f"Deleted {kind.value} {record_id}")

    # ================================================================
    # Internals
    # ================================================================
    def _run(self, kind: EntityKind, record_id: Optional[str], query):
        """Execute a query, translating client errors into store errors"""
        try:
            return query.execute()
        except APIError as e:
            code = str(e.code or "")
            if code == "PGRST116":
                raise RecordNotFoundError(kind.value, record_id) from e
            if code.startswith("23") or code == "40001":
                raise ConstraintViolationError(e.message or str(e), kind.value, record_id) from e
            raise StoreError(e.message or str(e), kind.value, record_id) from e
        except httpx.HTTPError as e:
            raise TransportError(str(e), kind.value, record_id) from e

    @staticmethod
    def _to_row(kind: EntityKind, data: Dict[str, Any]) -> Dict[str, Any]:
        aliases = COLUMN_ALIASES.get(kind, {})
        return {aliases.get(k, k): v for k, v in data.items()}

    @staticmethod
    def _from_row(kind: EntityKind, row: Dict[str, Any]) -> Dict[str, Any]:
        reverse = {v: k for k, v in COLUMN_ALIASES.get(kind, {}).items()}
        return {reverse.get(k, k): v for k, v in row.items()}

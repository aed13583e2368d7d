"""
Tome - Vector Index
====================
Read-only wrapper around the pre-built LanceDB table that holds the book
passages.  Index construction happens elsewhere; this module only opens
the table and answers nearest-neighbour queries.

Design decisions:
  • **Singleton DB connection** — ``_get_connection()`` caches the
    ``lancedb.DBConnection`` per path to avoid file-lock contention.
  • **Lazy open** — a missing table is not an error until it is queried,
    so the assistant can start (and degrade) without an index.
  • **Cosine similarity** — LanceDB returns a cosine *distance*; it is
    converted to a ``[0, 1]`` similarity score before leaving this module.

Usage:
    from tome.src.database.vector_store import VectorIndex
    index = VectorIndex()
    matches = await index.query(vector, k=5)
"""

from __future__ import annotations

import asyncio
import threading

import lancedb
import pyarrow as pa

from tome.config.settings import settings
from tome.src.core.errors import VectorIndexError
from tome.src.core.models import RetrievalMatch
from tome.src.utils.logger import get_logger

logger = get_logger(__name__)

# ── Columns the pre-built table must expose ────────────────────────────
REQUIRED_FIELDS: tuple[pa.Field, ...] = (
    pa.field("vector", pa.list_(pa.float32())),
    pa.field("text", pa.utf8()),
)
_ID_COLUMNS = ("id", "chunk_id", "source_file")

_DB_LOCK = threading.Lock()
_db_connection_cache: dict[str, lancedb.DBConnection] = {}


def _get_connection(db_path: str) -> lancedb.DBConnection:
    """Return a **singleton** ``lancedb.DBConnection`` for *db_path*."""
    if db_path not in _db_connection_cache:
        with _DB_LOCK:
            if db_path not in _db_connection_cache:
                logger.info("Opening LanceDB connection: %s", db_path)
                _db_connection_cache[db_path] = lancedb.connect(db_path)
    return _db_connection_cache[db_path]


def distance_to_score(distance: object) -> float | None:
    """Cosine distance → similarity clamped to ``[0, 1]``; ``None`` if unusable."""
    if distance is None:
        return None
    try:
        value = 1.0 - float(distance)
    except (TypeError, ValueError):
        return None
    if value != value:  # NaN
        return None
    return min(max(value, 0.0), 1.0)


def missing_fields(schema: pa.Schema) -> list[str]:
    """Names of ``REQUIRED_FIELDS`` absent from *schema*."""
    return [f.name for f in REQUIRED_FIELDS if f.name not in schema.names]


class VectorIndex:
    """
    Parameters
    ----------
    db_path
        Override the database directory.  Defaults to ``settings.LANCEDB_PATH``.
    table_name
        Override the table name.  Defaults to ``settings.LANCEDB_TABLE_NAME``.
    """

    __slots__ = ("_db_path", "_table_name", "_table")

    def __init__(self, db_path: str | None = None, table_name: str | None = None) -> None:
        self._db_path: str = str(db_path or settings.LANCEDB_PATH)
        self._table_name: str = table_name or settings.LANCEDB_TABLE_NAME
        self._table: lancedb.table.Table | None = None


    def _open_table(self) -> lancedb.table.Table:
        if self._table is not None:
            return self._table

        try:
            db = _get_connection(self._db_path)
            if self._table_name not in db.table_names():
                raise VectorIndexError(f"Vector table '{self._table_name}' does not exist at {self._db_path}.")
            table = db.open_table(self._table_name)
        except VectorIndexError:
            raise
        except Exception as exc:
            logger.error("Failed to open LanceDB table '%s': %s", self._table_name, exc)
            raise VectorIndexError(f"Cannot open vector table '{self._table_name}'.") from exc

        absent = missing_fields(table.schema)
        if absent:
            raise VectorIndexError(f"Vector table '{self._table_name}' lacks required column(s): {', '.join(absent)}")

        logger.info("Opened vector table '%s' (%d rows).", self._table_name, table.count_rows())
        self._table = table
        return table


    def _query_sync(self, vector: list[float], k: int, include_metadata: bool) -> list[RetrievalMatch]:
        table = self._open_table()
        try:
            rows = table.search(vector).distance_type("cosine").limit(k).to_list()
        except Exception as exc:
            logger.error("Vector search failed: %s", exc)
            raise VectorIndexError("Vector search failed.") from exc

        matches: list[RetrievalMatch] = []
        for position, row in enumerate(rows):
            row_id = next((str(row[c]) for c in _ID_COLUMNS if row.get(c) is not None), str(position))
            text = str(row.get("text") or "") if include_metadata else ""
            matches.append(RetrievalMatch(id=row_id, score=distance_to_score(row.get("_distance")), metadata_text=text))
        return matches


    async def query(self, vector: list[float], k: int = 5, include_metadata: bool = True) -> list[RetrievalMatch]:
        """
        Return up to *k* matches ranked by descending similarity.

        Ordering among equal scores is whatever LanceDB returns.

        Raises
        ------
        VectorIndexError
            If the table is missing or the search fails.
        """
        matches = await asyncio.to_thread(self._query_sync, vector, k, include_metadata)
        logger.info("[RETRIEVE] Index returned %d match(es).", len(matches))
        return matches


    def __repr__(self) -> str:
        return f"VectorIndex(db='{self._db_path}', table='{self._table_name}')"

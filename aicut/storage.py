"""SQLite persistence for project history and binary assets."""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Any

from aicut.models import ASSET_TYPES, Asset, HistoryItem, Skeleton

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS meta (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS history (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  timestamp REAL NOT NULL,
  prompt TEXT NOT NULL,
  snapshot TEXT NOT NULL,            -- versioned skeleton JSON
  schema_version INTEGER NOT NULL,
  thumbnail TEXT
);
CREATE INDEX IF NOT EXISTS idx_history_timestamp ON history(timestamp);

CREATE TABLE IF NOT EXISTS assets (
  id TEXT PRIMARY KEY,               -- owning scene id
  type TEXT NOT NULL,                -- audio/video/image
  blob BLOB NOT NULL,
  created_at REAL NOT NULL
);
"""


def open_database(db_path: str | Path) -> sqlite3.Connection:
    """Open (and create if needed) the project database.

    ``":memory:"`` opens a throwaway in-memory database.
    """
    if str(db_path) != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.executescript(SCHEMA_SQL)
    conn.execute(
        "INSERT OR IGNORE INTO meta(key, value) VALUES(?, ?)",
        ("schema_version", str(SNAPSHOT_VERSION)),
    )
    return conn


# ----------------------------------------------------------------------
# Snapshot serializer
# ----------------------------------------------------------------------

def serialize_snapshot(doc: Skeleton) -> str:
    """Persisted form of a document, decoupled from the live dataclasses."""
    return json.dumps(
        {"version": SNAPSHOT_VERSION, "skeleton": doc.to_dict()},
        ensure_ascii=False,
        separators=(",", ":"),
    )


def deserialize_snapshot(text: str) -> Skeleton:
    """Inverse of ``serialize_snapshot``; also reads unversioned skeleton JSON.

    Raises:
        ValueError: If the snapshot is not valid JSON or has an unknown version.
    """
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("Snapshot must be a JSON object")
    if "version" not in data:
        return Skeleton.from_dict(data)
    version = data["version"]
    if version != SNAPSHOT_VERSION:
        raise ValueError(f"Unsupported snapshot version: {version}")
    return Skeleton.from_dict(data.get("skeleton") or {})


def thumbnail_for(doc: Skeleton) -> str | None:
    """First scene image, used as the history thumbnail."""
    if doc.scenes and doc.scenes[0].image_url:
        return doc.scenes[0].image_url
    return None


# ----------------------------------------------------------------------
# History
# ----------------------------------------------------------------------

class HistoryStore:
    """Saved projects, newest first."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def _row_to_item(self, row: sqlite3.Row) -> HistoryItem:
        return HistoryItem(
            id=row["id"],
            timestamp=row["timestamp"],
            prompt=row["prompt"],
            skeleton=deserialize_snapshot(row["snapshot"]),
            thumbnail=row["thumbnail"],
        )

    def add(self, prompt: str, doc: Skeleton, thumbnail: str | None = None,
            timestamp: float | None = None) -> int:
        cur = self.conn.execute(
            "INSERT INTO history(timestamp, prompt, snapshot, schema_version, thumbnail) "
            "VALUES(?, ?, ?, ?, ?)",
            (
                timestamp if timestamp is not None else time.time(),
                prompt,
                serialize_snapshot(doc),
                SNAPSHOT_VERSION,
                thumbnail,
            ),
        )
        logger.debug("History %d added", cur.lastrowid)
        return int(cur.lastrowid)

    def update(self, history_id: int, doc: Skeleton, prompt: str | None = None,
               thumbnail: str | None = None) -> bool:
        """Replace the snapshot of an existing item. Returns False if the id is unknown."""
        fields = ["snapshot = ?", "schema_version = ?", "timestamp = ?"]
        params: list[Any] = [serialize_snapshot(doc), SNAPSHOT_VERSION, time.time()]
        if prompt is not None:
            fields.append("prompt = ?")
            params.append(prompt)
        if thumbnail is not None:
            fields.append("thumbnail = ?")
            params.append(thumbnail)
        params.append(history_id)
        cur = self.conn.execute(f"UPDATE history SET {', '.join(fields)} WHERE id = ?", params)
        return cur.rowcount > 0

    def get(self, history_id: int) -> HistoryItem | None:
        row = self.conn.execute("SELECT * FROM history WHERE id = ?", (history_id,)).fetchone()
        return self._row_to_item(row) if row else None

    def list(self, limit: int | None = None) -> list[HistoryItem]:
        sql = "SELECT * FROM history ORDER BY timestamp DESC, id DESC"
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)
        return [self._row_to_item(row) for row in self.conn.execute(sql, params)]

    def delete(self, history_id: int) -> bool:
        cur = self.conn.execute("DELETE FROM history WHERE id = ?", (history_id,))
        return cur.rowcount > 0


def upsert_history_snapshot(
    history: HistoryStore,
    history_id: int | None,
    doc: Skeleton,
    prompt: str,
) -> int:
    """Save ``doc`` into history: update when ``history_id`` exists, add otherwise.

    Returns:
        The id of the saved history item.
    """
    thumbnail = thumbnail_for(doc)
    if history_id is not None and history.update(history_id, doc, thumbnail=thumbnail):
        return history_id
    return history.add(prompt, doc, thumbnail=thumbnail)


# ----------------------------------------------------------------------
# Assets
# ----------------------------------------------------------------------

class AssetStore:
    """Binary payloads keyed by the owning scene id."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def put(self, asset_id: str, blob: bytes, asset_type: str) -> Asset:
        if asset_type not in ASSET_TYPES:
            raise ValueError(f"Unknown asset type: {asset_type!r}")
        created_at = time.time()
        self.conn.execute(
            "INSERT OR REPLACE INTO assets(id, type, blob, created_at) VALUES(?, ?, ?, ?)",
            (asset_id, asset_type, sqlite3.Binary(blob), created_at),
        )
        return Asset(id=asset_id, blob=blob, type=asset_type, created_at=created_at)

    def get(self, asset_id: str) -> Asset | None:
        row = self.conn.execute("SELECT * FROM assets WHERE id = ?", (asset_id,)).fetchone()
        if not row:
            return None
        return Asset(id=row["id"], blob=bytes(row["blob"]), type=row["type"],
                     created_at=row["created_at"])

    def delete(self, asset_id: str) -> bool:
        cur = self.conn.execute("DELETE FROM assets WHERE id = ?", (asset_id,))
        return cur.rowcount > 0

    def list_ids(self, asset_type: str | None = None) -> list[str]:
        if asset_type:
            cur = self.conn.execute(
                "SELECT id FROM assets WHERE type = ? ORDER BY created_at", (asset_type,),
            )
        else:
            cur = self.conn.execute("SELECT id FROM assets ORDER BY created_at")
        return [row["id"] for row in cur]

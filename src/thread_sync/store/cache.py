"""Local persistent cache: thread state, chat-item media index, media blobs.

Storage layout::

    <cache_dir>/
    ├── thread_sync.sqlite3        ← thread state per scope + media index
    └── media/{scope}/{thread}/{clientFileId}   ← copies of local media files

Every row is keyed by an owner scope (see ``thread_sync.scope``) so a guest
and a signed-in user on the same machine never see each other's threads.
"""

from __future__ import annotations

import contextlib
import hashlib
import json
import logging
import shutil
import sqlite3
from pathlib import Path
from typing import Any, Iterator

from thread_sync import config
from thread_sync.exceptions import CacheError
from thread_sync.store.models import now_iso

logger = logging.getLogger(__name__)


def _path_key(value: str) -> str:
    return hashlib.sha256(str(value).encode("utf-8")).hexdigest()[:16]


class LocalCache:
    def __init__(self, cache_dir: str | Path | None = None) -> None:
        self.cache_dir = Path(cache_dir) if cache_dir else config.DEFAULT_CACHE_DIR
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.media_dir = self.cache_dir / "media"
        self._db_path = str(self.cache_dir / "thread_sync.sqlite3")
        self._ensure_schema()

    @contextlib.contextmanager
    def _db(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self._db_path)
        except sqlite3.Error as e:
            raise CacheError(f"Failed to open local cache at {self._db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        except sqlite3.Error as e:
            raise CacheError(f"Local cache query failed: {e}") from e
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        with self._db() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS thread_state (
                    scope TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    saved_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS media_index (
                    scope TEXT NOT NULL,
                    thread_id TEXT NOT NULL,
                    chat_item_id TEXT NOT NULL,
                    client_file_id TEXT NOT NULL,
                    filename TEXT,
                    mime TEXT,
                    saved_at TEXT NOT NULL,
                    PRIMARY KEY (scope, thread_id, chat_item_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS local_media (
                    scope TEXT NOT NULL,
                    thread_id TEXT NOT NULL,
                    client_file_id TEXT NOT NULL,
                    path TEXT NOT NULL,
                    meta TEXT,
                    saved_at TEXT NOT NULL,
                    PRIMARY KEY (scope, thread_id, client_file_id)
                )
                """
            )

    # ------------------------------------------------------------------
    # Thread state
    # ------------------------------------------------------------------

    def load_state(self, scope: str) -> dict | None:
        """Return ``{"threadsById", "activeId", "sync"}`` or None if nothing is cached."""
        with self._db() as conn:
            row = conn.execute(
                "SELECT data FROM thread_state WHERE scope = ?", (scope,)
            ).fetchone()
        if not row:
            return None
        try:
            data = json.loads(row["data"])
        except ValueError:
            logger.warning("Discarding corrupt cached state for scope %s", scope)
            return None
        return data if isinstance(data, dict) else None

    def save_state(self, scope: str, threads_by_id: dict, active_id: str, sync: dict) -> None:
        data = json.dumps({"threadsById": threads_by_id, "activeId": active_id, "sync": sync})
        with self._db() as conn:
            conn.execute(
                """
                INSERT INTO thread_state (scope, data, saved_at) VALUES (?, ?, ?)
                ON CONFLICT(scope) DO UPDATE SET data = excluded.data, saved_at = excluded.saved_at
                """,
                (scope, data, now_iso()),
            )

    # ------------------------------------------------------------------
    # Chat item -> local file index
    # ------------------------------------------------------------------

    def put_media_index(
        self,
        scope: str,
        thread_id: str,
        chat_item_id: str,
        client_file_id: str,
        filename: str | None = None,
        mime: str | None = None,
    ) -> None:
        with self._db() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO media_index
                    (scope, thread_id, chat_item_id, client_file_id, filename, mime, saved_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (scope, thread_id, chat_item_id, client_file_id, filename, mime, now_iso()),
            )

    def get_media_index(self, scope: str, thread_id: str, chat_item_id: str) -> dict | None:
        with self._db() as conn:
            row = conn.execute(
                """
                SELECT client_file_id, filename, mime FROM media_index
                WHERE scope = ? AND thread_id = ? AND chat_item_id = ?
                """,
                (scope, thread_id, chat_item_id),
            ).fetchone()
        if not row:
            return None
        return {"clientFileId": row["client_file_id"], "filename": row["filename"], "mime": row["mime"]}

    # ------------------------------------------------------------------
    # Local media blobs
    # ------------------------------------------------------------------

    def put_local_media(
        self,
        scope: str,
        thread_id: str,
        client_file_id: str,
        source: str | Path,
        meta: dict[str, Any] | None = None,
    ) -> Path:
        """Copy ``source`` into the cache so it can be played back offline."""
        dest = self.media_dir / _path_key(scope) / _path_key(thread_id) / _path_key(client_file_id)
        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            shutil.copyfile(source, dest)
        except OSError as e:
            raise CacheError(f"Failed to cache media {source}: {e}") from e

        with self._db() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO local_media
                    (scope, thread_id, client_file_id, path, meta, saved_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (scope, thread_id, client_file_id, str(dest), json.dumps(meta or {}), now_iso()),
            )
        return dest

    def get_local_media(self, scope: str, thread_id: str, client_file_id: str) -> dict | None:
        with self._db() as conn:
            row = conn.execute(
                """
                SELECT path, meta FROM local_media
                WHERE scope = ? AND thread_id = ? AND client_file_id = ?
                """,
                (scope, thread_id, client_file_id),
            ).fetchone()
        if not row or not Path(row["path"]).exists():
            return None
        return {"path": Path(row["path"]), "meta": json.loads(row["meta"] or "{}")}

    def delete_local_media(self, scope: str, thread_id: str, client_file_id: str) -> bool:
        with self._db() as conn:
            row = conn.execute(
                """
                SELECT path FROM local_media
                WHERE scope = ? AND thread_id = ? AND client_file_id = ?
                """,
                (scope, thread_id, client_file_id),
            ).fetchone()
            if not row:
                return False
            conn.execute(
                "DELETE FROM local_media WHERE scope = ? AND thread_id = ? AND client_file_id = ?",
                (scope, thread_id, client_file_id),
            )
        Path(row["path"]).unlink(missing_ok=True)
        return True

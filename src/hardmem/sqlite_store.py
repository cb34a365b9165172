"""
hardmem SQLite Store -- file-backed MemoryStore.

One SQLite database under HARDMEM_HOME holds memories, folders and an FTS5
index over title and content. Blocking work runs on worker threads; the
shared connection is guarded by a lock.

Usage:
    store = SQLiteStore()
    memory = await store.save_memory({"title": "Dog", "content": "Rex", "user_id": "u1"})
    hits = await store.search_memories("rex", [], "u1")
"""

import asyncio
import json
import logging
import os
import sqlite3
import threading
import time as _time
from collections import OrderedDict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from hardmem.crypto import ENC_PREFIX, decrypt, encrypt, hardmem_home, secure_connect
from hardmem.storage import (
    MemoryStore,
    new_folder_id,
    new_memory_id,
    search_terms,
    validate_memory_data,
    validate_memory_patch,
)
from hardmem.types import (
    Folder,
    Memory,
    MemoryNotFound,
    StoreUnavailable,
    parse_dt,
    utcnow,
)

logger = logging.getLogger("hardmem.sqlite_store")

SCHEMA_VERSION = 1
EXPORT_VERSION = "hardmem-sqlite-v1"

# ---------------------------------------------------------------------------
# SQLite retry. WAL + busy_timeout absorb most write contention between
# processes sharing one database; this covers the rest.
# ---------------------------------------------------------------------------
_DB_RETRY_ATTEMPTS = 3
_DB_RETRY_BASE_DELAY = 1.0  # seconds


def _retry_on_locked(fn, *args, **kwargs):
    """Call fn with retry on 'database is locked' OperationalError."""
    for attempt in range(_DB_RETRY_ATTEMPTS):
        try:
            return fn(*args, **kwargs)
        except sqlite3.OperationalError as e:
            if "database is locked" in str(e) and attempt < _DB_RETRY_ATTEMPTS - 1:
                delay = _DB_RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning("database is locked (attempt %d/%d), retrying in %.1fs",
                               attempt + 1, _DB_RETRY_ATTEMPTS, delay)
                _time.sleep(delay)
            else:
                raise


# Search result cache, cleared on every write.
_QUERY_CACHE_MAX = 128

_MEMORY_COLUMNS = (
    "memory_id, title, content, tags, folder_id, user_id, "
    "conversation_source, created_at, last_modified, last_accessed"
)
_FTS_MEMORY_COLUMNS = ", ".join("m." + c for c in _MEMORY_COLUMNS.split(", "))
_MEMORY_PATCH_COLUMNS = ("title", "content", "tags", "folder_id", "conversation_source")


def _ts(dt: datetime) -> str:
    # Fixed-width so lexical order in SQL equals chronological order.
    return dt.isoformat(timespec="microseconds")


class SQLiteStore(MemoryStore):
    """SQLite-backed memory store with FTS5 text search."""

    name = "sqlite"

    def __init__(self, db_path=None):
        self.db_path = Path(db_path) if db_path else (hardmem_home() / "hardmem.db")
        self.db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)

        self._lock = threading.Lock()
        self._cache_lock = threading.Lock()
        self._query_cache: OrderedDict = OrderedDict()  # (user, terms, tags) -> [Memory]
        self._cache_generation = 0  # bumped on every write
        self._fts_available = False
        self._conn: Optional[sqlite3.Connection] = self._connect()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = secure_connect(self.db_path, timeout=30, check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def _init_schema(self) -> None:
        c = self._conn

        c.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
        if c.execute("SELECT version FROM schema_version LIMIT 1").fetchone() is None:
            c.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
            logger.info("Created hardmem schema v%d at %s", SCHEMA_VERSION, self.db_path)

        c.execute("""
            CREATE TABLE IF NOT EXISTS memories (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                memory_id TEXT UNIQUE NOT NULL,
                user_id TEXT NOT NULL,
                title TEXT NOT NULL,
                content TEXT NOT NULL,
                tags TEXT NOT NULL DEFAULT '[]',
                folder_id TEXT,
                conversation_source TEXT,
                created_at TEXT NOT NULL,
                last_modified TEXT NOT NULL,
                last_accessed TEXT NOT NULL
            )
        """)
        for col in ("user_id", "folder_id", "created_at"):
            c.execute(f"CREATE INDEX IF NOT EXISTS idx_memories_{col} ON memories({col})")

        c.execute("""
            CREATE TABLE IF NOT EXISTS folders (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                folder_id TEXT UNIQUE NOT NULL,
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                parent_id TEXT,
                created_at TEXT NOT NULL
            )
        """)
        c.execute("CREATE INDEX IF NOT EXISTS idx_folders_user_id ON folders(user_id)")

        try:
            c.execute("""
                CREATE VIRTUAL TABLE IF NOT EXISTS memories_fts
                USING fts5(title, content, content='memories', content_rowid='id')
            """)
            c.execute("""
                CREATE TRIGGER IF NOT EXISTS memories_ai AFTER INSERT ON memories BEGIN
                    INSERT INTO memories_fts(rowid, title, content) VALUES (new.id, new.title, new.content);
                END
            """)
            c.execute("""
                CREATE TRIGGER IF NOT EXISTS memories_ad AFTER DELETE ON memories BEGIN
                    INSERT INTO memories_fts(memories_fts, rowid, title, content)
                    VALUES ('delete', old.id, old.title, old.content);
                END
            """)
            c.execute("""
                CREATE TRIGGER IF NOT EXISTS memories_au AFTER UPDATE OF title, content ON memories BEGIN
                    INSERT INTO memories_fts(memories_fts, rowid, title, content)
                    VALUES ('delete', old.id, old.title, old.content);
                    INSERT INTO memories_fts(rowid, title, content) VALUES (new.id, new.title, new.content);
                END
            """)
            self._fts_available = True
        except sqlite3.OperationalError as e:
            logger.warning("FTS5 not available, text search falls back to LIKE: %s", e)
            self._fts_available = False

        c.commit()

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _run_sql(self, sql, params=()):
        if self._conn is None:
            raise StoreUnavailable("SQLite store is closed")
        return _retry_on_locked(self._conn.execute, sql, params)

    def _commit(self) -> None:
        _retry_on_locked(self._conn.commit)

    async def _call(self, fn, *args):
        """Run a blocking store method off the event loop."""
        if self._conn is None:
            raise StoreUnavailable("SQLite store is closed")
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"SQLite error: {e}") from e

    def _invalidate_query_cache(self) -> None:
        """Drop cached searches. Writers call this after their commit."""
        with self._cache_lock:
            self._cache_generation += 1
            self._query_cache.clear()

    @staticmethod
    def _row_to_memory(row: tuple) -> Memory:
        (memory_id, title, content, tags_json, folder_id, user_id,
         conversation_source, created_at, last_modified, last_accessed) = row
        return Memory(
            id=memory_id,
            title=title,
            content=content,
            tags=json.loads(tags_json) if tags_json else [],
            folder_id=folder_id,
            user_id=user_id,
            conversation_source=conversation_source,
            created_at=parse_dt(created_at),
            last_modified=parse_dt(last_modified),
            last_accessed=parse_dt(last_accessed),
        )

    @staticmethod
    def _row_to_folder(row: tuple) -> Folder:
        folder_id, name, parent_id, user_id, created_at = row
        return Folder(id=folder_id, name=name, parent_id=parent_id, user_id=user_id,
                      created_at=parse_dt(created_at))

    def _fetch_memories(self, where: str, params: tuple) -> List[Memory]:
        rows = self._run_sql(
            f"SELECT {_MEMORY_COLUMNS} FROM memories WHERE {where} ORDER BY created_at DESC, id DESC",
            params,
        ).fetchall()
        return [self._row_to_memory(r) for r in rows]

    def _insert_memory(self, memory: Memory) -> None:
        self._run_sql(
            f"INSERT INTO memories ({_MEMORY_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                memory.id, memory.title, memory.content, json.dumps(memory.tags),
                memory.folder_id, memory.user_id, memory.conversation_source,
                _ts(memory.created_at), _ts(memory.last_modified), _ts(memory.last_accessed),
            ),
        )

    # ------------------------------------------------------------------
    # Memories (sync)
    # ------------------------------------------------------------------

    def _get_all_memories(self, user_id: str) -> List[Memory]:
        with self._lock:
            return self._fetch_memories("user_id = ?", (user_id,))

    def _text_search(self, user_id: str, terms: List[str]) -> List[Memory]:
        """Every term must match title or content. FTS5 first, LIKE fallback."""
        if self._fts_available:
            fts_query = " AND ".join(f'"{t}"*' for t in terms)
            try:
                rows = self._run_sql(
                    f"""SELECT {_FTS_MEMORY_COLUMNS}
                        FROM memories_fts f JOIN memories m ON f.rowid = m.id
                        WHERE memories_fts MATCH ? AND m.user_id = ?
                        ORDER BY m.created_at DESC, m.id DESC""",
                    (fts_query, user_id),
                ).fetchall()
                return [self._row_to_memory(r) for r in rows]
            except sqlite3.OperationalError as e:
                logger.warning("FTS5 query %r failed, using LIKE: %s", fts_query, e)
        clauses = " AND ".join("(LOWER(title) || ' ' || LOWER(content)) LIKE ?" for _ in terms)
        return self._fetch_memories(
            f"user_id = ? AND {clauses}", (user_id, *(f"%{t}%" for t in terms))
        )

    def _search_memories(self, query: str, tags: List[str], user_id: str) -> List[Memory]:
        terms = search_terms(query)
        if not terms and not tags:
            return []
        key = (user_id, tuple(terms), tuple(sorted(tags)))
        with self._cache_lock:
            cached = self._query_cache.get(key)
            if cached is not None:
                self._query_cache.move_to_end(key)
                return [m.copy() for m in cached]
            generation = self._cache_generation

        with self._lock:
            if terms:
                results = self._text_search(user_id, terms)
            else:
                results = self._fetch_memories("user_id = ?", (user_id,))
        if tags:
            wanted = set(tags)
            results = [m for m in results if wanted & set(m.tags)]

        with self._cache_lock:
            # A write since our read means these results may already be stale
            if generation == self._cache_generation:
                self._query_cache[key] = results
                while len(self._query_cache) > _QUERY_CACHE_MAX:
                    self._query_cache.popitem(last=False)
        return [m.copy() for m in results]

    def _save_memory(self, data: Dict[str, Any]) -> Memory:
        fields = validate_memory_data(data)
        memory = Memory(id=data.get("id") or new_memory_id(), created_at=parse_dt(data.get("created_at")),
                        **fields)
        with self._lock:
            self._insert_memory(memory)
            self._commit()
        self._invalidate_query_cache()
        logger.debug("Saved memory %s (%d chars) for %s", memory.id, len(memory.content), memory.user_id)
        return memory

    def _get_memory_row(self, memory_id: str) -> Optional[Memory]:
        found = self._fetch_memories("memory_id = ?", (memory_id,))
        return found[0] if found else None

    def _update_memory(self, memory_id: str, patch: Dict[str, Any]) -> Memory:
        validate_memory_patch(patch)
        with self._lock:
            memory = self._get_memory_row(memory_id)
            if memory is None:
                raise MemoryNotFound(f"Memory {memory_id} not found")
            for col in _MEMORY_PATCH_COLUMNS:
                if col in patch:
                    setattr(memory, col, list(patch[col] or []) if col == "tags" else patch[col])
            memory.last_modified = memory.last_accessed = utcnow()
            self._run_sql(
                """UPDATE memories SET title = ?, content = ?, tags = ?, folder_id = ?,
                          conversation_source = ?, last_modified = ?, last_accessed = ?
                   WHERE memory_id = ?""",
                (
                    memory.title, memory.content, json.dumps(memory.tags), memory.folder_id,
                    memory.conversation_source, _ts(memory.last_modified), _ts(memory.last_accessed),
                    memory_id,
                ),
            )
            self._commit()
        self._invalidate_query_cache()
        return memory

    def _delete_memory(self, memory_id: str) -> bool:
        with self._lock:
            cur = self._run_sql("DELETE FROM memories WHERE memory_id = ?", (memory_id,))
            self._commit()
        self._invalidate_query_cache()
        return cur.rowcount > 0

    def _get_memory(self, memory_id: str) -> Optional[Memory]:
        with self._lock:
            memory = self._get_memory_row(memory_id)
            if memory is None:
                return None
            memory.last_accessed = utcnow()
            self._run_sql(
                "UPDATE memories SET last_accessed = ? WHERE memory_id = ?",
                (_ts(memory.last_accessed), memory_id),
            )
            self._commit()
        return memory

    def _get_memories_in_folder(self, folder_id: Optional[str], user_id: str) -> List[Memory]:
        with self._lock:
            if folder_id is None:
                return self._fetch_memories("user_id = ? AND folder_id IS NULL", (user_id,))
            return self._fetch_memories("user_id = ? AND folder_id = ?", (user_id, folder_id))

    # ------------------------------------------------------------------
    # Folders (sync)
    # ------------------------------------------------------------------

    def _save_folder(self, data: Dict[str, Any]) -> Folder:
        name = (data.get("name") or "").strip()
        if not name:
            raise ValueError("folder name must be a non-empty string")
        folder = Folder(id=new_folder_id(), name=name, parent_id=data.get("parent_id"),
                        user_id=data["user_id"])
        with self._lock:
            self._run_sql(
                "INSERT INTO folders (folder_id, user_id, name, parent_id, created_at) VALUES (?, ?, ?, ?, ?)",
                (folder.id, folder.user_id, folder.name, folder.parent_id, _ts(folder.created_at)),
            )
            self._commit()
        return folder

    def _get_folder(self, folder_id: str) -> Optional[Folder]:
        with self._lock:
            row = self._run_sql(
                "SELECT folder_id, name, parent_id, user_id, created_at FROM folders WHERE folder_id = ?",
                (folder_id,),
            ).fetchone()
        return self._row_to_folder(row) if row else None

    def _update_folder(self, folder_id: str, patch: Dict[str, Any]) -> Folder:
        with self._lock:
            row = self._run_sql(
                "SELECT folder_id, name, parent_id, user_id, created_at FROM folders WHERE folder_id = ?",
                (folder_id,),
            ).fetchone()
            if row is None:
                raise MemoryNotFound(f"Folder {folder_id} not found")
            folder = self._row_to_folder(row)
            if "parent_id" in patch:
                folder.parent_id = patch["parent_id"]
            if patch.get("name"):
                folder.name = patch["name"]
            self._run_sql(
                "UPDATE folders SET name = ?, parent_id = ? WHERE folder_id = ?",
                (folder.name, folder.parent_id, folder_id),
            )
            self._commit()
        return folder

    def _get_all_folders(self, user_id: str) -> List[Folder]:
        with self._lock:
            rows = self._run_sql(
                """SELECT folder_id, name, parent_id, user_id, created_at FROM folders
                   WHERE user_id = ? ORDER BY created_at, id""",
                (user_id,),
            ).fetchall()
        return [self._row_to_folder(r) for r in rows]

    def _delete_folder(self, folder_id: str, user_id: str) -> None:
        with self._lock:
            row = self._run_sql(
                "SELECT parent_id FROM folders WHERE folder_id = ? AND user_id = ?", (folder_id, user_id)
            ).fetchone()
            parent_id = row[0] if row else None
            try:
                self._run_sql(
                    "UPDATE memories SET folder_id = NULL WHERE folder_id = ? AND user_id = ?",
                    (folder_id, user_id),
                )
                self._run_sql(
                    "UPDATE folders SET parent_id = ? WHERE parent_id = ? AND user_id = ?",
                    (parent_id, folder_id, user_id),
                )
                self._run_sql("DELETE FROM folders WHERE folder_id = ? AND user_id = ?", (folder_id, user_id))
                self._commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise
        self._invalidate_query_cache()

    # ------------------------------------------------------------------
    # MemoryStore interface
    # ------------------------------------------------------------------

    async def get_all_memories(self, user_id: str) -> List[Memory]:
        return await self._call(self._get_all_memories, user_id)

    async def search_memories(self, query: str, tags: List[str], user_id: str) -> List[Memory]:
        return await self._call(self._search_memories, query or "", list(tags or []), user_id)

    async def save_memory(self, data: Dict[str, Any]) -> Memory:
        return await self._call(self._save_memory, data)

    async def update_memory(self, memory_id: str, patch: Dict[str, Any]) -> Memory:
        return await self._call(self._update_memory, memory_id, patch)

    async def delete_memory(self, memory_id: str) -> bool:
        return await self._call(self._delete_memory, memory_id)

    async def get_memory(self, memory_id: str) -> Optional[Memory]:
        return await self._call(self._get_memory, memory_id)

    async def get_memories_in_folder(self, folder_id: Optional[str], user_id: str) -> List[Memory]:
        return await self._call(self._get_memories_in_folder, folder_id, user_id)

    async def save_folder(self, data: Dict[str, Any]) -> Folder:
        return await self._call(self._save_folder, data)

    async def update_folder(self, folder_id: str, patch: Dict[str, Any]) -> Folder:
        if "parent_id" in patch:
            await self._check_folder_move(folder_id, patch["parent_id"])
        return await self._call(self._update_folder, folder_id, patch)

    async def get_folder(self, folder_id: str) -> Optional[Folder]:
        return await self._call(self._get_folder, folder_id)

    async def get_all_folders(self, user_id: str) -> List[Folder]:
        return await self._call(self._get_all_folders, user_id)

    async def delete_folder(self, folder_id: str, user_id: str) -> None:
        await self._call(self._delete_folder, folder_id, user_id)

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    def _export(self, filepath: Path, user_id: Optional[str]) -> Dict[str, Any]:
        with self._lock:
            where, params = ("user_id = ?", (user_id,)) if user_id else ("1 = 1", ())
            memories = self._fetch_memories(where, params)
            folder_rows = self._run_sql(
                f"SELECT folder_id, name, parent_id, user_id, created_at FROM folders WHERE {where} "
                "ORDER BY created_at, id",
                params,
            ).fetchall()
        folders = [self._row_to_folder(r) for r in folder_rows]

        export_data = {
            "version": EXPORT_VERSION,
            "exported_at": utcnow().isoformat(),
            "memory_count": len(memories),
            "folder_count": len(folders),
            "memories": [m.to_dict() for m in reversed(memories)],
            "folders": [f.to_dict() for f in folders],
        }
        payload = encrypt(json.dumps(export_data, indent=2))

        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        # 0600, no symlink following
        fd = os.open(str(filepath), os.O_CREAT | os.O_WRONLY | os.O_TRUNC | os.O_NOFOLLOW, 0o600)
        try:
            os.write(fd, payload.encode("utf-8"))
        finally:
            os.close(fd)
        logger.info("Exported %d memories to %s", len(memories), filepath)

        return {
            "filepath": str(filepath),
            "memory_count": len(memories),
            "folder_count": len(folders),
            "encrypted": payload.startswith(ENC_PREFIX),
            "file_size_kb": filepath.stat().st_size / 1024,
            "exported_at": export_data["exported_at"],
        }

    def _import(self, filepath: Path, user_id: Optional[str], clear_existing: bool) -> Dict[str, Any]:
        filepath = Path(filepath)
        if filepath.is_symlink():
            raise ValueError("Import file must not be a symlink")
        data = json.loads(decrypt(filepath.read_text(encoding="utf-8").strip()))
        if data.get("version") != EXPORT_VERSION:
            raise ValueError(f"Unsupported export version: {data.get('version')!r}")

        imported = skipped = 0
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                if clear_existing and user_id:
                    self._conn.execute("DELETE FROM memories WHERE user_id = ?", (user_id,))
                    self._conn.execute("DELETE FROM folders WHERE user_id = ?", (user_id,))
                for fd in data.get("folders", []):
                    self._conn.execute(
                        """INSERT OR IGNORE INTO folders (folder_id, user_id, name, parent_id, created_at)
                           VALUES (?, ?, ?, ?, ?)""",
                        (fd["id"], user_id or fd["user_id"], fd["name"], fd.get("parent_id"),
                         _ts(parse_dt(fd.get("created_at")) or utcnow())),
                    )
                for md in data.get("memories", []):
                    memory = Memory.from_dict(md)
                    if user_id:
                        memory.user_id = user_id
                    exists = self._conn.execute(
                        "SELECT 1 FROM memories WHERE memory_id = ?", (memory.id,)
                    ).fetchone()
                    if exists:
                        skipped += 1
                        continue
                    self._insert_memory(memory)
                    imported += 1
                self._conn.execute("COMMIT")
            except Exception:
                self._conn.execute("ROLLBACK")
                raise
        self._invalidate_query_cache()
        logger.info("Imported %d memories from %s (%d already present)", imported, filepath, skipped)
        return {"filepath": str(filepath), "memory_count": imported, "skipped": skipped}

    async def export_to_file(self, filepath, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Write memories and folders (one user, or all) to a JSON export."""
        return await self._call(self._export, filepath, user_id)

    async def import_from_file(self, filepath, user_id: Optional[str] = None,
                               clear_existing: bool = False) -> Dict[str, Any]:
        """Load an export. Memories whose id already exists are skipped."""
        return await self._call(self._import, filepath, user_id, clear_existing)

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        try:
            conn.execute("PRAGMA wal_checkpoint(PASSIVE)")
        except sqlite3.Error as e:
            logger.debug("WAL checkpoint on close failed: %s", e)
        try:
            conn.close()
        except sqlite3.Error as e:
            logger.debug("Database close failed: %s", e)

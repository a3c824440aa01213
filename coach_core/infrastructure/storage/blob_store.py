"""基于 aiosqlite 的图片 BlobStore。

- 数据库文件：<storage_root>/blobs.db，表 blobs(key, mime_type, name, data, created_at)。
- key 由 new_blob_key() 生成：img_<毫秒时间戳>_<进程内计数>_<随机十六进制>。
- Blob 写入后不可修改：同一 key 再次写入会抛出 BLOB_EXISTS；
  需要在两个上下文中引用同一图片时，用 copy() 复制出新 key。
- 读取不存在的 key 返回 None；数据列不是 bytes 的损坏行记录日志后视为不存在。
- 数据库文件损坏时读取记录日志并返回 None / 空列表，删除抛出 STORE_DELETE_ERROR。
"""

import asyncio
import itertools
import logging
import secrets
import sqlite3
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, List, Optional, Tuple

import aiosqlite

from coach_core.config.settings import settings
from coach_core.domain.exceptions import BusinessError
from coach_core.domain.models import Attachment
from coach_core.infrastructure.logging.logger import log_event


_key_counter = itertools.count(1)


def new_blob_key() -> str:
    return f"img_{int(time.time() * 1000)}_{next(_key_counter)}_{secrets.token_hex(4)}"


class SqliteBlobStore:
    """异步 Blob 存储，接口与 RecordStore 对齐：put/get/delete/clear/list_all。"""

    _COLUMNS = ("key", "mime_type", "name", "data", "created_at")
    _COLUMN_LIST = ", ".join(_COLUMNS)

    def __init__(self, root: str | Path | None = None, filename: str = "blobs.db"):
        self._root = Path(root or settings.storage_root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self.db_path = self._root / filename
        self._initialized = False
        self._init_lock = asyncio.Lock()

    async def ensure_database(self) -> None:
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    CREATE TABLE IF NOT EXISTS blobs (
                        key TEXT PRIMARY KEY,
                        mime_type TEXT NOT NULL,
                        name TEXT,
                        data BLOB,
                        created_at INTEGER NOT NULL
                    )
                    """
                )
                await db.commit()
            self._initialized = True

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        await self.ensure_database()
        conn = await aiosqlite.connect(self.db_path)
        try:
            yield conn
        finally:
            await conn.close()

    async def put(self, value: Attachment, key: Optional[str] = None) -> str:
        """写入一个新 Blob 并返回其 key；key 已存在时抛出 BLOB_EXISTS。"""

        blob_key = key or new_blob_key()
        try:
            async with self.connection() as conn:
                await conn.execute(
                    f"INSERT INTO blobs ({self._COLUMN_LIST}) VALUES (?, ?, ?, ?, ?)",
                    (blob_key, value.mime_type, value.name, bytes(value.data), int(time.time() * 1000)),
                )
                await conn.commit()
        except sqlite3.IntegrityError as e:
            raise BusinessError(code="BLOB_EXISTS", message=f"Blob {blob_key} already exists") from e
        except sqlite3.Error as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e)) from e
        return blob_key

    async def get(self, key: str) -> Optional[Attachment]:
        try:
            async with self.connection() as conn:
                cur = await conn.execute(
                    "SELECT mime_type, name, data FROM blobs WHERE key = ?",
                    (key,),
                )
                row = await cur.fetchone()
        except sqlite3.DatabaseError as e:
            log_event(logging.ERROR, "Blob database unreadable", key=key, error=str(e))
            return None
        if row is None:
            return None
        return self._row_to_attachment(key, row)

    async def delete(self, key: str) -> None:
        await self._execute_delete("DELETE FROM blobs WHERE key = ?", (key,))

    async def clear(self) -> None:
        await self._execute_delete("DELETE FROM blobs", ())

    async def list_all(self) -> List[Tuple[str, Attachment]]:
        try:
            async with self.connection() as conn:
                cur = await conn.execute("SELECT key, mime_type, name, data FROM blobs ORDER BY created_at, key")
                rows = await cur.fetchall()
        except sqlite3.DatabaseError as e:
            log_event(logging.ERROR, "Blob database unreadable", error=str(e))
            return []
        items: List[Tuple[str, Attachment]] = []
        for row in rows:
            attachment = self._row_to_attachment(row[0], row[1:])
            if attachment is not None:
                items.append((row[0], attachment))
        return items

    async def copy(self, key: str) -> Optional[str]:
        """复制一个 Blob 到新 key（先写新、不删旧），源不存在时返回 None。"""

        source = await self.get(key)
        if source is None:
            log_event(logging.WARNING, "Blob copy skipped, source missing", key=key)
            return None
        return await self.put(source)

    async def _execute_delete(self, sql: str, params: tuple) -> None:
        try:
            async with self.connection() as conn:
                await conn.execute(sql, params)
                await conn.commit()
        except sqlite3.Error as e:
            raise BusinessError(code="STORE_DELETE_ERROR", message=str(e)) from e

    @staticmethod
    def _row_to_attachment(key: str, row) -> Optional[Attachment]:
        mime_type, name, data = row
        if not isinstance(data, (bytes, bytearray, memoryview)):
            log_event(logging.WARNING, "Corrupt blob payload ignored", key=key, payload_type=type(data).__name__)
            return None
        return Attachment(mime_type=mime_type or "application/octet-stream", data=bytes(data), name=name or "")

"""结构化记录的 JSON 文件存储。

每个记录 key 对应 <storage_root>/records/<quoted-key>.json 一个文件，
写入采用“临时文件 + os.replace”的原子替换。

读取时的默认值合并规则（兼容旧版本数据，无需迁移）：
- 不存在：返回默认值的深拷贝。
- 默认值是 dict 且持久化值是 dict：{**default, **persisted} 浅合并。
- 默认值是 list：持久化值必须也是 list，否则丢弃并返回默认值。
- 其他情况原样返回持久化值。
- 文件损坏（非 UTF-8 或 JSON 无效）：记录日志并返回默认值，不抛给调用方。
"""

import asyncio
import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, List, Tuple
from urllib.parse import quote, unquote
from uuid import uuid4

from coach_core.config.settings import settings
from coach_core.domain.exceptions import BusinessError, StorageReadError
from coach_core.infrastructure.logging.logger import log_event


_SUFFIX = ".json"

# 持久化命名空间：每个逻辑记录一个扁平 key
USER_SETTINGS_KEY = "coachCore_userSettings"
COACHING_SESSIONS_KEY = "coachCore_coachingSessions"
ACTIVE_SESSION_KEY = "coachCore_activeSession"
SAVED_TRADES_KEY = "coachCore_savedTrades"
TOKEN_USAGE_KEY = "coachCore_tokenUsageHistory"


class JsonRecordStore:
    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._records_root = self._root / "records"
        self._records_root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        if not key:
            raise BusinessError(code="INVALID_RECORD_KEY", message="record key must not be empty")
        return self._records_root / f"{quote(key, safe='')}{_SUFFIX}"

    async def put(self, value: Any, key: str) -> str:
        await asyncio.to_thread(self._write, self._path(key), value)
        return key

    async def get(self, key: str, default: Any = None) -> Any:
        path = self._path(key)
        try:
            persisted = await asyncio.to_thread(self._read, path)
        except FileNotFoundError:
            return copy.deepcopy(default)
        except StorageReadError as e:
            log_event(logging.WARNING, "Corrupt record replaced by default", key=key, error=e.message)
            return copy.deepcopy(default)
        return self._merge(key, persisted, default)

    async def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            return
        except OSError as e:
            raise BusinessError(code="STORE_DELETE_ERROR", message=str(e))

    async def clear(self) -> None:
        for path in list(self._records_root.glob(f"*{_SUFFIX}")):
            try:
                await asyncio.to_thread(path.unlink)
            except FileNotFoundError:
                continue
            except OSError as e:
                raise BusinessError(code="STORE_DELETE_ERROR", message=str(e))

    async def list_all(self) -> List[Tuple[str, Any]]:
        items: List[Tuple[str, Any]] = []
        for path in sorted(self._records_root.glob(f"*{_SUFFIX}")):
            key = unquote(path.name[: -len(_SUFFIX)])
            try:
                items.append((key, await asyncio.to_thread(self._read, path)))
            except FileNotFoundError:
                continue
            except StorageReadError as e:
                log_event(logging.WARNING, "Corrupt record skipped", key=key, error=e.message)
        return items

    @staticmethod
    def _merge(key: str, persisted: Any, default: Any) -> Any:
        if persisted is None:
            return copy.deepcopy(default)
        if isinstance(default, list):
            if not isinstance(persisted, list):
                log_event(
                    logging.WARNING,
                    "Persisted record is not a list, using default",
                    key=key,
                    persisted_type=type(persisted).__name__,
                )
                return copy.deepcopy(default)
            return persisted
        if isinstance(default, dict) and isinstance(persisted, dict):
            return {**copy.deepcopy(default), **persisted}
        return persisted

    @staticmethod
    def _read(path: Path) -> Any:
        raw = path.read_bytes()
        try:
            return json.loads(raw.decode("utf-8"))
        except ValueError as e:
            raise StorageReadError(code="STORE_READ_ERROR", message=f"{path.name}: {e}")

    def _write(self, path: Path, value: Any) -> None:
        tmp_path = path.with_name(f"{path.name}.{uuid4().hex}.tmp")
        try:
            tmp_path.write_text(json.dumps(value, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            try:
                tmp_path.unlink()
            except FileNotFoundError:
                pass
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))

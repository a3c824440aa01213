"""教练会话的持久化仓库。

- 已保存会话：一个 list 记录（COACHING_SESSIONS_KEY），新保存的排在最前。
- 活动会话：单独的 checkpoint 记录（ACTIVE_SESSION_KEY），每轮对话结束后写入，
  用于进程重启后恢复；用户 clear/save 时删除。

无法解析的条目记录日志后跳过，不影响其余会话。
"""

import logging
from typing import List, Optional

from coach_core.domain.exceptions import BusinessError
from coach_core.domain.models import SavedCoachingSession, Session
from coach_core.infrastructure.logging.logger import log_event
from coach_core.infrastructure.storage.record_store import (
    ACTIVE_SESSION_KEY,
    COACHING_SESSIONS_KEY,
    JsonRecordStore,
)


class CoachingSessionRepository:
    def __init__(self, records: JsonRecordStore):
        self._records = records

    async def list_saved(self) -> List[SavedCoachingSession]:
        raw = await self._records.get(COACHING_SESSIONS_KEY, [])
        items: List[SavedCoachingSession] = []
        for entry in raw:
            if not isinstance(entry, dict):
                continue
            try:
                items.append(SavedCoachingSession.from_dict(entry))
            except (KeyError, TypeError, ValueError) as e:
                log_event(logging.WARNING, "Skipping unreadable saved session", error=str(e))
        return items

    async def get_saved(self, saved_id: str) -> SavedCoachingSession:
        for item in await self.list_saved():
            if item.id == saved_id:
                return item
        raise BusinessError(code="SESSION_NOT_FOUND", message=saved_id, http_status=404)

    async def add_saved(self, saved: SavedCoachingSession) -> None:
        raw = await self._records.get(COACHING_SESSIONS_KEY, [])
        await self._records.put([saved.to_dict()] + list(raw), COACHING_SESSIONS_KEY)

    async def update_notes(self, saved_id: str, notes: str) -> None:
        raw = await self._records.get(COACHING_SESSIONS_KEY, [])
        for entry in raw:
            if isinstance(entry, dict) and entry.get("id") == saved_id:
                entry["user_notes"] = notes
                await self._records.put(raw, COACHING_SESSIONS_KEY)
                return
        raise BusinessError(code="SESSION_NOT_FOUND", message=saved_id, http_status=404)

    async def delete_saved(self, saved_id: str) -> None:
        raw = await self._records.get(COACHING_SESSIONS_KEY, [])
        kept = [e for e in raw if not (isinstance(e, dict) and e.get("id") == saved_id)]
        if len(kept) == len(raw):
            raise BusinessError(code="SESSION_NOT_FOUND", message=saved_id, http_status=404)
        await self._records.put(kept, COACHING_SESSIONS_KEY)

    async def save_active(self, session: Session) -> None:
        await self._records.put(session.to_dict(), ACTIVE_SESSION_KEY)

    async def load_active(self) -> Optional[Session]:
        raw = await self._records.get(ACTIVE_SESSION_KEY, None)
        if not isinstance(raw, dict):
            return None
        try:
            return Session.from_dict(raw)
        except (KeyError, TypeError, ValueError) as e:
            log_event(logging.WARNING, "Discarding unreadable active session", error=str(e))
            return None

    async def clear_active(self) -> None:
        await self._records.delete(ACTIVE_SESSION_KEY)

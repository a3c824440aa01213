"""按天累计的 token 使用记录（TOKEN_USAGE_KEY）。"""

from datetime import date, timedelta
from typing import Dict, List, Optional

from coach_core.domain.models import TokenUsageRecord
from coach_core.infrastructure.storage.record_store import TOKEN_USAGE_KEY, JsonRecordStore


class UsageLedger:
    def __init__(self, records: JsonRecordStore, today=date.today):
        self._records = records
        self._today = today

    async def record(self, units: int) -> None:
        """把本次调用消耗的 units 累加到当天记录；0 或负数忽略。"""

        if units <= 0:
            return
        day = self._today().isoformat()
        raw = await self._records.get(TOKEN_USAGE_KEY, [])
        for entry in raw:
            if isinstance(entry, dict) and entry.get("date") == day:
                entry["tokens"] = int(entry.get("tokens") or 0) + units
                break
        else:
            raw.append(TokenUsageRecord(date=day, tokens=units).to_dict())
        await self._records.put(raw, TOKEN_USAGE_KEY)

    async def history(self) -> List[TokenUsageRecord]:
        raw = await self._records.get(TOKEN_USAGE_KEY, [])
        items: List[TokenUsageRecord] = []
        for entry in raw:
            if isinstance(entry, dict) and isinstance(entry.get("date"), str):
                items.append(TokenUsageRecord(date=entry["date"], tokens=int(entry.get("tokens") or 0)))
        return items

    async def totals(self, today: Optional[date] = None) -> Dict[str, int]:
        """最近 7 天与当月的 token 总量。"""

        now = today or self._today()
        week_start = (now - timedelta(days=7)).isoformat()
        month_prefix = now.isoformat()[:7]
        weekly = monthly = 0
        for item in await self.history():
            if item.date >= week_start:
                weekly += item.tokens
            if item.date.startswith(month_prefix):
                monthly += item.tokens
        return {"weekly": weekly, "monthly": monthly}

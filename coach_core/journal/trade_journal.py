"""交易日志：保存教练会话产出的交易计划。

保存时把会话中引用的图片复制为新的 Blob（两步复制，不移动），
日志与会话各自拥有自己的图片，清理任意一方都不会留下悬空引用。
"""

import logging
import time
from typing import Dict, List, Optional
from uuid import uuid4

from coach_core.domain.exceptions import BusinessError
from coach_core.domain.models import Attachment, SavedTrade, Session, utcnow
from coach_core.domain.suggestions import TradePlan
from coach_core.infrastructure.logging.logger import log_event
from coach_core.infrastructure.storage.blob_store import SqliteBlobStore
from coach_core.infrastructure.storage.record_store import SAVED_TRADES_KEY, JsonRecordStore


class TradeJournal:
    def __init__(self, records: JsonRecordStore, blobs: SqliteBlobStore):
        self._records = records
        self._blobs = blobs

    async def save_from_coaching(self, session: Session, plan: TradePlan) -> SavedTrade:
        """把会话中的交易计划存入日志，图片复制到日志自己的 key 下。"""

        log_ctx = {"session_id": session.id, "symbol": plan.symbol}
        image_keys: Dict[int, Optional[str]] = {}
        index = 0
        for message in session.transcript:
            if message.sender != "user":
                continue
            for ref in message.attachment_refs:
                copied = await self._blobs.copy(ref)
                if copied is None:
                    log_event(logging.WARNING, "Chart image missing, not copied to journal", log_ctx, key=ref)
                    continue
                image_keys[index] = copied
                index += 1

        trade = SavedTrade(
            id=f"trade_{int(time.time() * 1000)}_{uuid4().hex[:8]}",
            saved_date=utcnow(),
            plan=plan,
            strategies_used=[session.strategy_ref] if session.strategy_ref else [],
            uploaded_image_keys=image_keys,
            is_from_coaching=True,
            coaching_session_chat=list(session.transcript),
        )
        raw = await self._records.get(SAVED_TRADES_KEY, [])
        await self._records.put([trade.to_dict()] + list(raw), SAVED_TRADES_KEY)
        log_event(logging.INFO, "Trade plan saved to journal", log_ctx, trade_id=trade.id, images=len(image_keys))
        return trade

    async def list_trades(self) -> List[SavedTrade]:
        raw = await self._records.get(SAVED_TRADES_KEY, [])
        trades: List[SavedTrade] = []
        for entry in raw:
            if not isinstance(entry, dict):
                continue
            try:
                trades.append(SavedTrade.from_dict(entry))
            except (KeyError, TypeError, ValueError) as e:
                log_event(logging.WARNING, "Skipping unreadable saved trade", error=str(e))
        return trades

    async def get_trade(self, trade_id: str) -> SavedTrade:
        for trade in await self.list_trades():
            if trade.id == trade_id:
                return trade
        raise BusinessError(code="TRADE_NOT_FOUND", message=trade_id, http_status=404)

    async def update_feedback(self, trade_id: str, outcome: Optional[str], text: str) -> SavedTrade:
        trade = (await self.get_trade(trade_id)).with_feedback(outcome, text)
        await self._replace(trade)
        return trade

    async def add_post_trade_image(self, trade_id: str, image: Attachment) -> str:
        trade = await self.get_trade(trade_id)
        key = await self._blobs.put(image)
        trade.post_trade_image_keys.append(key)
        await self._replace(trade)
        return key

    async def delete_trade(self, trade_id: str) -> None:
        """删除交易记录及其拥有的图片。"""

        trade = await self.get_trade(trade_id)
        raw = await self._records.get(SAVED_TRADES_KEY, [])
        kept = [e for e in raw if not (isinstance(e, dict) and e.get("id") == trade_id)]
        await self._records.put(kept, SAVED_TRADES_KEY)
        for key in trade.blob_keys():
            await self._blobs.delete(key)

    async def _replace(self, trade: SavedTrade) -> None:
        raw = await self._records.get(SAVED_TRADES_KEY, [])
        updated = [trade.to_dict() if isinstance(e, dict) and e.get("id") == trade.id else e for e in raw]
        await self._records.put(updated, SAVED_TRADES_KEY)

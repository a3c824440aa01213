"""对外 API 服务模块。

提供简化的异步函数接口供上层应用调用。默认组件按 settings 装配为单例：
记录存储、图片存储、ProviderGateway（带用量统计）、交易日志与教练控制器。
进行中的会话保存在进程内的 _live 映射中，以 session id 索引。
"""

from typing import Any, Dict, List, Optional, Sequence

from coach_core.agents.coaching_controller import CoachingSessionController
from coach_core.config.settings import settings
from coach_core.domain.exceptions import BusinessError, ValidationError
from coach_core.domain.models import Attachment, Goal, Session, StrategyProfile
from coach_core.domain.suggestions import CoachingSuggestionEnvelope
from coach_core.infrastructure.logging.logger import logger
from coach_core.infrastructure.retry import RetryPolicy
from coach_core.infrastructure.storage.blob_store import SqliteBlobStore
from coach_core.infrastructure.storage.record_store import JsonRecordStore
from coach_core.infrastructure.storage.session_repository import CoachingSessionRepository
from coach_core.infrastructure.storage.usage_ledger import UsageLedger
from coach_core.journal import TradeJournal
from coach_core.providers.gateway import ProviderGateway
from coach_core.providers.registry import resolve_provider_config


_records: Optional[JsonRecordStore] = None
_blobs: Optional[SqliteBlobStore] = None
_ledger: Optional[UsageLedger] = None
_journal: Optional[TradeJournal] = None
_controller: Optional[CoachingSessionController] = None
_live: Dict[str, Session] = {}


def get_default_controller() -> CoachingSessionController:
    """获取默认的教练控制器实例（单例）。"""
    global _records, _blobs, _ledger, _journal, _controller
    if _records is None:
        _records = JsonRecordStore(root=settings.storage_root)
    if _blobs is None:
        _blobs = SqliteBlobStore(root=settings.storage_root)
    if _ledger is None:
        _ledger = UsageLedger(_records)
    if _journal is None:
        _journal = TradeJournal(_records, _blobs)
    if _controller is None:
        gateway = ProviderGateway(
            config=resolve_provider_config(settings),
            blob_store=_blobs,
            retry_policy=RetryPolicy(settings.retry_max_attempts, settings.retry_base_delay_ms),
            on_usage=_ledger.record,
        )
        _controller = CoachingSessionController(
            gateway=gateway,
            blob_store=_blobs,
            sessions=CoachingSessionRepository(_records),
            on_trade_plan=_journal.save_from_coaching,
        )
    return _controller


def session_to_dict(session: Session) -> Dict[str, Any]:
    data = session.to_dict()
    data["pending"] = session.pending_operation is not None
    return data


def _get_live(session_id: str) -> Session:
    session = _live.get(session_id)
    if session is None:
        raise BusinessError(code="SESSION_NOT_FOUND", message=session_id, http_status=404)
    return session


def _register(session: Session, previous_id: Optional[str] = None) -> Dict[str, Any]:
    if previous_id and previous_id != session.id:
        _live.pop(previous_id, None)
    _live[session.id] = session
    return session_to_dict(session)


def _turn_result(session: Session, previous_id: str, message) -> Dict[str, Any]:
    return {
        "session": _register(session, previous_id),
        "assistant_message": message.to_dict() if message is not None else None,
    }


async def start_coaching(goal: Goal, strategy: StrategyProfile) -> Dict[str, Any]:
    """开始引导式教练会话。

    Args:
        goal: teach_concept / build_plan / compare_assets
        strategy: 选定的策略（名称与提示词对本层不透明）

    Returns:
        会话字典（含 transcript 与 state）
    """
    session = await get_default_controller().start(goal, strategy)
    return _register(session)


def start_chat() -> Dict[str, Any]:
    """开始自由对话。"""
    return _register(get_default_controller().start_chat())


async def start_trade_discussion(trade_id: str) -> Dict[str, Any]:
    """围绕日志中的一笔交易开始讨论。"""
    controller = get_default_controller()
    trade = await _journal.get_trade(trade_id)
    session = await controller.start_trade_discussion(trade)
    return _register(session)


async def restore_active_session() -> Optional[Dict[str, Any]]:
    session = await get_default_controller().restore_active()
    return _register(session) if session is not None else None


async def send_message(
    session_id: str,
    text: str,
    images: Sequence[str] = (),
) -> Dict[str, Any]:
    """发送一轮用户消息。

    Args:
        session_id: 会话ID
        text: 用户输入内容（awaiting_chart 阶段可以为空）
        images: 图片 data URL 列表

    Returns:
        包含会话与本轮助手消息的字典；调用被放弃时 assistant_message 为 None

    Raises:
        各种 domain.exceptions 中定义的异常
    """
    session = _get_live(session_id)
    try:
        attachments = [Attachment.from_data_url(url, name=f"chart_{i + 1}") for i, url in enumerate(images)]
    except ValueError as e:
        raise ValidationError(code="INVALID_IMAGE", message=str(e), session_id=session_id)
    try:
        message = await get_default_controller().send(session, text, attachments)
    except BusinessError as e:
        logger.error(f"Send failed: {e.message}", extra={"extra": {
            "session_id": session_id,
            "code": e.code,
        }})
        raise
    return _turn_result(session, session_id, message)


async def select_timeframe(session_id: str, combination_name: str) -> Dict[str, Any]:
    session = _get_live(session_id)
    message = await get_default_controller().select_timeframe(session, combination_name)
    return _turn_result(session, session_id, message)


async def select_custom_timeframes(session_id: str, timeframes: List[str]) -> Dict[str, Any]:
    session = _get_live(session_id)
    message = await get_default_controller().select_custom_timeframes(session, timeframes)
    return _turn_result(session, session_id, message)


async def choose_suggestion(session_id: str, index: int) -> Dict[str, Any]:
    """点击最近一条建议消息中的第 index 个按钮。"""
    session = _get_live(session_id)
    for message in reversed(session.transcript):
        if isinstance(message.suggestion, CoachingSuggestionEnvelope):
            suggestions = message.suggestion.suggestions
            if not 0 <= index < len(suggestions):
                raise BusinessError(code="INVALID_SUGGESTION", message=f"No suggestion at index {index}")
            reply = await get_default_controller().choose_suggestion(session, suggestions[index])
            return _turn_result(session, session_id, reply)
    raise BusinessError(code="INVALID_SUGGESTION", message="The session has no suggestions to choose from")


async def save_session(session_id: str, title: str, notes: str = "") -> Dict[str, Any]:
    session = _get_live(session_id)
    saved = await get_default_controller().save(session, title, notes)
    return {"saved_id": saved.id, "session": _register(session, session_id)}


async def resume_session(saved_id: str) -> Dict[str, Any]:
    session = await get_default_controller().resume(saved_id)
    return _register(session)


async def clear_session(session_id: str) -> Dict[str, Any]:
    session = _get_live(session_id)
    await get_default_controller().clear(session)
    return _register(session, session_id)


async def list_saved_sessions() -> List[Dict[str, Any]]:
    """列出已保存的教练会话（不含完整记录）。"""
    get_default_controller()
    saved = await CoachingSessionRepository(_records).list_saved()
    return [
        {
            "id": s.id,
            "title": s.title,
            "saved_date": s.saved_date.isoformat(),
            "session_goal": s.session_goal,
            "user_notes": s.user_notes,
            "messages": len(s.chat_history),
        }
        for s in saved
    ]


async def list_trades() -> List[Dict[str, Any]]:
    get_default_controller()
    return [t.to_dict() for t in await _journal.list_trades()]


async def usage_totals() -> Dict[str, int]:
    get_default_controller()
    return await _ledger.totals()

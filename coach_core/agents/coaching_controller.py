"""教练会话控制器。

驱动多轮、目标导向的引导式对话：

- 每轮用户输入先把附件写入 BlobStore，再追加只含 key 的用户消息；
- 通过 ProviderGateway 调用模型，用 envelope_parser 解析回复；
- 用 state_machine.advance 计算下一状态，只有成功解析的回复才会推进状态；
- Provider 错误以 "Error: ..." 消息追加到记录中，状态保持不变，用户可以重试。

并发约束：同一会话同时最多一个进行中的调用（pending_operation）。
clear() 会放弃进行中的调用，调用结果返回后直接丢弃，不修改会话。
"""

import inspect
import logging
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union
from uuid import uuid4

from coach_core.agents.envelope_parser import parse_reply
from coach_core.domain.exceptions import (
    BusinessError,
    InvalidStateError,
    ProviderError,
    SessionBusyError,
    ValidationError,
)
from coach_core.domain.models import (
    GOALS,
    Attachment,
    Goal,
    Message,
    PendingOperation,
    SavedCoachingSession,
    SavedTrade,
    Session,
    SessionState,
    StrategyProfile,
)
from coach_core.domain.state_machine import Event, advance, expected_timeframe
from coach_core.domain.suggestions import (
    CoachingSuggestion,
    CoachingSuggestionEnvelope,
    PlainMessage,
    TimeframeCombination,
    TimeframeCombinationEnvelope,
    TradePlan,
    TradePlanEnvelope,
)
from coach_core.infrastructure.logging.logger import logger
from coach_core.infrastructure.storage.blob_store import SqliteBlobStore
from coach_core.infrastructure.storage.session_repository import CoachingSessionRepository
from coach_core.prompts import (
    AVAILABLE_TIMEFRAMES,
    KICKOFF_PROMPTS,
    chart_step_text,
    custom_timeframes_text,
    error_text,
    guidance_text,
    load_system_prompt,
    load_trade_discussion_prompt,
    resume_text,
    save_confirmation_text,
    sort_timeframes,
    timeframe_selection_text,
    trade_discussion_text,
)
from coach_core.providers.gateway import ProviderGateway


TradePlanCallback = Callable[[Session, TradePlan], Any]


class CoachingSessionController:
    def __init__(
        self,
        gateway: ProviderGateway,
        blob_store: SqliteBlobStore,
        sessions: CoachingSessionRepository,
        strategies: Optional[Mapping[str, StrategyProfile]] = None,
        on_trade_plan: Optional[TradePlanCallback] = None,
        locale: str = "en",
    ):
        self._gateway = gateway
        self._blobs = blob_store
        self._sessions = sessions
        self._strategies = dict(strategies or {})
        self._on_trade_plan = on_trade_plan
        self._locale = locale

    # ------------------------------------------------------------------
    # 会话生命周期
    # ------------------------------------------------------------------

    async def start(self, goal: Goal, strategy: StrategyProfile) -> Session:
        """开始一个引导式会话。

        teach_concept / build_plan 会发送隐藏的开场指令，让模型先开口；
        compare_assets 不调用模型，直接进入收集图片阶段。
        """

        if goal not in GOALS:
            raise ValidationError(code="UNKNOWN_GOAL", message=f"Unknown coaching goal: {goal!r}")
        self._strategies.setdefault(strategy.key, strategy)

        session = Session.new(goal=goal, strategy_ref=strategy.key)
        session.system_instruction = load_system_prompt(goal, strategy, self._locale)
        session.state = SessionState("goal_selected")
        session.append(Message.create("assistant", guidance_text(goal, strategy)))
        self._log(logging.INFO, "Started coaching session", self._ctx(session), strategy=strategy.key)

        if goal == "compare_assets":
            session.state = SessionState("collecting_asset_images")
            await self._checkpoint(session)
            return session

        await self._run_turn(session, KICKOFF_PROMPTS[goal], hidden=True)
        return session

    def start_chat(self) -> Session:
        """开始一个没有目标的自由对话，状态始终为 idle。"""

        session = Session.new()
        session.system_instruction = load_system_prompt(None, locale=self._locale)
        return session

    async def start_trade_discussion(self, trade: SavedTrade) -> Session:
        """围绕日志中的一笔交易开始讨论。

        系统提示词带入交易字段；交易的图片复制到会话自己的 key 下，
        作为第一条用户消息，下一次 send 时随历史一起发给模型。
        """

        session = Session.new()
        session.system_instruction = load_trade_discussion_prompt(trade.plan, self._locale)
        log_ctx = self._ctx(session)
        log_ctx["trade_id"] = trade.id

        refs: List[str] = []
        for _, key in sorted(trade.uploaded_image_keys.items()):
            if not key:
                continue
            copied = await self._blobs.copy(key)
            if copied is None:
                self._log(logging.WARNING, "Journal chart missing, not attached", log_ctx, key=key)
                continue
            refs.append(copied)
        session.append(Message.create("user", trade_discussion_text(trade.plan), tuple(refs)))

        self._log(logging.INFO, "Started trade discussion", log_ctx, symbol=trade.plan.symbol, attachments=len(refs))
        await self._checkpoint(session)
        return session

    async def save(self, session: Session, title: str, notes: str = "") -> SavedCoachingSession:
        """保存会话，然后把当前会话重置为新的自由对话。"""

        if session.pending_operation is not None:
            raise SessionBusyError(code="SESSION_BUSY", message="Wait for the current reply before saving")
        title = (title or "").strip()
        if not title:
            raise ValidationError(code="EMPTY_TITLE", message="A saved session needs a title")
        if not session.transcript:
            raise ValidationError(code="NOTHING_TO_SAVE", message="The session has no messages to save")

        saved = SavedCoachingSession.from_session(session, title, notes)
        await self._sessions.add_saved(saved)
        self._log(logging.INFO, "Saved coaching session", self._ctx(session), saved_id=saved.id, title=title)

        self._reset(session)
        session.append(Message.create("assistant", save_confirmation_text(title)))
        await self._sessions.clear_active()
        return saved

    async def resume(self, saved_id: str) -> Session:
        saved = await self._sessions.get_saved(saved_id)
        session = saved.to_session()
        if not session.system_instruction:
            strategy = self._strategies.get(session.strategy_ref or "")
            session.system_instruction = load_system_prompt(session.goal, strategy, self._locale)
        session.append(Message.create("assistant", resume_text(saved.title)))
        await self._sessions.save_active(session)
        self._log(logging.INFO, "Resumed coaching session", self._ctx(session), saved_id=saved_id)
        return session

    async def restore_active(self) -> Optional[Session]:
        """进程重启后恢复最近一次的活动会话（没有则返回 None）。"""

        return await self._sessions.load_active()

    async def clear(self, session: Session) -> None:
        """清空会话：放弃进行中的调用，回到 idle。已存的图片不删除。"""

        abandoned = session.pending_operation
        self._reset(session)
        await self._sessions.clear_active()
        self._log(
            logging.INFO,
            "Cleared session",
            self._ctx(session),
            abandoned_operation=abandoned.token if abandoned else None,
        )

    # ------------------------------------------------------------------
    # 对话轮次
    # ------------------------------------------------------------------

    async def send(
        self,
        session: Session,
        text: str,
        attachments: Sequence[Attachment] = (),
    ) -> Optional[Message]:
        """发送一轮用户输入，返回追加的助手消息；调用被放弃时返回 None。"""

        text = (text or "").strip()
        if not text and not attachments:
            raise ValidationError(code="EMPTY_TURN", message="A message needs text or at least one attachment")
        if not text and session.state.phase == "awaiting_chart":
            text = chart_step_text(expected_timeframe(session.state, session.plan_timeframes))
        return await self._run_turn(session, text, attachments)

    async def select_timeframe(
        self,
        session: Session,
        combination: Union[str, TimeframeCombination],
    ) -> Optional[Message]:
        """选择模型提供的某个时间框架组合。"""

        self._require_phase(session, "awaiting_timeframe_choice")
        name = combination if isinstance(combination, str) else combination.name
        chosen = next((c for c in session.offered_timeframes if c.name == name), None)
        if chosen is None:
            raise ValidationError(code="UNKNOWN_COMBINATION", message=f"Combination {name!r} was not offered")
        return await self._run_turn(
            session,
            timeframe_selection_text(chosen.name),
            event_hint="timeframe_selected",
            plan_timeframes=list(chosen.timeframe_list()),
        )

    async def select_custom_timeframes(self, session: Session, timeframes: Sequence[str]) -> Optional[Message]:
        """使用用户自定义的时间框架集合（按从高到低排序）。"""

        self._require_phase(session, "awaiting_timeframe_choice")
        ordered = sort_timeframes(timeframes)
        unknown = [tf for tf in ordered if tf not in AVAILABLE_TIMEFRAMES]
        if not ordered or unknown:
            raise ValidationError(
                code="INVALID_TIMEFRAMES",
                message=f"Choose one or more of: {', '.join(AVAILABLE_TIMEFRAMES)}",
                unknown=unknown,
            )
        return await self._run_turn(
            session,
            custom_timeframes_text(ordered),
            event_hint="timeframe_selected",
            plan_timeframes=ordered,
        )

    async def choose_suggestion(self, session: Session, suggestion: CoachingSuggestion) -> Optional[Message]:
        """点击建议按钮：把按钮的 prompt 作为用户消息发送。"""

        return await self._run_turn(session, suggestion.prompt)

    # ------------------------------------------------------------------
    # 内部实现
    # ------------------------------------------------------------------

    async def _run_turn(
        self,
        session: Session,
        text: str,
        attachments: Sequence[Attachment] = (),
        hidden: bool = False,
        event_hint: Optional[Event] = None,
        plan_timeframes: Optional[List[str]] = None,
    ) -> Optional[Message]:
        # 在第一个 await 之前占用会话
        if session.pending_operation is not None:
            raise SessionBusyError(
                code="SESSION_BUSY",
                message="A reply is still pending for this session",
                session_id=session.id,
            )
        op = PendingOperation(token=f"op-{uuid4().hex}")
        session.pending_operation = op
        log_ctx = self._ctx(session)
        log_ctx["operation"] = op.token
        start_time = time.time()

        try:
            result = await self._execute(session, op, text, attachments, hidden, event_hint, plan_timeframes, log_ctx)
        finally:
            if session.pending_operation is op:
                session.pending_operation = None

        if result is None:
            self._log(logging.INFO, "Discarded result of abandoned operation", log_ctx)
            return None

        message, plan = result
        self._log(
            logging.INFO,
            "Completed turn",
            log_ctx,
            elapsed_seconds=round(time.time() - start_time, 2),
            kind=message.kind,
            next_phase=session.state.phase,
            next_step=session.state.step,
        )
        await self._checkpoint(session)
        if plan is not None:
            await self._notify_trade_plan(session, plan, log_ctx)
        return message

    async def _execute(
        self,
        session: Session,
        op: PendingOperation,
        text: str,
        attachments: Sequence[Attachment],
        hidden: bool,
        event_hint: Optional[Event],
        plan_timeframes: Optional[List[str]],
        log_ctx: Dict[str, Any],
    ) -> Optional[Tuple[Message, Optional[TradePlan]]]:
        # 1. 附件写入 BlobStore，记录中只保存 key
        refs: List[str] = []
        for attachment in attachments:
            refs.append(await self._blobs.put(attachment))
        if session.pending_operation is not op:
            return None

        # 2. 追加用户消息（隐藏的开场指令不写入记录）
        if not hidden:
            user_msg = session.append(Message.create("user", text, tuple(refs)))
            op.user_message_id = user_msg.id
            self._log(logging.INFO, "Stored user message", log_ctx, message_id=user_msg.id, attachments=len(refs))

        # 3. 调用 Provider
        try:
            reply = await self._gateway.send(session, text, attachments)
        except ProviderError as e:
            if session.pending_operation is not op:
                return None
            self._log(logging.WARNING, "Turn failed", log_ctx, code=e.code, transient=e.is_transient)
            error_msg = session.append(Message.create("assistant", error_text(e.message), kind="error"))
            return error_msg, None
        if session.pending_operation is not op:
            return None

        # 4. 解析回复并推进状态
        parsed = parse_reply(reply.reply_text)
        plan: Optional[TradePlan] = None
        if isinstance(parsed, PlainMessage):
            message = Message.create("assistant", parsed.text)
            if event_hint is not None:
                event: Event = event_hint
            elif attachments:
                event = "chart_submitted"
            else:
                event = "plain_reply"
        else:
            message = Message.create("assistant", parsed.text, kind="structured_suggestion", suggestion=parsed)
            event = parsed.kind
            if isinstance(parsed, TimeframeCombinationEnvelope):
                session.offered_timeframes = list(parsed.combinations)
            elif isinstance(parsed, TradePlanEnvelope):
                plan = parsed.plan

        session.append(message)
        if plan_timeframes is not None:
            session.plan_timeframes = list(plan_timeframes)
        previous = session.state
        session.state = advance(previous, session.goal, event)
        if session.state != previous:
            self._log(
                logging.INFO,
                "State advanced",
                log_ctx,
                event=event,
                from_phase=previous.phase,
                to_phase=session.state.phase,
                step=session.state.step,
            )
        if isinstance(parsed, CoachingSuggestionEnvelope):
            self._log(logging.INFO, "Offered suggestions", log_ctx, count=len(parsed.suggestions))
        return message, plan

    async def _notify_trade_plan(self, session: Session, plan: TradePlan, log_ctx: Dict[str, Any]) -> None:
        if self._on_trade_plan is None:
            return
        try:
            result = self._on_trade_plan(session, plan)
            if inspect.isawaitable(result):
                await result
        except BusinessError as e:
            self._log(logging.ERROR, "Trade plan collaborator failed", log_ctx, code=e.code, error=e.message)
        except Exception as e:
            self._log(logging.ERROR, "Trade plan collaborator failed", log_ctx, error=str(e))

    async def _checkpoint(self, session: Session) -> None:
        try:
            await self._sessions.save_active(session)
        except BusinessError as e:
            self._log(logging.ERROR, "Failed to checkpoint active session", self._ctx(session), code=e.code)

    def _reset(self, session: Session) -> None:
        self._gateway.release(session.id)
        session.pending_operation = None
        session.id = f"s-{uuid4().hex}"
        session.goal = None
        session.state = SessionState.idle()
        session.strategy_ref = None
        session.transcript = []
        session.system_instruction = load_system_prompt(None, locale=self._locale)
        session.plan_timeframes = []
        session.offered_timeframes = []

    @staticmethod
    def _require_phase(session: Session, phase: str) -> None:
        if session.state.phase != phase:
            raise InvalidStateError(
                code="INVALID_STATE",
                message=f"Operation requires phase {phase!r}, session is in {session.state.phase!r}",
                session_id=session.id,
            )

    @staticmethod
    def _ctx(session: Session) -> Dict[str, Any]:
        return {
            "session_id": session.id,
            "goal": session.goal,
            "phase": session.state.phase,
            "step": session.state.step,
        }

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})

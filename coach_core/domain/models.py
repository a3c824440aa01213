"""统一的会话与结果数据模型。

本模块定义了教练会话在各组件之间共享的标准数据结构：

- Message: 会话记录中的一条消息（不可变，只追加）。
- Session / SessionState: 一次引导式（或自由）对话及其状态机位置。
- Attachment: 图片附件的内存形式，持久化时存入 BlobStore，只保留 key。
- ProviderConfig / ChatTurn / ProviderReply: Provider 调用的输入与输出。
- SavedCoachingSession / SavedTrade / TokenUsageRecord: 持久化记录。

所有持久化记录都提供 to_dict / from_dict，字段名使用 snake_case，
from_dict 对缺失字段使用默认值，以兼容旧版本写入的数据。
"""

import base64
import binascii
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Tuple
from uuid import uuid4

from coach_core.domain.suggestions import (
    SuggestionEnvelope,
    TimeframeCombination,
    TradePlan,
    envelope_from_wire,
)


# 消息发送方（assistant 即模型）
Sender = Literal["user", "assistant"]
MessageKind = Literal["plain_text", "error", "structured_suggestion"]
# 教练目标：讲解概念 / 构建交易计划 / 多资产对比；None 表示自由对话
Goal = Literal["teach_concept", "build_plan", "compare_assets"]
Phase = Literal[
    "idle",
    "goal_selected",
    "collecting_asset_images",
    "awaiting_asset_selection",
    "awaiting_timeframe_choice",
    "awaiting_chart",
    "awaiting_final_review",
]
ProviderId = Literal["gemini", "openai"]

GOALS: Tuple[str, ...] = ("teach_concept", "build_plan", "compare_assets")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_iso(value: Any) -> datetime:
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return utcnow()
        # 旧记录中没有时区的时间按 UTC 处理
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return utcnow()


@dataclass(frozen=True)
class SessionState:
    """状态机位置：phase 加上 awaiting_chart 时的步骤号 step（从 1 开始）。"""

    phase: Phase = "idle"
    step: int = 0

    @classmethod
    def idle(cls) -> "SessionState":
        return cls("idle", 0)

    @classmethod
    def awaiting_chart(cls, step: int) -> "SessionState":
        if step < 1:
            raise ValueError("chart step starts at 1")
        return cls("awaiting_chart", step)

    def to_dict(self) -> Dict[str, Any]:
        return {"phase": self.phase, "step": self.step}

    @classmethod
    def from_dict(cls, data: Any) -> "SessionState":
        if not isinstance(data, dict):
            return cls.idle()
        phase = data.get("phase") or "idle"
        step = int(data.get("step") or 0)
        if phase == "awaiting_chart" and step < 1:
            step = 1
        return cls(phase, step)


@dataclass(frozen=True)
class Attachment:
    """图片附件（内存形式）。"""

    mime_type: str
    data: bytes
    name: str = ""

    def to_data_url(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"

    @classmethod
    def from_data_url(cls, data_url: str, name: str = "") -> "Attachment":
        """解析 data:<mime>;base64,<payload> 形式的 URL。"""

        if not data_url.startswith("data:") or "," not in data_url:
            raise ValueError("not a data URL")
        header, payload = data_url[5:].split(",", 1)
        if not header.endswith(";base64"):
            raise ValueError("only base64 data URLs are supported")
        mime_type = header[: -len(";base64")] or "application/octet-stream"
        try:
            data = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"invalid base64 payload: {e}") from e
        return cls(mime_type=mime_type, data=data, name=name)


@dataclass(frozen=True)
class Message:
    """一条会话消息，创建后不可修改。

    - attachment_refs: BlobStore 中的 key，图片本身从不内联。
    - kind: plain_text / error / structured_suggestion。
    - suggestion: kind 为 structured_suggestion 时的结构化建议。
    """

    id: str
    sender: Sender
    text: str
    created_at: datetime
    attachment_refs: Tuple[str, ...] = ()
    kind: MessageKind = "plain_text"
    suggestion: Optional[SuggestionEnvelope] = None

    @classmethod
    def create(
        cls,
        sender: Sender,
        text: str,
        attachment_refs: Tuple[str, ...] = (),
        kind: MessageKind = "plain_text",
        suggestion: Optional[SuggestionEnvelope] = None,
    ) -> "Message":
        return cls(
            id=f"m-{uuid4().hex}",
            sender=sender,
            text=text,
            created_at=utcnow(),
            attachment_refs=tuple(attachment_refs),
            kind=kind,
            suggestion=suggestion,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "sender": self.sender,
            "text": self.text,
            "created_at": _iso(self.created_at),
            "attachment_refs": list(self.attachment_refs),
            "kind": self.kind,
        }
        if self.suggestion is not None:
            data["suggestion"] = self.suggestion.to_wire()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        suggestion = None
        kind = data.get("kind") or "plain_text"
        raw_suggestion = data.get("suggestion")
        if raw_suggestion is not None:
            try:
                suggestion = envelope_from_wire(raw_suggestion)
            except (ValueError, TypeError, KeyError, AttributeError, OverflowError):
                suggestion = None
        if kind == "structured_suggestion" and suggestion is None:
            kind = "plain_text"
        return cls(
            id=data.get("id") or f"m-{uuid4().hex}",
            sender="user" if data.get("sender") == "user" else "assistant",
            text=data.get("text") or "",
            created_at=_parse_iso(data.get("created_at")),
            attachment_refs=tuple(str(k) for k in (data.get("attachment_refs") or [])),
            kind=kind,
            suggestion=suggestion,
        )


@dataclass(frozen=True)
class StrategyProfile:
    """交易策略：对本层来说只是不透明的提示词文本。"""

    key: str
    name: str
    prompt: str


@dataclass
class PendingOperation:
    """一次进行中的 Provider 调用句柄。"""

    token: str
    user_message_id: Optional[str] = None


@dataclass
class Session:
    """一次引导式或自由对话。只由 CoachingSessionController 修改。"""

    id: str
    goal: Optional[Goal]
    state: SessionState = field(default_factory=SessionState.idle)
    strategy_ref: Optional[str] = None
    transcript: List[Message] = field(default_factory=list)
    pending_operation: Optional[PendingOperation] = None
    system_instruction: str = ""
    plan_timeframes: List[str] = field(default_factory=list)
    offered_timeframes: List[TimeframeCombination] = field(default_factory=list)

    @classmethod
    def new(cls, goal: Optional[Goal] = None, strategy_ref: Optional[str] = None) -> "Session":
        return cls(id=f"s-{uuid4().hex}", goal=goal, strategy_ref=strategy_ref)

    def append(self, message: Message) -> Message:
        self.transcript.append(message)
        return message

    def prior_turns(self) -> List[Message]:
        """发送给 Provider 的可见历史：排除错误消息以及当前进行中的用户消息。"""

        in_flight = self.pending_operation.user_message_id if self.pending_operation else None
        return [m for m in self.transcript if m.kind != "error" and m.id != in_flight]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "goal": self.goal,
            "state": self.state.to_dict(),
            "strategy_ref": self.strategy_ref,
            "transcript": [m.to_dict() for m in self.transcript],
            "system_instruction": self.system_instruction,
            "plan_timeframes": list(self.plan_timeframes),
            "offered_timeframes": [c.to_wire() for c in self.offered_timeframes],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        goal = data.get("goal")
        offered: List[TimeframeCombination] = []
        for item in data.get("offered_timeframes") or []:
            try:
                offered.append(TimeframeCombination.from_wire(item))
            except (ValueError, TypeError, KeyError):
                continue
        return cls(
            id=data.get("id") or f"s-{uuid4().hex}",
            goal=goal if goal in GOALS else None,
            state=SessionState.from_dict(data.get("state")),
            strategy_ref=data.get("strategy_ref"),
            transcript=[Message.from_dict(m) for m in data.get("transcript") or [] if isinstance(m, dict)],
            system_instruction=data.get("system_instruction") or "",
            plan_timeframes=[str(t) for t in data.get("plan_timeframes") or []],
            offered_timeframes=offered,
        )


@dataclass(frozen=True)
class ProviderConfig:
    """当前生效的 Provider 配置（同一时间只有一个）。"""

    provider_id: ProviderId
    api_key: str
    model_id: str = "coach-chat"
    base_url: Optional[str] = None
    max_tokens: int = 2048
    timeout: float = 60.0


@dataclass(frozen=True)
class ChatTurn:
    """发送给 Provider 的一轮历史，附件已经解析为原始字节。"""

    role: Sender
    text: str
    attachments: Tuple[Attachment, ...] = ()


@dataclass(frozen=True)
class ProviderReply:
    reply_text: str
    usage_units: int
    provider: str
    model: str


@dataclass
class SavedCoachingSession:
    """用户显式保存的教练会话，可在之后恢复。"""

    id: str
    title: str
    saved_date: datetime
    chat_history: List[Message]
    user_notes: str = ""
    session_goal: Optional[Goal] = None
    state: SessionState = field(default_factory=SessionState.idle)
    strategy_ref: Optional[str] = None
    system_instruction: str = ""
    plan_timeframes: List[str] = field(default_factory=list)

    @classmethod
    def from_session(cls, session: Session, title: str, notes: str = "") -> "SavedCoachingSession":
        return cls(
            id=f"session_{uuid4().hex}",
            title=title,
            saved_date=utcnow(),
            chat_history=list(session.transcript),
            user_notes=notes,
            session_goal=session.goal,
            state=session.state,
            strategy_ref=session.strategy_ref,
            system_instruction=session.system_instruction,
            plan_timeframes=list(session.plan_timeframes),
        )

    def to_session(self) -> Session:
        return Session(
            id=f"s-{uuid4().hex}",
            goal=self.session_goal,
            state=self.state,
            strategy_ref=self.strategy_ref,
            transcript=list(self.chat_history),
            system_instruction=self.system_instruction,
            plan_timeframes=list(self.plan_timeframes),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "saved_date": _iso(self.saved_date),
            "chat_history": [m.to_dict() for m in self.chat_history],
            "user_notes": self.user_notes,
            "session_goal": self.session_goal,
            "state": self.state.to_dict(),
            "strategy_ref": self.strategy_ref,
            "system_instruction": self.system_instruction,
            "plan_timeframes": list(self.plan_timeframes),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SavedCoachingSession":
        goal = data.get("session_goal")
        return cls(
            id=str(data["id"]),
            title=data.get("title") or "",
            saved_date=_parse_iso(data.get("saved_date")),
            chat_history=[Message.from_dict(m) for m in data.get("chat_history") or [] if isinstance(m, dict)],
            user_notes=data.get("user_notes") or "",
            session_goal=goal if goal in GOALS else None,
            state=SessionState.from_dict(data.get("state")),
            strategy_ref=data.get("strategy_ref"),
            system_instruction=data.get("system_instruction") or "",
            plan_timeframes=[str(t) for t in data.get("plan_timeframes") or []],
        )


@dataclass
class SavedTrade:
    """日志中的一笔交易：TradePlan 加上保存时的上下文。"""

    id: str
    saved_date: datetime
    plan: TradePlan
    strategies_used: List[str] = field(default_factory=list)
    uploaded_image_keys: Dict[int, Optional[str]] = field(default_factory=dict)
    post_trade_image_keys: List[str] = field(default_factory=list)
    feedback_outcome: Optional[str] = None
    feedback_text: str = ""
    real_time_context_was_used: bool = False
    is_from_coaching: bool = False
    coaching_session_chat: List[Message] = field(default_factory=list)

    def with_feedback(self, outcome: Optional[str], text: str) -> "SavedTrade":
        return replace(self, feedback_outcome=outcome, feedback_text=text)

    def to_dict(self) -> Dict[str, Any]:
        data = self.plan.to_wire()
        data.update(
            {
                "id": self.id,
                "saved_date": _iso(self.saved_date),
                "strategies_used": list(self.strategies_used),
                "uploaded_image_keys": {str(k): v for k, v in self.uploaded_image_keys.items()},
                "post_trade_image_keys": list(self.post_trade_image_keys),
                "feedback": {"outcome": self.feedback_outcome, "text": self.feedback_text},
                "analysis_context": {"real_time_context_was_used": self.real_time_context_was_used},
                "is_from_coaching": self.is_from_coaching,
                "coaching_session_chat": [m.to_dict() for m in self.coaching_session_chat],
            }
        )
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SavedTrade":
        feedback = data.get("feedback") or {}
        context = data.get("analysis_context") or {}
        keys: Dict[int, Optional[str]] = {}
        for k, v in (data.get("uploaded_image_keys") or {}).items():
            try:
                keys[int(k)] = v
            except (TypeError, ValueError):
                continue
        return cls(
            id=str(data["id"]),
            saved_date=_parse_iso(data.get("saved_date")),
            plan=TradePlan.from_wire(data),
            strategies_used=[str(s) for s in data.get("strategies_used") or []],
            uploaded_image_keys=keys,
            post_trade_image_keys=[str(k) for k in data.get("post_trade_image_keys") or []],
            feedback_outcome=feedback.get("outcome"),
            feedback_text=feedback.get("text") or "",
            real_time_context_was_used=bool(context.get("real_time_context_was_used", False)),
            is_from_coaching=bool(data.get("is_from_coaching", False)),
            coaching_session_chat=[
                Message.from_dict(m) for m in data.get("coaching_session_chat") or [] if isinstance(m, dict)
            ],
        )

    def blob_keys(self) -> List[str]:
        keys = [k for k in self.uploaded_image_keys.values() if k]
        keys.extend(self.post_trade_image_keys)
        return keys


@dataclass
class TokenUsageRecord:
    date: str  # YYYY-MM-DD
    tokens: int

    def to_dict(self) -> Dict[str, Any]:
        return {"date": self.date, "tokens": self.tokens}

"""结构化建议（Envelope）模型。

模型回复中可以夹带一个 ```json 代码块，本模块定义该代码块可以表达的
三种结构化建议，以及它们与线上 JSON（camelCase）之间的相互转换：

- TimeframeCombinationEnvelope: type = "timeframe_combination_suggestion"
- CoachingSuggestionEnvelope:   type = "coaching_suggestion"
- TradePlanEnvelope:            type = "coaching_trade_plan"

from_wire 在必需字段缺失时抛出 ValueError/KeyError/TypeError，
由 envelope_parser 统一捕获并降级为纯文本。
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional, Tuple, Union


TIMEFRAME_COMBINATION_TYPE = "timeframe_combination_suggestion"
COACHING_SUGGESTION_TYPE = "coaching_suggestion"
TRADE_PLAN_TYPE = "coaching_trade_plan"

SuggestionKind = Literal["timeframe_combination", "coaching_suggestion_buttons", "trade_plan"]

TradeDirection = Literal["Long", "Short"]


def _require_str(data: Dict[str, Any], key: str) -> str:
    value = data[key]
    if value is None or isinstance(value, (dict, list)):
        raise ValueError(f"field {key!r} must be a scalar")
    text = str(value).strip()
    if not text:
        raise ValueError(f"field {key!r} is empty")
    return text


def _optional_str(data: Dict[str, Any], key: str, default: str = "") -> str:
    value = data.get(key)
    if value is None:
        return default
    return str(value)


def _optional_int(data: Dict[str, Any], key: str) -> int:
    value = data.get(key)
    if value is None or value == "":
        return 0
    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError(f"field {key!r} is not a finite number")
    return int(value)


@dataclass(frozen=True)
class PlainMessage:
    """没有（有效）结构化内容的普通回复。"""

    text: str


@dataclass(frozen=True)
class TimeframeCombination:
    name: str
    timeframes: str
    description: str = ""
    is_preferred: bool = False

    def timeframe_list(self) -> Tuple[str, ...]:
        """把 "Weekly, Daily, 4-Hour" 拆分为有序的时间框架列表。"""

        return tuple(part.strip() for part in self.timeframes.split(",") if part.strip())

    def to_wire(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "timeframes": self.timeframes,
            "description": self.description,
        }
        if self.is_preferred:
            data["isPreferred"] = True
        return data

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "TimeframeCombination":
        return cls(
            name=_require_str(data, "name"),
            timeframes=_require_str(data, "timeframes"),
            description=_optional_str(data, "description"),
            is_preferred=bool(data.get("isPreferred", False)),
        )


@dataclass(frozen=True)
class CoachingSuggestion:
    text: str
    prompt: str
    topic: str = "custom"
    navigate_to: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"topic": self.topic, "text": self.text, "prompt": self.prompt}
        if self.navigate_to:
            data["navigateTo"] = self.navigate_to
        return data

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "CoachingSuggestion":
        navigate_to = data.get("navigateTo")
        return cls(
            text=_require_str(data, "text"),
            prompt=_require_str(data, "prompt"),
            topic=_optional_str(data, "topic", "custom") or "custom",
            navigate_to=str(navigate_to) if navigate_to else None,
        )


@dataclass(frozen=True)
class TradeManagement:
    move_to_breakeven_condition: str = ""
    partial_take_profit_1: str = ""
    partial_take_profit_2: str = ""

    def to_wire(self) -> Dict[str, Any]:
        return {
            "move_to_breakeven_condition": self.move_to_breakeven_condition,
            "partial_take_profit_1": self.partial_take_profit_1,
            "partial_take_profit_2": self.partial_take_profit_2,
        }

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "TradeManagement":
        return cls(
            move_to_breakeven_condition=_optional_str(data, "move_to_breakeven_condition"),
            partial_take_profit_1=_optional_str(data, "partial_take_profit_1"),
            partial_take_profit_2=_optional_str(data, "partial_take_profit_2"),
        )


@dataclass(frozen=True)
class TradePlan:
    """教练会话最终给出的交易计划。

    数值字段（entry、stop_loss 等）保持为字符串，与模型输出一致，
    例如 "1.2345" 或 "Market"；heat 为 1-5 的信心等级。
    """

    symbol: str
    direction: str
    entry: str
    stop_loss: str
    type: str = ""
    entry_type: str = ""
    entry_explanation: str = ""
    take_profit_1: str = ""
    take_profit_2: str = ""
    heat: int = 0
    explanation: str = ""
    trade_management: Optional[TradeManagement] = None

    def to_wire(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "type": self.type,
            "direction": self.direction,
            "symbol": self.symbol,
            "entry": self.entry,
            "entryType": self.entry_type,
            "entryExplanation": self.entry_explanation,
            "stopLoss": self.stop_loss,
            "takeProfit1": self.take_profit_1,
            "takeProfit2": self.take_profit_2,
            "heat": self.heat,
            "explanation": self.explanation,
        }
        if self.trade_management is not None:
            data["tradeManagement"] = self.trade_management.to_wire()
        return data

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "TradePlan":
        if not isinstance(data, dict):
            raise TypeError("tradePlan must be an object")
        management = data.get("tradeManagement")
        return cls(
            symbol=_require_str(data, "symbol"),
            direction=_require_str(data, "direction"),
            entry=_require_str(data, "entry"),
            stop_loss=_require_str(data, "stopLoss"),
            type=_optional_str(data, "type"),
            entry_type=_optional_str(data, "entryType"),
            entry_explanation=_optional_str(data, "entryExplanation"),
            take_profit_1=_optional_str(data, "takeProfit1"),
            take_profit_2=_optional_str(data, "takeProfit2"),
            heat=_optional_int(data, "heat"),
            explanation=_optional_str(data, "explanation"),
            trade_management=TradeManagement.from_wire(management) if isinstance(management, dict) else None,
        )


@dataclass(frozen=True)
class TimeframeCombinationEnvelope:
    text: str
    combinations: Tuple[TimeframeCombination, ...]
    kind: SuggestionKind = field(default="timeframe_combination", init=False)

    def find(self, name: str) -> Optional[TimeframeCombination]:
        for combo in self.combinations:
            if combo.name == name:
                return combo
        return None

    def to_wire(self) -> Dict[str, Any]:
        return {
            "type": TIMEFRAME_COMBINATION_TYPE,
            "text": self.text,
            "timeframeCombinationDetails": {"combinations": [c.to_wire() for c in self.combinations]},
        }

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "TimeframeCombinationEnvelope":
        raw = data["timeframeCombinationDetails"]["combinations"]
        if not isinstance(raw, list) or not raw:
            raise ValueError("combinations must be a non-empty list")
        return cls(
            text=_optional_str(data, "text") or "Please select a timeframe combination.",
            combinations=tuple(TimeframeCombination.from_wire(item) for item in raw),
        )


@dataclass(frozen=True)
class CoachingSuggestionEnvelope:
    text: str
    suggestions: Tuple[CoachingSuggestion, ...]
    kind: SuggestionKind = field(default="coaching_suggestion_buttons", init=False)

    def to_wire(self) -> Dict[str, Any]:
        return {
            "type": COACHING_SUGGESTION_TYPE,
            "text": self.text,
            "coachingSuggestionDetails": [s.to_wire() for s in self.suggestions],
        }

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "CoachingSuggestionEnvelope":
        raw = data["coachingSuggestionDetails"]
        if not isinstance(raw, list) or not raw:
            raise ValueError("coachingSuggestionDetails must be a non-empty list")
        return cls(
            text=_optional_str(data, "text") or "Here are some options:",
            suggestions=tuple(CoachingSuggestion.from_wire(item) for item in raw),
        )


@dataclass(frozen=True)
class TradePlanEnvelope:
    text: str
    plan: TradePlan
    kind: SuggestionKind = field(default="trade_plan", init=False)

    def to_wire(self) -> Dict[str, Any]:
        return {"type": TRADE_PLAN_TYPE, "text": self.text, "tradePlan": self.plan.to_wire()}

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "TradePlanEnvelope":
        return cls(
            text=_optional_str(data, "text") or "Here is the trade plan based on our analysis:",
            plan=TradePlan.from_wire(data["tradePlan"]),
        )


SuggestionEnvelope = Union[TimeframeCombinationEnvelope, CoachingSuggestionEnvelope, TradePlanEnvelope]

_ENVELOPE_TYPES = {
    TIMEFRAME_COMBINATION_TYPE: TimeframeCombinationEnvelope,
    COACHING_SUGGESTION_TYPE: CoachingSuggestionEnvelope,
    TRADE_PLAN_TYPE: TradePlanEnvelope,
}


def envelope_from_wire(data: Any) -> SuggestionEnvelope:
    """按 type 判别字段构造 Envelope；未知类型或字段缺失时抛出 ValueError 等异常。"""

    if not isinstance(data, dict):
        raise TypeError("envelope must be a JSON object")
    envelope_type = data.get("type")
    cls = _ENVELOPE_TYPES.get(envelope_type) if isinstance(envelope_type, str) else None
    if cls is None:
        raise ValueError(f"unknown envelope type: {envelope_type!r}")
    return cls.from_wire(data)

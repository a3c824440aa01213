"""教练会话状态机（纯函数）。

advance(state, goal, event) 只根据当前状态、目标和事件计算下一状态，
不做任何 I/O，方便单独测试。表中未列出的组合一律保持原状态；
没有任何事件会回到 idle，只有用户显式 save/clear 才会。
"""

from typing import Literal, Optional

from coach_core.domain.models import Goal, SessionState


Event = Literal[
    "plain_reply",  # 普通文本回复，且本轮没有附件也不是时间框架选择
    "chart_submitted",  # 本轮携带了图表附件，模型以普通文本回复
    "timeframe_selected",  # 用户选择了时间框架组合，模型以普通文本回复
    "timeframe_combination",
    "coaching_suggestion_buttons",
    "trade_plan",
]

# 需要时间框架流程的目标
_PLAN_GOALS = ("build_plan", "compare_assets")


def advance(state: SessionState, goal: Optional[Goal], event: Event) -> SessionState:
    phase = state.phase
    if phase == "idle":
        return state

    if event == "trade_plan":
        return SessionState("awaiting_final_review", 0)

    if event == "timeframe_combination":
        if goal not in _PLAN_GOALS:
            return state
        if phase in ("goal_selected", "awaiting_asset_selection", "awaiting_chart", "awaiting_final_review"):
            return SessionState("awaiting_timeframe_choice", 0)
        return state

    if event == "coaching_suggestion_buttons":
        if phase == "collecting_asset_images":
            return SessionState("awaiting_asset_selection", 0)
        return state

    if event == "timeframe_selected":
        if phase == "awaiting_timeframe_choice":
            return SessionState.awaiting_chart(1)
        return state

    if event == "chart_submitted":
        if phase == "awaiting_chart":
            return SessionState.awaiting_chart(state.step + 1)
        return state

    return state


def expected_timeframe(state: SessionState, plan_timeframes: list) -> Optional[str]:
    """awaiting_chart(n) 时期望用户上传的时间框架名（按计划顺序），超出范围返回 None。"""

    if state.phase != "awaiting_chart":
        return None
    idx = state.step - 1
    if 0 <= idx < len(plan_timeframes):
        return plan_timeframes[idx]
    return None

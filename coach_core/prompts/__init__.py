"""系统提示词与固定文案。

按目标(goal)和语言(locale) 从 prompts/<locale> 目录读取 system prompt 模板，
模板中的 ${strategy_name} / ${strategy_prompt} 由 string.Template 替换
（模板里含有 JSON 示例，不能使用 str.format）。

另外集中维护控制器使用的本地引导语、隐藏的开场指令和按钮文案。
"""

import html
import re
from pathlib import Path
from string import Template
from typing import Iterable, List, Optional

from coach_core.domain.models import Goal, StrategyProfile
from coach_core.domain.suggestions import TradePlan


PROMPTS_DIR = Path(__file__).resolve().parent

_TAG_RE = re.compile(r"<[^>]+>")

# 规范的时间框架顺序（从高到低）
AVAILABLE_TIMEFRAMES = ("Weekly", "Daily", "4-Hour", "1-Hour", "15-Minute", "5-Minute", "1-Minute")

# 发送给模型但不写入会话记录的开场指令
KICKOFF_PROMPTS = {
    "teach_concept": "Begin the lesson.",
    "build_plan": "Start.",
}

_GUIDANCE = {
    "teach_concept": "<p>Starting your mentorship session on the <strong>${name}</strong> strategy. "
    "I will now load the first lesson.</p>",
    "build_plan": "<p>Let's build a trade setup using the <strong>${name}</strong> strategy. "
    "The Oracle will now ask for the required information.</p>",
    "compare_assets": "<p>To compare assets using the <strong>${name}</strong> strategy, please begin uploading "
    "your chart screenshots. Ensure they are all of the <strong>same timeframe</strong> (e.g., Daily, 4-Hour).</p>"
    "<p>When you are finished uploading, please type <strong>done</strong>.</p>",
}


def load_system_prompt(goal: Optional[Goal], strategy: Optional[StrategyProfile] = None, locale: str = "en") -> str:
    """根据目标和策略渲染系统提示词；goal 为 None 时返回自由对话的默认提示词。"""

    fname = PROMPTS_DIR / locale / f"{goal or 'free_chat'}.md"
    template = Template(fname.read_text(encoding="utf-8"))
    return template.safe_substitute(
        strategy_name=strategy.name if strategy else "",
        strategy_prompt=strategy.prompt if strategy else "",
    ).strip()


def _plain(text: str) -> str:
    """去掉 HTML 标签，空值返回 "Not provided."。"""

    cleaned = html.unescape(_TAG_RE.sub(" ", text or "")).strip()
    return " ".join(cleaned.split()) or "Not provided."


def load_trade_discussion_prompt(plan: TradePlan, locale: str = "en") -> str:
    """渲染讨论日志中某笔交易时使用的系统提示词。"""

    template = Template((PROMPTS_DIR / locale / "trade_discussion.md").read_text(encoding="utf-8"))
    return template.safe_substitute(
        symbol=plan.symbol,
        direction=plan.direction,
        trade_type=plan.type or "Not provided.",
        entry=_plain(plan.entry),
        stop_loss=_plain(plan.stop_loss),
        explanation=_plain(plan.explanation),
    ).strip()


def trade_discussion_text(plan: TradePlan) -> str:
    return f"Let's discuss my {plan.symbol} {plan.direction} trade. The charts from my journal are attached."


def guidance_text(goal: Goal, strategy: StrategyProfile) -> str:
    return Template(_GUIDANCE[goal]).safe_substitute(name=strategy.name)


def timeframe_selection_text(combination_name: str) -> str:
    return f'I\'ll use the "{combination_name}" combination.'


def sort_timeframes(timeframes: Iterable[str]) -> List[str]:
    """按规范顺序（从高到低）排序并去重；未知名称排在最后，保持原有相对顺序。"""

    order = {tf: i for i, tf in enumerate(AVAILABLE_TIMEFRAMES)}
    unique: List[str] = []
    for tf in timeframes:
        tf = tf.strip()
        if tf and tf not in unique:
            unique.append(tf)
    return sorted(unique, key=lambda tf: order.get(tf, len(order)))


def custom_timeframes_text(timeframes: List[str]) -> str:
    return (
        f"I want to provide a custom set of timeframes: {', '.join(timeframes)}. "
        "Please start by requesting the highest timeframe from this list."
    )


def chart_step_text(timeframe: Optional[str]) -> str:
    """awaiting_chart 时用户只上传图片、不输入文字的固定指令。"""

    if timeframe:
        return f"Here is the {timeframe} chart. Please analyze it and continue with the next step."
    return "Here is the requested chart. Please analyze it and continue with the next step."


def save_confirmation_text(title: str) -> str:
    return f'Session saved as "{title}". Starting a new chat.'


def resume_text(title: str) -> str:
    return f"Resuming session: {title}"


def error_text(message: str) -> str:
    return f"Error: {message}"

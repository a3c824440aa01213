"""模型回复中的结构化建议解析。

parse_reply(text) 是全函数：对任意字符串都返回 PlainMessage 或 SuggestionEnvelope，
从不抛异常。规则：

1. 查找第一个 ```json ... ``` 代码块；没有则整段为 PlainMessage。
2. 解码 JSON 并按 type 判别字段分发到三种 Envelope。
3. 解码失败、未知 type、或必需字段缺失（如 combinations 为空）时，
   降级为整段原文的 PlainMessage，只记录诊断日志，不修复 JSON。
"""

import json
import logging
import re
from typing import Union

from coach_core.domain.suggestions import PlainMessage, SuggestionEnvelope, envelope_from_wire
from coach_core.infrastructure.logging.logger import log_event


ParsedReply = Union[PlainMessage, SuggestionEnvelope]

_FENCE_RE = re.compile(r"```json\s*([\s\S]*?)\s*```")


def parse_reply(reply_text: str) -> ParsedReply:
    text = reply_text if isinstance(reply_text, str) else str(reply_text or "")
    match = _FENCE_RE.search(text)
    if match is None:
        return PlainMessage(text)
    try:
        data = json.loads(match.group(1))
        return envelope_from_wire(data)
    except (ValueError, TypeError, KeyError, AttributeError, OverflowError, RecursionError) as e:
        log_event(
            logging.INFO,
            "Structured block degraded to plain text",
            reason=type(e).__name__,
            detail=str(e)[:200],
        )
        return PlainMessage(text)


def encode_envelope(envelope: SuggestionEnvelope) -> str:
    """把 Envelope 编码为模型使用的线上格式（说明文字 + ```json 代码块）。"""

    body = json.dumps(envelope.to_wire(), ensure_ascii=False, indent=2)
    return f"{envelope.text}\n\n```json\n{body}\n```"

"""Gemini Provider 适配器（有状态多轮会话）。

使用 google-generativeai：

- open_session() 创建 GenerativeModel(system_instruction, generation_config) 并
  start_chat(history)，温度与输出上限取自 registry；
  返回 GeminiChatHandle，后端 ChatSession 自己维护上下文。
- 恢复会话时由 Gateway 传入已有的可见历史作为 history 种子。
- google.api_core 异常被映射为统一的暂时性/致命错误；被安全策略拦截的回复为 ApiError。
"""

from typing import Any, Dict, List, Sequence

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
from google.generativeai.types import generation_types

from coach_core.domain.exceptions import (
    ApiError,
    ConfigurationError,
    NetworkError,
    ProviderError,
    ProviderOverloadedError,
    QuotaExceededError,
    RateLimitError,
)
from coach_core.domain.models import Attachment, ChatTurn, ProviderConfig, ProviderReply
from coach_core.providers.registry import GEMINI_SPEC, resolve_model


def _to_parts(text: str, attachments: Sequence[Attachment]) -> List[Any]:
    parts: List[Any] = []
    if text:
        parts.append(text)
    for attachment in attachments:
        parts.append({"mime_type": attachment.mime_type, "data": attachment.data})
    return parts


def build_history(turns: Sequence[ChatTurn]) -> List[Dict[str, Any]]:
    """把可见历史转为 Gemini history。

    Gemini 要求历史以 user 开头且角色交替：丢弃开头的 model 轮次，
    连续同角色的轮次合并为一条。
    """

    history: List[Dict[str, Any]] = []
    for turn in turns:
        role = "user" if turn.role == "user" else "model"
        parts = _to_parts(turn.text, turn.attachments)
        if not parts:
            continue
        if not history and role == "model":
            continue
        if history and history[-1]["role"] == role:
            history[-1]["parts"].extend(parts)
        else:
            history.append({"role": role, "parts": parts})
    return history


def map_google_error(error: Exception) -> ProviderError:
    """把 google.api_core 异常映射为统一异常层级。"""

    message = str(error) or type(error).__name__
    lowered = message.lower()
    if isinstance(error, (google_exceptions.Unauthenticated, google_exceptions.PermissionDenied)):
        return ConfigurationError(code="INVALID_API_KEY", message=f"Gemini rejected the API key: {message}", cause=error)
    if isinstance(error, google_exceptions.InvalidArgument):
        if "api key" in lowered or "api_key" in lowered:
            return ConfigurationError(code="INVALID_API_KEY", message=f"Gemini rejected the API key: {message}", cause=error)
        return ApiError(code="API_ERROR", message=message, http_status=400, cause=error)
    if isinstance(error, google_exceptions.ResourceExhausted):
        if "billing" in lowered or "exceeded your current quota" in lowered:
            return QuotaExceededError(code="QUOTA_EXCEEDED", message=message, http_status=429, cause=error)
        return RateLimitError(code="RATE_LIMIT", message="Gemini rate limit", http_status=429, cause=error)
    if isinstance(error, google_exceptions.DeadlineExceeded):
        return NetworkError(code="NETWORK_ERROR", message=message, cause=error)
    if isinstance(error, (google_exceptions.ServiceUnavailable, google_exceptions.InternalServerError)):
        return ProviderOverloadedError(code="PROVIDER_UNAVAILABLE", message=message, http_status=503, cause=error)
    if isinstance(error, google_exceptions.GoogleAPICallError):
        status = getattr(error, "code", None)
        if isinstance(status, int) and status >= 500:
            return ProviderOverloadedError(code="PROVIDER_UNAVAILABLE", message=message, http_status=status, cause=error)
        return ApiError(code="API_ERROR", message=message, cause=error)
    return NetworkError(code="NETWORK_ERROR", message=message, cause=error)


class GeminiChatHandle:
    """包装 google.generativeai ChatSession 的会话句柄。"""

    def __init__(self, chat, model_name: str, logical_model: str):
        self._chat = chat
        self.model_name = model_name
        self._logical_model = logical_model

    async def send(self, text: str, attachments: Sequence[Attachment] = ()) -> ProviderReply:
        parts = _to_parts(text, attachments)
        try:
            response = await self._chat.send_message_async(parts)
        except google_exceptions.GoogleAPIError as e:
            raise map_google_error(e)
        except (generation_types.BlockedPromptException, generation_types.StopCandidateException) as e:
            # 提示词或候选回复被安全策略拦截
            raise ApiError(code="BLOCKED_REPLY", message=f"Gemini blocked the reply: {e}", cause=e)
        except (ConnectionError, TimeoutError) as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e) or type(e).__name__, cause=e)
        try:
            reply = response.text
        except ValueError as e:
            # response.text 在回复被拦截或没有候选时抛出 ValueError
            raise ApiError(code="EMPTY_REPLY", message=f"Gemini returned no text: {e}", cause=e)
        if not (reply or "").strip():
            raise ApiError(code="EMPTY_REPLY", message="Received an empty response from Gemini.")
        usage = getattr(response, "usage_metadata", None)
        units = int(getattr(usage, "total_token_count", 0) or 0) if usage is not None else 0
        return ProviderReply(reply_text=reply, usage_units=units, provider="gemini", model=self._logical_model)


class GeminiClient:
    """Gemini 提供方客户端实现。"""

    name = "gemini"
    supports_sessions = GEMINI_SPEC.supports_sessions

    def __init__(self, config: ProviderConfig):
        if not config.api_key:
            raise ConfigurationError(code="MISSING_API_KEY", message="Gemini API key not set")
        self._config = config
        self._model_cfg = resolve_model(GEMINI_SPEC, config.model_id)
        genai.configure(api_key=config.api_key)

    def open_session(self, system_instruction: str, history: Sequence[ChatTurn] = ()) -> GeminiChatHandle:
        model = genai.GenerativeModel(
            model_name=self._model_cfg.provider_model,
            system_instruction=system_instruction or None,
            generation_config={
                "temperature": self._model_cfg.default_temperature,
                "max_output_tokens": self._model_cfg.max_tokens,
            },
        )
        chat = model.start_chat(history=build_history(history))
        return GeminiChatHandle(chat, self._model_cfg.provider_model, self._config.model_id)

    async def complete(self, system_instruction: str, turns: Sequence[ChatTurn]) -> ProviderReply:
        """无状态调用：用 turns[:-1] 作为历史开启临时会话，发送最后一轮。"""

        if not turns:
            raise ApiError(code="EMPTY_TURN", message="No turn to send")
        handle = self.open_session(system_instruction, turns[:-1])
        last = turns[-1]
        return await handle.send(last.text, last.attachments)

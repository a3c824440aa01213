"""OpenAI Provider 适配器（无状态 chat/completions）。

本模块负责：

1. 接收 system 指令和完整的可见历史（ChatTurn 列表）。
2. 转换为 OpenAI chat/completions 请求：图片以 data URL 形式内联到 image_url。
3. 调用 HTTP 接口，并把网络/HTTP 错误映射为统一的异常层级。
4. 解析 choices[0].message.content 与 usage.total_tokens 为 ProviderReply。

后端没有服务端会话状态，因此每次调用都会重发全部历史。
"""

import httpx
from typing import Any, Dict, List, Sequence

from coach_core.domain.exceptions import (
    ApiError,
    ConfigurationError,
    NetworkError,
    ProviderOverloadedError,
    QuotaExceededError,
    RateLimitError,
)
from coach_core.domain.models import ChatTurn, ProviderConfig, ProviderReply
from coach_core.providers.registry import OPENAI_SPEC, resolve_model


class OpenAIClient:
    """OpenAI 提供方客户端实现。"""

    name = "openai"
    supports_sessions = OPENAI_SPEC.supports_sessions

    def __init__(self, config: ProviderConfig):
        self._config = config
        self._model_cfg = resolve_model(OPENAI_SPEC, config.model_id)

    def open_session(self, system_instruction: str, history: Sequence[ChatTurn] = ()):
        raise NotImplementedError("OpenAI chat/completions is stateless")

    async def complete(self, system_instruction: str, turns: Sequence[ChatTurn]) -> ProviderReply:
        """执行一次非流式对话调用。"""

        if not self._config.api_key:
            raise ConfigurationError(code="MISSING_API_KEY", message="OpenAI API key not set")
        payload = self._build_payload(system_instruction, turns)
        base = (self._config.base_url or OPENAI_SPEC.base_url).rstrip("/")
        try:
            async with httpx.AsyncClient(timeout=self._config.timeout, trust_env=False) as client:
                resp = await client.post(
                    f"{base}/chat/completions",
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {self._config.api_key}",
                        "Content-Type": "application/json",
                    },
                )
        except httpx.RequestError as e:
            # 网络错误：DNS 失败、连接超时等
            raise NetworkError(code="NETWORK_ERROR", message=str(e) or type(e).__name__, cause=e)
        if resp.status_code >= 400:
            raise self._map_http_error(resp)
        try:
            data = resp.json()
        except ValueError as e:
            # 代理或网关返回的 HTML 等非 JSON 内容
            raise ApiError(code="BAD_RESPONSE", message="OpenAI returned a response that is not JSON.", cause=e)
        return self._parse_response(data)

    def _build_payload(self, system_instruction: str, turns: Sequence[ChatTurn]) -> Dict[str, Any]:
        messages: List[Dict[str, Any]] = []
        if system_instruction:
            messages.append({"role": "system", "content": system_instruction})
        messages.extend(self._turn_to_payload(t) for t in turns)
        return {
            "model": self._model_cfg.provider_model,
            "messages": messages,
            "max_tokens": self._config.max_tokens or self._model_cfg.max_tokens,
            "temperature": self._model_cfg.default_temperature,
        }

    @staticmethod
    def _turn_to_payload(turn: ChatTurn) -> Dict[str, Any]:
        # 每条消息至少包含一个非空 text part
        content: List[Dict[str, Any]] = [{"type": "text", "text": turn.text or " "}]
        for attachment in turn.attachments:
            content.append({"type": "image_url", "image_url": {"url": attachment.to_data_url()}})
        return {"role": turn.role, "content": content}

    def _parse_response(self, data: Any) -> ProviderReply:
        if not isinstance(data, dict):
            raise ApiError(code="BAD_RESPONSE", message="OpenAI returned an unexpected response shape.")
        choices = data.get("choices") or []
        first = choices[0] if isinstance(choices, list) and choices else {}
        message = first.get("message") if isinstance(first, dict) else None
        if not isinstance(first, dict) or not isinstance(message or {}, dict):
            raise ApiError(code="BAD_RESPONSE", message="OpenAI returned an unexpected response shape.")
        text = (message or {}).get("content") or ""
        if not isinstance(text, str):
            raise ApiError(code="BAD_RESPONSE", message="OpenAI returned non-text message content.")
        if not text.strip():
            raise ApiError(code="EMPTY_REPLY", message="Received an empty response from OpenAI.")
        usage_raw = data.get("usage")
        total = usage_raw.get("total_tokens") if isinstance(usage_raw, dict) else None
        return ProviderReply(
            reply_text=text,
            usage_units=total if isinstance(total, int) else 0,
            provider=self.name,
            model=self._config.model_id,
        )

    @staticmethod
    def _map_http_error(resp) -> Exception:
        status = resp.status_code
        detail = resp.text
        error_code = ""
        try:
            body = resp.json()
            err = body.get("error") if isinstance(body, dict) else None
            if isinstance(err, dict):
                detail = err.get("message") or detail
                error_code = str(err.get("code") or err.get("type") or "")
        except ValueError:
            pass
        if status in (401, 403):
            return ConfigurationError(code="INVALID_API_KEY", message=f"OpenAI rejected the API key: {detail}", http_status=status)
        if status == 429:
            if error_code == "insufficient_quota":
                return QuotaExceededError(code="QUOTA_EXCEEDED", message=detail, http_status=status)
            # 限流错误交给 RetryPolicy 做退避
            return RateLimitError(code="RATE_LIMIT", message="OpenAI rate limit", http_status=status)
        if status >= 500:
            return ProviderOverloadedError(code="PROVIDER_UNAVAILABLE", message=f"{status}: {detail}", http_status=status)
        return ApiError(code="API_ERROR", message=detail, http_status=status)

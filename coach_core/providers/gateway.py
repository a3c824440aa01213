"""ProviderGateway：对两类后端的统一调用入口。

这是唯一允许按 Provider 类型分支的地方：

- 有状态 Provider：每个 session.id 持有一个 ChatHandle 并复用；
  首次为已有记录的会话（例如恢复的会话）创建句柄时，用可见历史做种子。
- 无状态 Provider：每次调用都从 transcript 重建完整历史，
  附件引用通过 BlobStore 解析为原始字节，缺失的 Blob 记录警告后跳过。

所有调用都经过 RetryPolicy；成功后把 usage_units 报告给 on_usage 回调。
"""

import inspect
import logging
from typing import Callable, Dict, List, Optional, Sequence

from coach_core.domain.exceptions import ConfigurationError, ValidationError
from coach_core.domain.models import Attachment, ChatTurn, Message, ProviderConfig, ProviderReply, Session
from coach_core.infrastructure.logging.logger import log_event
from coach_core.infrastructure.retry import OnRetry, RetryPolicy
from coach_core.infrastructure.storage.blob_store import SqliteBlobStore
from coach_core.providers import create_provider
from coach_core.providers.base import ChatHandle, ProviderClient


UsageCallback = Callable[[int], object]


class ProviderGateway:
    def __init__(
        self,
        config: ProviderConfig,
        blob_store: Optional[SqliteBlobStore] = None,
        retry_policy: Optional[RetryPolicy] = None,
        on_usage: Optional[UsageCallback] = None,
        on_retry: Optional[OnRetry] = None,
        client_factory: Callable[[ProviderConfig], ProviderClient] = create_provider,
    ):
        self._config = config
        self._blob_store = blob_store
        self._retry = retry_policy or RetryPolicy()
        self._on_usage = on_usage
        self._on_retry = on_retry
        self._client_factory = client_factory
        self._client: Optional[ProviderClient] = None
        self._handles: Dict[str, ChatHandle] = {}

    @property
    def config(self) -> ProviderConfig:
        return self._config

    def reconfigure(self, config: ProviderConfig) -> None:
        """切换 Provider 或密钥；已持有的会话句柄全部作废。"""

        self._config = config
        self._client = None
        self._handles.clear()

    def release(self, session_id: str) -> None:
        self._handles.pop(session_id, None)

    def has_handle(self, session_id: str) -> bool:
        return session_id in self._handles

    async def send(
        self,
        session: Session,
        user_text: str,
        attachments: Sequence[Attachment] = (),
    ) -> ProviderReply:
        if not (user_text or "").strip() and not attachments:
            raise ValidationError(code="EMPTY_TURN", message="A message needs text or at least one attachment")
        if not self._config.api_key:
            raise ConfigurationError(
                code="MISSING_API_KEY",
                message=f"No API key configured for provider {self._config.provider_id!r}",
            )

        client = self._get_client()
        log_ctx = {
            "session_id": session.id,
            "provider": self._config.provider_id,
            "model": self._config.model_id,
            "phase": session.state.phase,
        }

        if client.supports_sessions:
            handle = self._handles.get(session.id)
            if handle is None:
                history = await self._resolve_turns(session.prior_turns(), log_ctx)
                handle = client.open_session(session.system_instruction, history)
                self._handles[session.id] = handle
                log_event(logging.INFO, "Opened provider session", log_ctx, seeded_turns=len(history))

            async def call() -> ProviderReply:
                return await handle.send(user_text, attachments)

        else:
            turns = await self._resolve_turns(session.prior_turns(), log_ctx)
            turns.append(ChatTurn(role="user", text=user_text, attachments=tuple(attachments)))

            async def call() -> ProviderReply:
                return await client.complete(session.system_instruction, turns)

        try:
            reply = await self._retry.run(call, on_retry=self._on_retry)
        except Exception as e:
            log_event(logging.ERROR, "Provider call failed", log_ctx, error=str(e), error_type=type(e).__name__)
            raise
        log_event(logging.INFO, "Provider call succeeded", log_ctx, usage_units=reply.usage_units)
        await self._report_usage(reply.usage_units, log_ctx)
        return reply

    def _get_client(self) -> ProviderClient:
        if self._client is None:
            self._client = self._client_factory(self._config)
        return self._client

    async def _resolve_turns(self, messages: Sequence[Message], log_ctx: dict) -> List[ChatTurn]:
        turns: List[ChatTurn] = []
        for message in messages:
            attachments: List[Attachment] = []
            for key in message.attachment_refs:
                blob = await self._blob_store.get(key) if self._blob_store is not None else None
                if blob is None:
                    log_event(logging.WARNING, "Attachment blob missing, skipped", log_ctx, key=key)
                    continue
                attachments.append(blob)
            turns.append(ChatTurn(role=message.sender, text=message.text, attachments=tuple(attachments)))
        return turns

    async def _report_usage(self, units: int, log_ctx: dict) -> None:
        if self._on_usage is None:
            return
        try:
            result = self._on_usage(units)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            log_event(logging.ERROR, "Usage callback failed", log_ctx, error=str(e))

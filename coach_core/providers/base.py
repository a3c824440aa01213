"""Provider 抽象接口。

上层 ProviderGateway 不直接依赖具体厂商 SDK，而是依赖此协议。两类后端的调用约定不同：

- 有状态（supports_sessions = True，如 Gemini）：open_session() 返回一个
  ChatHandle，后端自己保存多轮上下文，之后每轮只发送当前消息。
- 无状态（supports_sessions = False，如 OpenAI chat/completions）：
  complete() 每次都要带上完整的可见历史（包括图片字节）。

两者都返回统一的 ProviderReply，并把厂商错误映射为 domain.exceptions 中的
TransientProviderError / FatalProviderError。
"""

from typing import Protocol, Sequence

from coach_core.domain.models import Attachment, ChatTurn, ProviderReply


class ChatHandle(Protocol):
    """有状态 Provider 的会话句柄。"""

    async def send(self, text: str, attachments: Sequence[Attachment] = ()) -> ProviderReply:
        ...


class ProviderClient(Protocol):
    """LLM Provider 客户端协议。

    实现者需要提供：
    - name: Provider 名称，用于日志/统计。
    - supports_sessions: 是否支持服务端多轮会话。
    - open_session / complete: 按上面的约定二选一实现，另一方法可抛 NotImplementedError。
    """

    name: str
    supports_sessions: bool

    def open_session(self, system_instruction: str, history: Sequence[ChatTurn] = ()) -> ChatHandle:
        ...

    async def complete(self, system_instruction: str, turns: Sequence[ChatTurn]) -> ProviderReply:
        ...

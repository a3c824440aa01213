"""Coach Core 顶层包。

该包提供交易教练对话的核心实现：Provider 统一调用与重试、
结构化建议解析、教练会话状态机，以及图片与记录的本地持久化。
"""

from coach_core.agents.coaching_controller import CoachingSessionController
from coach_core.providers.gateway import ProviderGateway

__all__ = ["CoachingSessionController", "ProviderGateway"]

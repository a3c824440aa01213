"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口 (base)。
- 维护 Provider 与模型配置 (registry)。
- 提供各厂商的具体实现 (gemini_client、openai_client)。
- 提供统一调用入口 (gateway)。
"""

from coach_core.domain.models import ProviderConfig
from coach_core.providers.base import ProviderClient
from coach_core.providers.gemini_client import GeminiClient
from coach_core.providers.openai_client import OpenAIClient


def create_provider(config: ProviderConfig) -> ProviderClient:
    """根据 ProviderConfig 创建 Provider 实例。"""

    if config.provider_id == "openai":
        return OpenAIClient(config)
    return GeminiClient(config)


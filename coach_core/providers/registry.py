"""Provider 与模型配置。

本模块将“逻辑模型名”与“具体厂商模型名”解耦：

- 逻辑名（logical_name）：在代码里使用的统一名称，例如 "coach-chat"。
- provider_model：厂商实际提供的模型 ID，例如 "gemini-2.5-flash"。

上层只关心逻辑名，具体用哪个底层模型由这里集中配置，便于后续升级或切换。
resolve_provider_config 负责在两个密钥之间选出当前生效的 Provider。"""

from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from coach_core.domain.exceptions import ConfigurationError
from coach_core.domain.models import ProviderConfig


@dataclass
class ModelConfig:
    """单个逻辑模型的配置。"""

    logical_name: str
    provider_model: str
    max_tokens: int
    default_temperature: float


@dataclass
class ProviderSpec:
    """某个 Provider 的整体配置。"""

    name: str
    base_url: str
    supports_sessions: bool
    models: Dict[str, ModelConfig]


GEMINI_SPEC = ProviderSpec(
    name="gemini",
    base_url="https://generativelanguage.googleapis.com",
    supports_sessions=True,
    models={
        "coach-chat": ModelConfig(
            logical_name="coach-chat",
            provider_model="gemini-2.5-flash",
            max_tokens=8192,
            default_temperature=0.7,
        )
    },
)

# OpenAI chat/completions（无状态，每次重发完整历史）
OPENAI_SPEC = ProviderSpec(
    name="openai",
    base_url="https://api.openai.com/v1",
    supports_sessions=False,
    models={
        "coach-chat": ModelConfig(
            logical_name="coach-chat",
            provider_model="gpt-4o-mini",
            max_tokens=2048,
            default_temperature=0.7,
        )
    },
)


PROVIDER_REGISTRY: Mapping[str, ProviderSpec] = {
    "gemini": GEMINI_SPEC,
    "openai": OPENAI_SPEC,
}


def get_provider_spec(name: str) -> ProviderSpec:
    """根据名称获取 ProviderSpec，名称不区分大小写。"""

    key = name.lower()
    for k, spec in PROVIDER_REGISTRY.items():
        if k.lower() == key:
            return spec
    raise KeyError(f"Unknown provider: {name!r}")


def resolve_model(spec: ProviderSpec, model_id: str) -> ModelConfig:
    """逻辑模型名映射为厂商模型；未登记的名称按厂商模型 ID 直接使用。"""

    if model_id in spec.models:
        return spec.models[model_id]
    default = next(iter(spec.models.values()))
    return ModelConfig(
        logical_name=model_id,
        provider_model=model_id,
        max_tokens=default.max_tokens,
        default_temperature=default.default_temperature,
    )


def resolve_provider_config(cfg, preferred: Optional[str] = None) -> ProviderConfig:
    """根据配置选出当前生效的 Provider。

    - 首选 preferred（为空时取 cfg.default_provider）。
    - 只配置了一个密钥时，自动回退到有密钥的那个。
    - 两个都没有时抛出 ConfigurationError。
    """

    keys = {
        "gemini": getattr(cfg, "gemini_api_key", None) or "",
        "openai": getattr(cfg, "openai_api_key", None) or "",
    }
    wanted = (preferred or getattr(cfg, "default_provider", None) or "gemini").lower()
    if wanted not in keys:
        raise ConfigurationError(code="UNKNOWN_PROVIDER", message=f"Unknown provider: {wanted!r}")
    chosen = wanted
    if not keys[wanted]:
        available = [name for name, key in keys.items() if key]
        if not available:
            raise ConfigurationError(
                code="MISSING_API_KEY",
                message="No API key configured. Set GEMINI_API_KEY or OPENAI_API_KEY.",
            )
        chosen = available[0]

    model_id = getattr(cfg, "default_model", None) or "coach-chat"
    if chosen == "openai":
        return ProviderConfig(
            provider_id="openai",
            api_key=keys["openai"],
            model_id=model_id,
            base_url=getattr(cfg, "openai_base_url", None) or OPENAI_SPEC.base_url,
            max_tokens=getattr(cfg, "openai_max_tokens", None) or OPENAI_SPEC.models["coach-chat"].max_tokens,
            timeout=getattr(cfg, "http_timeout", 60.0),
        )
    return ProviderConfig(
        provider_id="gemini",
        api_key=keys["gemini"],
        model_id=model_id,
        timeout=getattr(cfg, "http_timeout", 60.0),
    )

"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 Controller 层统一捕获，并以 error 消息的形式追加到会话记录中。

Provider 相关错误额外携带 is_transient 标记：
- TransientProviderError：限流、过载、网络抖动，交给 RetryPolicy 重试。
- FatalProviderError：密钥缺失/无效、额度耗尽等，立即失败、从不重试。
"""

from typing import Optional


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_WRITE_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 session_id、provider 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class ValidationError(BusinessError):
    """参数或输入校验失败（例如空消息、未提供的时间框架组合）。"""


class InvalidStateError(BusinessError):
    """当前会话状态不允许该操作。"""


class SessionBusyError(BusinessError):
    """同一会话已有进行中的 Provider 调用。"""


class StorageReadError(BusinessError):
    """持久化数据损坏或无法解析；由存储层本地恢复，不会抛给用户。"""


class ProviderError(BusinessError):
    """Provider 调用失败的基类（即 RetryableError）。

    - cause: 原始异常（若有）。
    - is_transient: 是否可重试，由子类决定。
    """

    is_transient = False

    def __init__(
        self,
        code: str,
        message: str,
        http_status: int = 502,
        cause: Optional[BaseException] = None,
        **extra,
    ):
        super().__init__(code=code, message=message, http_status=http_status, **extra)
        self.cause = cause


class TransientProviderError(ProviderError):
    """暂时性错误，预期重试后可以成功。"""

    is_transient = True


class NetworkError(TransientProviderError):
    """网络层错误，例如连接失败、超时等。"""


class RateLimitError(TransientProviderError):
    """Provider 限流错误，由 RetryPolicy 负责退避重试。"""


class ProviderOverloadedError(TransientProviderError):
    """Provider 过载或 5xx。"""


class FatalProviderError(ProviderError):
    """不可重试的 Provider 错误。"""


class ConfigurationError(FatalProviderError):
    """密钥缺失或无效，用户必须提供新的密钥。"""


class QuotaExceededError(FatalProviderError):
    """账户额度耗尽。"""


class ApiError(FatalProviderError):
    """第三方 API 返回其他非 2xx 错误，或返回空内容。"""

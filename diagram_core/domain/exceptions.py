"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在同步层或 UI 层做统一捕获与用户提示。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 conversation_id、size 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class DiagramTooLargeError(BusinessError):
    """图表 XML 超过 max_xml_size。

    版本历史不会抛出此异常，而是放在 VersionResult.error 中返回给调用方；
    调用方可以缩小内容后重试，原有状态保持不变。
    """

    def __init__(self, size: int, limit: int):
        super().__init__(
            code="DIAGRAM_TOO_LARGE",
            message=f"Diagram XML too large: {size} bytes (max {limit})",
            http_status=413,
            size=size,
            limit=limit,
        )
        self.size = size
        self.limit = limit


class SyncTransportError(BusinessError):
    """与远端存储交互失败（网络、服务端错误等），只记录时间戳，由下一次触发重试。"""


class NetworkError(SyncTransportError):
    """网络层错误，例如连接失败、超时等。"""


class ApiError(SyncTransportError):
    """远端返回非 2xx/429 错误时抛出。"""


class RateLimitError(SyncTransportError):
    """远端限流错误，由周期拉取自然重试。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""

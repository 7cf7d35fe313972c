"""
控制通道客户端 - 异常定义

所有由本包主动抛出的异常都继承自 RestError，
调用方可以按类别捕获：校验、解析、传输、协议、解码、持久化。
网络层的错误（httpx.TransportError 等）不做包装，原样传递给调用方。
"""


class RestError(Exception):
    """控制通道异常基类"""


class ConfigError(RestError):
    """配置错误（CA 证书文件无效、配置值格式错误等）"""


class ValidationError(RestError):
    """请求字段缺失或格式错误，在任何网络 I/O 之前检测"""


class ResolveError(RestError):
    """DNS 解析失败且没有可复用的历史地址，或解析结果无效"""


class DnsError(RestError):
    """DNS 响应错误（超时之外的失败：RCODE 非零、报文损坏、ID 不匹配）"""


class BadPinError(RestError):
    """CA 证书公钥指纹不在授权列表中"""

    def __init__(self, common_name: str = ''):
        self.common_name = common_name
        super().__init__(f"bad public key PIN: {common_name}" if common_name else "bad public key PIN")


class AppUpdateRequiredError(RestError):
    """服务器返回 HTTP 403：客户端协议版本过旧，需要升级应用，不可重试"""

    def __init__(self):
        super().__init__("application update required")


class HttpStatusError(RestError):
    """除 200 和 403 之外的 HTTP 状态码"""

    def __init__(self, status: int):
        self.status = status
        super().__init__(f"bad HTTP status {status}")


class DecodeError(RestError):
    """响应 JSON 或令牌 base64 解码失败"""


class TokenPersistError(RestError):
    """访问令牌写入文件失败（内存中的令牌已经更新）"""


class FilterFailedError(RestError):
    """过滤器接口返回 false"""

    def __init__(self):
        super().__init__("filter failed")

"""
会话端点解析

hide.me 的 DNS 会在大量服务器之间快速轮换负载，同一个主机名每次解析都可能
得到不同的 IP。一次会话必须固定使用同一个 IP，否则后续请求可能落到另一台
毫不相关的后端上。因此：

1. 主机是字面 IP 时直接使用，TLS 服务器名设为 hideservers.net
2. 否则解析主机名（5 秒超时）
3. 解析失败但之前成功解析过：沿用旧地址，返回 Resolution.STALE
4. 解析成功：用第一个地址覆盖旧地址，返回 Resolution.FRESH
"""

import asyncio
import enum
import ipaddress
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Union

from .errors import DnsError, ResolveError

logger = logging.getLogger('hideme-rest-resolver')

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

# any.hideservers.net 永远在服务器证书的 SAN 中
FALLBACK_SERVER_NAME = 'hideservers.net'
LOOKUP_TIMEOUT = 5.0


class Resolution(enum.Enum):
    """解析结果"""
    LITERAL = 'literal'    # 主机本身就是 IP，未发生 DNS 查询
    FRESH = 'fresh'        # DNS 解析成功，地址已更新
    STALE = 'stale'        # DNS 解析失败，沿用上一次的地址


@dataclass(frozen=True)
class RemoteAddress:
    """会话使用的远端 TCP 地址"""
    ip: IPAddress
    port: int

    def __str__(self) -> str:
        if self.ip.version == 6:
            return f"[{self.ip}]:{self.port}"
        return f"{self.ip}:{self.port}"


class EndpointResolver:
    """
    带"粘性"的端点解析器

    Attributes:
        host: 配置的主机名或 IP
        port: 配置的端口
        remote: 当前会话的远端地址，首次解析成功前为 None
        server_name: TLS SNI 及证书校验使用的服务器名
    """

    def __init__(self, host: str, port: int,
                 lookup: Callable[[str], Awaitable[List[Optional[IPAddress]]]],
                 lookup_timeout: float = LOOKUP_TIMEOUT):
        self.host = host
        self.port = port
        self.lookup = lookup
        self.lookup_timeout = lookup_timeout
        self.remote: Optional[RemoteAddress] = None
        self.server_name: Optional[str] = None

    async def resolve(self) -> Resolution:
        """
        解析会话端点

        Returns:
            Resolution: 本次解析的结果类型

        Raises:
            ResolveError: 解析失败且没有可沿用的地址，或解析结果为空
        """
        try:
            ip = ipaddress.ip_address(self.host)
        except ValueError:
            ip = None
        if ip is not None:
            self.remote = RemoteAddress(ip, self.port)
            self.server_name = FALLBACK_SERVER_NAME
            return Resolution.LITERAL

        try:
            addresses = await asyncio.wait_for(self.lookup(self.host), self.lookup_timeout)
        except (DnsError, OSError, asyncio.TimeoutError) as e:
            logger.error(f"Resolve: {self.host} 解析失败, {e!r}")
            if self.remote is not None:
                logger.warning(f"Resolve: 沿用上一次的解析结果 {self.remote}")
                return Resolution.STALE
            raise ResolveError(f"dns lookup failed for {self.host}") from e

        if not addresses:
            raise ResolveError(f"dns lookup failed for {self.host}")
        if addresses[0] is None:
            raise ResolveError(f"no IP found for {self.host}")

        self.server_name = self.host
        self.remote = RemoteAddress(addresses[0], self.port)
        logger.info(f"Name: {self.host} 解析为 {self.remote.ip}")
        return Resolution.FRESH

"""
套接字拨号器

为 HTTPS (TCP) 和 DNS (UDP) 流量创建出站连接：
- 可选地为套接字设置防火墙标记（SO_MARK），便于策略路由绕开 VPN 隧道
- UDP 连接一律改写目标地址为配置的 DNS 服务器之一（每次拨号随机选择）

拨号失败的异常原样抛出，本层不做重试。
"""

import asyncio
import ipaddress
import logging
import random
import socket
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

logger = logging.getLogger('hideme-rest-dialer')

DEFAULT_DNS_SERVER = '1.1.1.1:53'
DNS_PORT = 53

# Linux 上 SO_MARK 的取值，旧版本 Python 的 socket 模块未导出该常量
SO_MARK = getattr(socket, 'SO_MARK', 36)


def parse_address(address: str, default_port: int = DNS_PORT) -> Tuple[str, int]:
    """
    解析 "主机:端口" 形式的地址

    支持的格式:
        1.1.1.1:53
        [2606:4700::1111]:53
        1.1.1.1            (使用默认端口)
        2606:4700::1111    (使用默认端口)

    Returns:
        (主机, 端口) 元组
    """
    address = address.strip()
    if address.startswith('['):
        host, _, rest = address[1:].partition(']')
        port = int(rest[1:]) if rest.startswith(':') else default_port
        return host, port
    if address.count(':') == 1:
        host, port = address.split(':')
        return host, int(port)
    return address, default_port


def split_dns_servers(dns_servers: str) -> List[str]:
    """将逗号分隔的 DNS 服务器列表拆分为列表，为空时返回默认公共解析器"""
    servers = [server.strip() for server in dns_servers.split(',') if server.strip()] if dns_servers else []
    return servers or [DEFAULT_DNS_SERVER]


class Dialer:
    """
    出站连接拨号器

    Attributes:
        firewall_mark: 防火墙标记，0 表示不设置
        dns_servers: DNS 服务器地址列表（"主机:端口"）
        rng: 随机数源，测试时可注入固定种子的 random.Random
        lookup: TCP 拨号时解析主机名的函数（返回 IP 列表），None 时使用系统解析器
    """

    def __init__(self, firewall_mark: int = 0, dns_servers: Optional[Sequence[str]] = None,
                 rng: Optional[random.Random] = None,
                 lookup: Optional[Callable[[str], Awaitable[list]]] = None):
        self.firewall_mark = firewall_mark
        self.dns_servers = list(dns_servers) if dns_servers else [DEFAULT_DNS_SERVER]
        self.rng = rng or random.Random()
        self.lookup = lookup

    def pick_dns_server(self) -> Tuple[str, int]:
        """均匀随机地选择一个 DNS 服务器"""
        server = self.dns_servers[self.rng.randrange(len(self.dns_servers))]
        return parse_address(server)

    def _mark(self, sock: socket.socket):
        """设置防火墙标记，失败只记录日志不中断拨号"""
        try:
            sock.setsockopt(socket.SOL_SOCKET, SO_MARK, self.firewall_mark)
        except OSError as e:
            logger.error(f"Dial: 设置防火墙标记失败, {e}")

    def _socket(self, family: int, sock_type: int) -> socket.socket:
        sock = socket.socket(family, sock_type)
        sock.setblocking(False)
        if self.firewall_mark > 0:
            self._mark(sock)
        return sock

    async def _connect(self, family: int, sock_type: int, sockaddr: tuple) -> socket.socket:
        loop = asyncio.get_running_loop()
        sock = self._socket(family, sock_type)
        try:
            await loop.sock_connect(sock, sockaddr)
        except BaseException:
            sock.close()
            raise
        return sock

    async def dial(self, network: str, host: Optional[str] = None, port: Optional[int] = None,
                   timeout: Optional[float] = None) -> socket.socket:
        """
        建立连接

        Args:
            network: "tcp" 或 "udp"
            host: 目标主机（UDP 时被忽略）
            port: 目标端口（UDP 时被忽略）
            timeout: 连接超时（秒），None 表示不限制

        Returns:
            已连接的非阻塞套接字
        """
        if network == 'udp':
            # 来自 DNS 解析的请求，改写为配置的 DNS 服务器
            host, port = self.pick_dns_server()
            logger.debug(f"Dial: DNS 查询发往 {host}:{port}")
            sock_type = socket.SOCK_DGRAM
        elif network == 'tcp':
            sock_type = socket.SOCK_STREAM
        else:
            raise ValueError(f"不支持的网络类型: {network}")

        return await asyncio.wait_for(self._dial(host, port, sock_type), timeout)

    async def _dial(self, host: str, port: int, sock_type: int) -> socket.socket:
        try:
            ip = ipaddress.ip_address(host)
        except ValueError:
            ip = None

        if ip is not None:
            family = socket.AF_INET6 if ip.version == 6 else socket.AF_INET
            return await self._connect(family, sock_type, (str(ip), port))

        # TCP 主机名只出现在固定的过滤接口上，走注入的 DNS 查询；
        # DNS 服务器本身是主机名时（UDP）必须用系统解析器，否则查询会无限递归
        if self.lookup is not None and sock_type == socket.SOCK_STREAM:
            addresses = await self.lookup(host)
            targets = [(socket.AF_INET6 if address.version == 6 else socket.AF_INET, (str(address), port))
                       for address in addresses if address is not None]
        else:
            loop = asyncio.get_running_loop()
            infos = await loop.getaddrinfo(host, port, type=sock_type)
            targets = [(family, sockaddr) for family, _, _, _, sockaddr in infos]

        last_error: Optional[OSError] = None
        for family, sockaddr in targets:
            try:
                return await self._connect(family, sock_type, sockaddr)
            except OSError as e:
                logger.debug(f"Dial: 连接 {sockaddr[0]}:{port} 失败: {e}")
                last_error = e
        if last_error is None:
            raise OSError(f"没有可用地址: {host}")
        raise last_error

"""
带证书固定的 HTTPS 传输层

在 httpcore 连接池之下替换网络后端：
- TCP 连接由 Dialer 建立（防火墙标记）
- TLS 在 asyncio 流上升级，握手完成后、发送任何请求数据之前校验证书指纹
- 只协商 HTTP/2（ALPN h2），要求 TLS 1.3
- 连接池不保留空闲连接，每个请求都重新握手并重新校验指纹

PinnedTransport 实现 httpx.AsyncBaseTransport，供 httpx.AsyncClient 使用。
"""

import asyncio
import logging
import ssl
import sys
from typing import Callable, Iterable, List, Optional

import httpcore
import httpx
from cryptography import x509

from .dialer import Dialer
from .errors import ConfigError

logger = logging.getLogger('hideme-rest-transport')

ALPN_PROTOCOLS = ['h2']

# 与请求总超时无关的单阶段上限：TLS 握手，以及等待服务器响应数据
TLS_HANDSHAKE_TIMEOUT = 5.0
RESPONSE_HEADER_TIMEOUT = 5.0

# httpcore 异常 -> httpx 异常，子类在前
_EXCEPTION_MAP = (
    (httpcore.ConnectTimeout, httpx.ConnectTimeout),
    (httpcore.ReadTimeout, httpx.ReadTimeout),
    (httpcore.WriteTimeout, httpx.WriteTimeout),
    (httpcore.PoolTimeout, httpx.PoolTimeout),
    (httpcore.TimeoutException, httpx.TimeoutException),
    (httpcore.ConnectError, httpx.ConnectError),
    (httpcore.ReadError, httpx.ReadError),
    (httpcore.WriteError, httpx.WriteError),
    (httpcore.NetworkError, httpx.NetworkError),
    (httpcore.UnsupportedProtocol, httpx.UnsupportedProtocol),
    (httpcore.RemoteProtocolError, httpx.RemoteProtocolError),
    (httpcore.LocalProtocolError, httpx.LocalProtocolError),
    (httpcore.ProtocolError, httpx.ProtocolError),
)


def create_ssl_context(ca: str = '') -> ssl.SSLContext:
    """
    创建客户端 SSL 上下文

    Args:
        ca: CA 证书包路径，为空时使用系统根证书

    Raises:
        ConfigError: CA 文件不存在或不包含有效证书
    """
    try:
        context = ssl.create_default_context(cafile=ca or None)
    except (OSError, ssl.SSLError) as e:
        raise ConfigError(f"Bad certificate in {ca}: {e}") from e
    context.minimum_version = ssl.TLSVersion.TLSv1_3
    context.set_alpn_protocols(ALPN_PROTOCOLS)
    return context


def _legacy_verified_chain(ssl_object: ssl.SSLObject) -> List[x509.Certificate]:
    # Python 3.11/3.12 没有公开接口，只能通过内部的 _ssl 对象取链（PEM 文本）
    chain = ssl_object._sslobj.get_verified_chain() or []
    return [x509.load_pem_x509_certificate(certificate.public_bytes().encode('ascii'))
            for certificate in chain]


def verified_chain(ssl_object: ssl.SSLObject) -> List[x509.Certificate]:
    """获取握手中已通过校验的证书链（叶子证书在前）"""
    if sys.version_info < (3, 13):
        return _legacy_verified_chain(ssl_object)
    return [x509.load_der_x509_certificate(der) for der in ssl_object.get_verified_chain()]


def _bounded(timeout: Optional[float], limit: float) -> float:
    """取调用方超时与阶段上限中较小者，调用方不限时使用阶段上限"""
    if timeout is None:
        return limit
    return min(timeout, limit)


class PinnedStream(httpcore.AsyncNetworkStream):
    """基于 asyncio 流的 httpcore 网络流"""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                 verifier: Callable[[Iterable[List[x509.Certificate]]], None]):
        self._reader = reader
        self._writer = writer
        self._verifier = verifier

    async def read(self, max_bytes: int, timeout: Optional[float] = None) -> bytes:
        try:
            return await asyncio.wait_for(self._reader.read(max_bytes),
                                          _bounded(timeout, RESPONSE_HEADER_TIMEOUT))
        except asyncio.TimeoutError as e:
            raise httpcore.ReadTimeout(str(e)) from e
        except OSError as e:
            raise httpcore.ReadError(str(e)) from e

    async def write(self, buffer: bytes, timeout: Optional[float] = None) -> None:
        if not buffer:
            return
        try:
            self._writer.write(buffer)
            await asyncio.wait_for(self._writer.drain(), timeout)
        except asyncio.TimeoutError as e:
            raise httpcore.WriteTimeout(str(e)) from e
        except OSError as e:
            raise httpcore.WriteError(str(e)) from e

    async def aclose(self) -> None:
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except OSError as e:
            logger.debug(f"Transport: 关闭连接时出错: {e}")

    def _abort(self):
        # 握手失败后流协议收不到连接关闭通知，wait_closed 会一直等待，只关闭不等待
        self._writer.close()

    async def start_tls(self, ssl_context: ssl.SSLContext, server_hostname: Optional[str] = None,
                        timeout: Optional[float] = None) -> 'PinnedStream':
        # httpcore 会把 ALPN 改为 http/1.1 + h2，这里收回到只允许 h2
        ssl_context.set_alpn_protocols(ALPN_PROTOCOLS)
        try:
            await asyncio.wait_for(
                self._writer.start_tls(ssl_context, server_hostname=server_hostname),
                _bounded(timeout, TLS_HANDSHAKE_TIMEOUT)
            )
        except asyncio.TimeoutError as e:
            self._abort()
            raise httpcore.ConnectTimeout(str(e)) from e
        except OSError as e:
            self._abort()
            raise httpcore.ConnectError(str(e)) from e

        # 在发送任何请求数据之前校验证书指纹
        ssl_object = self._writer.get_extra_info('ssl_object')
        try:
            self._verifier([verified_chain(ssl_object)])
        except BaseException:
            await self.aclose()
            raise
        return self

    def get_extra_info(self, info: str):
        if info == 'ssl_object':
            return self._writer.get_extra_info('ssl_object')
        if info == 'client_addr':
            return self._writer.get_extra_info('sockname')
        if info == 'server_addr':
            return self._writer.get_extra_info('peername')
        if info == 'socket':
            return self._writer.get_extra_info('socket')
        if info == 'is_readable':
            return self._reader.at_eof()
        return None


class PinnedBackend(httpcore.AsyncNetworkBackend):
    """通过 Dialer 建立 TCP 连接的 httpcore 网络后端"""

    def __init__(self, dialer: Dialer, verifier: Callable[[Iterable[List[x509.Certificate]]], None]):
        self.dialer = dialer
        self.verifier = verifier

    async def connect_tcp(self, host: str, port: int, timeout: Optional[float] = None,
                          local_address: Optional[str] = None, socket_options=None) -> PinnedStream:
        try:
            sock = await self.dialer.dial('tcp', host, port, timeout)
        except asyncio.TimeoutError as e:
            raise httpcore.ConnectTimeout(f"连接 {host}:{port} 超时") from e
        except OSError as e:
            raise httpcore.ConnectError(str(e)) from e
        reader, writer = await asyncio.open_connection(sock=sock)
        logger.debug(f"Transport: 已连接 {host}:{port}")
        return PinnedStream(reader, writer, self.verifier)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class PinnedTransport(httpx.AsyncBaseTransport):
    """
    httpx 传输层：HTTP/2 + 证书固定 + 不复用连接

    Attributes:
        ssl_context: TLS 1.3 客户端上下文
        dialer: 拨号器
        verifier: 证书指纹校验函数
    """

    def __init__(self, ssl_context: ssl.SSLContext, dialer: Dialer,
                 verifier: Callable[[Iterable[List[x509.Certificate]]], None]):
        self._pool = httpcore.AsyncConnectionPool(
            ssl_context=ssl_context,
            http1=False,
            http2=True,
            max_keepalive_connections=0,
            network_backend=PinnedBackend(dialer, verifier),
        )

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        core_request = httpcore.Request(
            method=request.method,
            url=httpcore.URL(
                scheme=request.url.raw_scheme,
                host=request.url.raw_host,
                port=request.url.port,
                target=request.url.raw_path,
            ),
            headers=request.headers.raw,
            content=await request.aread(),
            extensions=request.extensions,
        )
        try:
            response = await self._pool.handle_async_request(core_request)
            try:
                content = await response.aread()
            finally:
                await response.aclose()
        except Exception as exc:
            for core_type, httpx_type in _EXCEPTION_MAP:
                if isinstance(exc, core_type):
                    raise httpx_type(str(exc), request=request) from exc
            raise
        return httpx.Response(
            status_code=response.status,
            headers=response.headers,
            content=content,
            extensions=response.extensions,
        )

    async def aclose(self) -> None:
        await self._pool.aclose()

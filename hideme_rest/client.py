"""
hide.me REST 控制通道客户端

会话流程:
1. resolve()            解析并固定服务器 IP
2. connect(public_key)  交换 WireGuard 公钥，获取会话参数
3. get_access_token()   按需刷新访问令牌；apply_filter() 下发过滤策略
4. disconnect(token)    结束会话

所有请求共享同一个 HTTPS 传输层（HTTP/2、TLS 1.3、证书固定、不复用连接）。
客户端实例不做内部加锁，同一会话内的操作应按顺序调用；
重试与周期性刷新由调用方负责。
"""

import asyncio
import json
import logging
import random
from typing import Any, Optional

import httpx

from .config import Config
from .dialer import Dialer
from .dns import DnsClient
from .errors import (
    AppUpdateRequiredError, DecodeError, FilterFailedError, HttpStatusError, ResolveError,
)
from .messages import (
    AccessTokenRequest, ConnectRequest, ConnectResponse, DisconnectRequest, short_host,
)
from .pins import AUTHORIZED_PINS, PinVerifier
from .resolver import EndpointResolver, RemoteAddress, Resolution
from .token_store import TokenStore
from .transport import PinnedTransport, create_ssl_context

logger = logging.getLogger('hideme-rest-client')

USER_AGENT = 'HIDE.ME.LINUX.CLI-0.9.3'
FILTER_URL = 'https://vpn.hide.me:4321/filter'


class RestClient:
    """
    控制通道客户端

    Attributes:
        config: 客户端配置（只读）
        dialer: 拨号器，HTTPS 与 DNS 流量共用
        resolver: 会话端点解析器
        tokens: 访问令牌存储
        verifier: 证书指纹校验器
    """

    def __init__(self, config: Config, rng: Optional[random.Random] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 pins=AUTHORIZED_PINS):
        """
        初始化客户端

        Args:
            config: 客户端配置
            rng: DNS 服务器选择使用的随机数源（可选）
            transport: 替换默认的证书固定传输层（测试用）
            pins: 授权的 CA 指纹表

        Raises:
            ConfigError: CA 证书文件无效
        """
        self.config = config
        self.dialer = Dialer(config.firewall_mark, config.dns_server_list(), rng)
        dns = DnsClient(self.dialer)
        # 过滤接口的主机名也走配置的 DNS 服务器
        self.dialer.lookup = dns.lookup_ip
        self.resolver = EndpointResolver(config.host, config.port, dns.lookup_ip)
        self.tokens = TokenStore(config.access_token_file)
        self.verifier = PinVerifier(pins)
        if transport is None:
            transport = PinnedTransport(create_ssl_context(config.ca), self.dialer, self.verifier)
        self._http = httpx.AsyncClient(transport=transport, timeout=config.rest_timeout or None)

    async def __aenter__(self) -> 'RestClient':
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def aclose(self):
        await self._http.aclose()

    @property
    def remote(self) -> Optional[RemoteAddress]:
        return self.resolver.remote

    def have_access_token(self) -> bool:
        return self.tokens.have()

    async def resolve(self) -> Resolution:
        """解析会话端点，详见 EndpointResolver.resolve"""
        return await self.resolver.resolve()

    def _url(self, operation: str) -> str:
        if self.remote is None:
            raise ResolveError(f"{self.config.host} has not been resolved")
        return f"https://{self.remote}/{self.config.api_version}/{operation}"

    async def _post_json(self, url: str, payload: Any) -> bytes:
        """
        校验并发送 JSON 请求，返回 200 响应的正文

        Raises:
            ValidationError: 请求自检失败（未发生网络 I/O）
            AppUpdateRequiredError: HTTP 403
            HttpStatusError: 其他非 200 状态码
        """
        payload.check()
        body = json.dumps(payload.to_dict(), indent='\t').encode('utf-8')
        headers = {'user-agent': USER_AGENT, 'content-type': 'application/json'}
        extensions = {}
        if self.resolver.server_name:
            extensions['sni_hostname'] = self.resolver.server_name

        response = await asyncio.wait_for(
            self._http.post(url, content=body, headers=headers, extensions=extensions),
            self.config.rest_timeout or None
        )
        if response.status_code == 403:
            logger.error("Rest: 需要升级应用程序")
            raise AppUpdateRequiredError()
        if response.status_code != 200:
            logger.error(f"Rest: HTTP 响应错误 ({response.status_code})")
            raise HttpStatusError(response.status_code)
        return response.content

    async def connect(self, public_key: bytes) -> ConnectResponse:
        """
        建立会话：发送本地 WireGuard 公钥，获取服务器端会话参数

        Args:
            public_key: 32 字节 WireGuard 公钥
        """
        request = ConnectRequest(
            host=short_host(self.config.host),
            domain=self.config.domain,
            access_token=self.tokens.token,
            public_key=public_key,
        )
        request.check()
        body = await self._post_json(self._url('connect'), request)
        try:
            data = json.loads(body)
        except ValueError as e:
            raise DecodeError(f"connect 响应不是有效的 JSON: {e}") from e
        response = ConnectResponse.from_dict(data)
        logger.info(f"Connect: 会话已建立，服务器端点 {response.endpoint_ip}:{response.endpoint_port}")
        return response

    async def disconnect(self, session_token: bytes):
        """结束会话，响应正文被丢弃"""
        request = DisconnectRequest(
            host=short_host(self.config.host),
            domain=self.config.domain,
            session_token=session_token,
        )
        request.check()
        await self._post_json(self._url('disconnect'), request)
        logger.info("Disconnect: 会话已结束")

    async def get_access_token(self):
        """
        获取新的访问令牌，更新内存并写回令牌文件

        Raises:
            DecodeError: 响应不是 JSON 字符串或不是有效的 base64（旧令牌保持不变）
            TokenPersistError: 令牌文件写入失败（内存中的令牌已更新）
        """
        request = AccessTokenRequest(
            host=short_host(self.config.host),
            domain=self.config.domain,
            access_token=self.tokens.token,
            username=self.config.username,
            password=self.config.password,
        )
        request.check()
        body = await self._post_json(self._url('accessToken'), request)
        try:
            token_text = json.loads(body)
        except ValueError as e:
            raise DecodeError(f"accessToken 响应不是有效的 JSON: {e}") from e
        if not isinstance(token_text, str):
            raise DecodeError("accessToken 响应不是字符串")
        self.tokens.update(token_text)
        logger.info("AccessToken: 访问令牌已更新")

    async def apply_filter(self):
        """
        向过滤服务下发配置的过滤策略

        Raises:
            FilterFailedError: 服务返回 false
        """
        body = await self._post_json(FILTER_URL, self.config.filter)
        if body.strip() == b'false':
            logger.error("Filter: 过滤策略下发失败")
            raise FilterFailedError()
        logger.info("Filter: 过滤策略已生效")

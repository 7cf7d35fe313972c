"""
hide.me REST 控制通道客户端

本包提供 VPN 会话控制通道的安全传输与端点管理：
- 证书公钥固定（PinVerifier）
- 带防火墙标记和 DNS 服务器改写的拨号器（Dialer）
- 会话内固定服务器 IP 的端点解析（EndpointResolver）
- 访问令牌的加载、持久化与刷新（TokenStore）
- connect / disconnect / accessToken / filter 四个 JSON 接口（RestClient）

使用示例：
    from hideme_rest import Config, RestClient

    config = Config(host='nl.hideservers.net', access_token_file='accessToken.txt')
    async with RestClient(config) as client:
        await client.resolve()
        if not client.have_access_token():
            await client.get_access_token()
        response = await client.connect(public_key)
        ...
        await client.disconnect(response.session_token)
"""

from .client import RestClient
from .config import Config, load_config
from .dialer import Dialer
from .errors import (
    AppUpdateRequiredError,
    BadPinError,
    ConfigError,
    DecodeError,
    DnsError,
    FilterFailedError,
    HttpStatusError,
    ResolveError,
    RestError,
    TokenPersistError,
    ValidationError,
)
from .messages import ConnectResponse, Filter
from .pins import AUTHORIZED_PINS, PinVerifier
from .resolver import EndpointResolver, RemoteAddress, Resolution
from .token_store import TokenStore

__version__ = '0.9.3'

__all__ = [
    'RestClient',
    'Config',
    'load_config',
    'Dialer',
    'EndpointResolver',
    'RemoteAddress',
    'Resolution',
    'TokenStore',
    'PinVerifier',
    'AUTHORIZED_PINS',
    'ConnectResponse',
    'Filter',
    'RestError',
    'ConfigError',
    'ValidationError',
    'ResolveError',
    'DnsError',
    'BadPinError',
    'AppUpdateRequiredError',
    'HttpStatusError',
    'DecodeError',
    'TokenPersistError',
    'FilterFailedError',
]

"""
控制通道协议消息

四种请求（Connect、Disconnect、AccessToken、Filter）在发送前都要调用
check() 做自检，字段缺失或格式错误时抛出 ValidationError，不产生任何网络 I/O。

字节类型字段在 JSON 中使用标准 base64 字符串，缺失的令牌序列化为 null。
"""

import base64
import ipaddress
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from .errors import DecodeError, ValidationError

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

SERVICE_SUFFIX = '.hideservers.net'
PUBLIC_KEY_SIZE = 32  # WireGuard 公钥长度

FILTER_PG_LEVELS = (0, 12, 18)
FILTER_RISK = ('possible', 'medium', 'high')
FILTER_ILLEGAL = ('content', 'warez', 'spyware', 'copyright')


def short_host(host: str) -> str:
    """去掉服务域名后缀，得到请求中使用的服务器短名"""
    if host.endswith(SERVICE_SUFFIX):
        return host[:-len(SERVICE_SUFFIX)]
    return host


def b64(data: Optional[bytes]) -> Optional[str]:
    """字节 -> base64 文本，None 保持为 None（JSON null）"""
    if data is None:
        return None
    return base64.b64encode(data).decode('ascii')


def unb64(text: Optional[str]) -> bytes:
    """base64 文本 -> 字节，null 视为空字节串"""
    if text is None or text == '':
        return b''
    if not isinstance(text, str):
        raise DecodeError(f"base64 字段不是字符串: {text!r}")
    try:
        return base64.b64decode(text, validate=True)
    except ValueError as e:
        raise DecodeError(f"无效的 base64 字段: {e}") from e


def _require_endpoint(host: str, domain: str):
    if not host:
        raise ValidationError("host missing")
    if not domain:
        raise ValidationError("domain missing")


@dataclass
class ConnectRequest:
    """建立会话请求"""
    host: str
    domain: str
    access_token: Optional[bytes]
    public_key: bytes

    def check(self):
        _require_endpoint(self.host, self.domain)
        if len(self.public_key or b'') != PUBLIC_KEY_SIZE:
            raise ValidationError("bad public key")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'host': self.host,
            'domain': self.domain,
            'accessToken': b64(self.access_token),
            'publicKey': b64(self.public_key),
        }


@dataclass
class DisconnectRequest:
    """断开会话请求"""
    host: str
    domain: str
    session_token: bytes

    def check(self):
        _require_endpoint(self.host, self.domain)
        if not self.session_token:
            raise ValidationError("session token missing")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'host': self.host,
            'domain': self.domain,
            'sessionToken': b64(self.session_token),
        }


@dataclass
class AccessTokenRequest:
    """
    访问令牌请求

    优先使用已有令牌换取新令牌；没有令牌时用户名和密码作为后备凭据。
    """
    host: str
    domain: str
    access_token: Optional[bytes] = None
    username: str = ''
    password: str = ''

    def check(self):
        _require_endpoint(self.host, self.domain)
        if not self.access_token and not (self.username and self.password):
            raise ValidationError("neither access token nor username/password present")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'host': self.host,
            'domain': self.domain,
            'accessToken': b64(self.access_token),
            'username': self.username,
            'password': self.password,
        }


@dataclass
class Filter:
    """
    DNS/内容过滤策略

    Attributes:
        ads: 拦截广告
        trackers: 拦截跟踪器
        malware: 拦截恶意软件
        malicious: 拦截恶意网站
        pg: 家长控制年龄分级（0 表示关闭）
        safe_search: 强制安全搜索
        risk: 风险等级过滤（possible, medium, high）
        illegal: 非法内容过滤（content, warez, spyware, copyright）
        categories: 自定义拦截分类
        whitelist: 白名单域名
        blacklist: 黑名单域名
    """
    ads: bool = False
    trackers: bool = False
    malware: bool = False
    malicious: bool = False
    pg: int = 0
    safe_search: bool = False
    risk: List[str] = field(default_factory=list)
    illegal: List[str] = field(default_factory=list)
    categories: List[str] = field(default_factory=list)
    whitelist: List[str] = field(default_factory=list)
    blacklist: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'Filter':
        """从 YAML 配置的 filter 段构造"""
        data = data or {}
        return cls(
            ads=bool(data.get('ads', False)),
            trackers=bool(data.get('trackers', False)),
            malware=bool(data.get('malware', False)),
            malicious=bool(data.get('malicious', False)),
            pg=int(data.get('PG', data.get('pg', 0)) or 0),
            safe_search=bool(data.get('safeSearch', False)),
            risk=list(data.get('risk') or []),
            illegal=list(data.get('illegal') or []),
            categories=list(data.get('categories') or []),
            whitelist=list(data.get('whitelist') or []),
            blacklist=list(data.get('blacklist') or []),
        )

    def check(self):
        if self.pg not in FILTER_PG_LEVELS:
            raise ValidationError(f"bad PG level {self.pg}")
        for risk in self.risk:
            if risk not in FILTER_RISK:
                raise ValidationError(f"bad risk level {risk}")
        for illegal in self.illegal:
            if illegal not in FILTER_ILLEGAL:
                raise ValidationError(f"bad illegal content type {illegal}")
        for domain in self.whitelist + self.blacklist:
            if not isinstance(domain, str) or not domain.strip():
                raise ValidationError("empty domain in white/black list")

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'ads': self.ads,
            'trackers': self.trackers,
            'malware': self.malware,
            'malicious': self.malicious,
            'pg': self.pg,
            'safeSearch': self.safe_search,
            'risk': self.risk,
            'illegal': self.illegal,
            'categories': self.categories,
            'whitelist': self.whitelist,
            'blacklist': self.blacklist,
        }
        # 空值不发送
        return {key: value for key, value in data.items() if value}


def _ip_list(values: Optional[List[str]]) -> List[IPAddress]:
    if values is None:
        return []
    if not isinstance(values, list) or not all(isinstance(value, str) for value in values):
        raise DecodeError(f"IP 地址列表格式错误: {values!r}")
    try:
        return [ipaddress.ip_address(value) for value in values]
    except ValueError as e:
        raise DecodeError(f"无效的 IP 地址: {e}") from e


@dataclass
class ConnectResponse:
    """
    建立会话响应 - WireGuard 会话参数

    Attributes:
        public_key: 服务器 WireGuard 公钥
        endpoint_ip: 服务器 WireGuard 端点 IP
        endpoint_port: 服务器 WireGuard 端点端口
        preshared_key: 预共享密钥
        persistent_keepalive: 保活间隔（秒）
        allowed_ips: 分配给客户端的地址
        dns: DNS 服务器
        gateway: 隧道内网关
        session_token: 会话令牌，Disconnect 时使用
        stale_access_token: 服务器提示访问令牌即将过期，需要刷新
    """
    public_key: bytes = b''
    endpoint_ip: Optional[IPAddress] = None
    endpoint_port: int = 0
    preshared_key: bytes = b''
    persistent_keepalive: float = 0.0
    allowed_ips: List[IPAddress] = field(default_factory=list)
    dns: List[IPAddress] = field(default_factory=list)
    gateway: List[IPAddress] = field(default_factory=list)
    session_token: bytes = b''
    stale_access_token: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ConnectResponse':
        if not isinstance(data, dict):
            raise DecodeError("connect 响应不是 JSON 对象")
        endpoint = data.get('endpoint') or {}
        if not isinstance(endpoint, dict):
            raise DecodeError(f"endpoint 字段不是 JSON 对象: {endpoint!r}")
        endpoint_ip = _ip_list([endpoint['IP']])[0] if endpoint.get('IP') else None
        try:
            keepalive_ns = int(data.get('persistentKeepalive') or 0)
            endpoint_port = int(endpoint.get('Port') or 0)
        except (TypeError, ValueError) as e:
            raise DecodeError(f"connect 响应字段类型错误: {e}") from e
        return cls(
            public_key=unb64(data.get('publicKey')),
            endpoint_ip=endpoint_ip,
            endpoint_port=endpoint_port,
            preshared_key=unb64(data.get('presharedKey')),
            persistent_keepalive=keepalive_ns / 1e9,
            allowed_ips=_ip_list(data.get('allowedIps')),
            dns=_ip_list(data.get('DNS')),
            gateway=_ip_list(data.get('gateway')),
            session_token=unb64(data.get('sessionToken')),
            stale_access_token=bool(data.get('StaleAccessToken', False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        """用于命令行输出的可读表示"""
        return {
            'publicKey': b64(self.public_key),
            'endpoint': f"{self.endpoint_ip}:{self.endpoint_port}" if self.endpoint_ip else None,
            'presharedKey': b64(self.preshared_key),
            'persistentKeepalive': self.persistent_keepalive,
            'allowedIps': [str(ip) for ip in self.allowed_ips],
            'DNS': [str(ip) for ip in self.dns],
            'gateway': [str(ip) for ip in self.gateway],
            'sessionToken': b64(self.session_token),
            'StaleAccessToken': self.stale_access_token,
        }

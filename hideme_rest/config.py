"""
控制通道客户端 - 配置管理

配置文件格式（YAML，键名与 hide.me 命令行客户端保持一致）:

    host: nl.hideservers.net
    port: 432
    accessToken: accessToken.txt
    username: ""
    password: ""
    restTimeout: 10s
    reconnectWait: 30s
    accessTokenUpdateDelay: 2s
    CA: CA.pem
    firewallMark: 55555
    dnsServers: 209.250.251.37:53, 217.182.206.81:53
    filter:
      ads: true
      malware: true
      PG: 12

配置键既可以放在顶层，也可以放在 client: 段中。
accessTokenUpdateDelay 也接受首字母大写的 AccessTokenUpdateDelay。
时长可以写成秒数，或 Go 风格的时长字符串（10s、1m30s、500ms）。
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List

import yaml

from .dialer import split_dns_servers
from .errors import ConfigError
from .messages import Filter

logger = logging.getLogger('hideme-rest-config')

DEFAULT_PORT = 432
DEFAULT_API_VERSION = 'v1.0.0'
DEFAULT_DOMAIN = 'hide.me'

_DURATION_PART = re.compile(r'(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)')
_DURATION_UNITS = {
    'ns': 1e-9, 'us': 1e-6, 'µs': 1e-6, 'ms': 1e-3,
    's': 1.0, 'm': 60.0, 'h': 3600.0,
}


def parse_duration(value: Any) -> float:
    """
    解析时长配置，返回秒数

    Raises:
        ConfigError: 格式无法识别
    """
    if isinstance(value, bool):
        raise ConfigError(f"无效的时长: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text:
        return 0.0
    try:
        return float(text)
    except ValueError:
        pass
    parts = _DURATION_PART.findall(text)
    if not parts or ''.join(number + unit for number, unit in parts) != text:
        raise ConfigError(f"无效的时长: {value!r}")
    return sum(float(number) * _DURATION_UNITS[unit] for number, unit in parts)


@dataclass
class Config:
    """
    客户端配置数据类

    Attributes:
        host: 服务器 FQDN 或 IP
        port: REST 请求端口（默认: 432）
        api_version: REST API 版本
        domain: 服务域名（默认: hide.me）
        access_token_file: 访问令牌文件路径（为空时不持久化）
        username: 用户名（访问令牌优先）
        password: 密码（访问令牌优先）
        rest_timeout: REST 请求超时（秒）
        reconnect_wait: 重连等待时间（秒），由调用方使用
        access_token_update_delay: 刷新过期访问令牌前的等待时间（秒），由调用方使用
        ca: CA 证书包路径（为空时使用系统根证书）
        firewall_mark: 本程序流量的防火墙标记（0 表示不设置）
        dns_servers: 逗号分隔的 DNS 服务器列表
        filter: 过滤策略
    """
    host: str = ''
    port: int = DEFAULT_PORT
    api_version: str = DEFAULT_API_VERSION
    domain: str = DEFAULT_DOMAIN
    access_token_file: str = ''
    username: str = ''
    password: str = ''
    rest_timeout: float = 10.0
    reconnect_wait: float = 30.0
    access_token_update_delay: float = 2.0
    ca: str = ''
    firewall_mark: int = 0
    dns_servers: str = ''
    filter: Filter = field(default_factory=Filter)

    def __post_init__(self):
        if not self.port:
            self.port = DEFAULT_PORT

    def dns_server_list(self) -> List[str]:
        """DNS 服务器列表，未配置时为默认公共解析器"""
        return split_dns_servers(self.dns_servers)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Config':
        """
        从配置字典构造

        Args:
            data: yaml.safe_load 的结果；若包含 client 段则使用该段
        """
        data = data or {}
        if isinstance(data.get('client'), dict):
            data = data['client']
        try:
            return cls(
                host=str(data.get('host', '') or ''),
                port=int(data.get('port', 0) or 0),
                access_token_file=str(data.get('accessToken', '') or ''),
                username=str(data.get('username', '') or ''),
                password=str(data.get('password', '') or ''),
                rest_timeout=parse_duration(data.get('restTimeout', 10.0)),
                reconnect_wait=parse_duration(data.get('reconnectWait', 30.0)),
                access_token_update_delay=parse_duration(
                    data.get('accessTokenUpdateDelay', data.get('AccessTokenUpdateDelay', 2.0))),
                ca=str(data.get('CA', '') or ''),
                firewall_mark=int(data.get('firewallMark', 0) or 0),
                dns_servers=str(data.get('dnsServers', '') or ''),
                filter=Filter.from_dict(data.get('filter')),
            )
        except (AttributeError, TypeError, ValueError) as e:
            raise ConfigError(f"配置值格式错误: {e}") from e


def load_config(config_file: str) -> Dict[str, Any]:
    """
    加载配置文件

    Args:
        config_file: 配置文件路径

    Returns:
        Dict[str, Any]: 配置数据字典，文件不存在或格式错误时返回空字典
    """
    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {}
    except yaml.YAMLError as e:
        logger.warning(f"配置文件格式错误: {e}")
        return {}

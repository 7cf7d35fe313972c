"""
最小化的 DNS 存根解析器

只用于把服务器主机名解析为 IP 地址。查询通过 Dialer 的 UDP 路径发出，
因此每次查询都会被发往配置的 DNS 服务器之一，并带上防火墙标记。

报文格式（RFC 1035）:
┌──────┬───────┬─────────┬─────────┬─────────┬─────────┐
│  ID  │ 标志  │ QDCOUNT │ ANCOUNT │ NSCOUNT │ ARCOUNT │
│ 2字节│ 2字节 │  2字节  │  2字节  │  2字节  │  2字节  │
└──────┴───────┴─────────┴─────────┴─────────┴─────────┘
"""

import asyncio
import ipaddress
import logging
import os
import struct
from typing import List, Tuple, Union

from .dialer import Dialer
from .errors import DnsError

logger = logging.getLogger('hideme-rest-dns')

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

HEADER_FORMAT = '>HHHHHH'
HEADER_SIZE = 12

QTYPE_A = 1
QTYPE_AAAA = 28
QCLASS_IN = 1

FLAG_QR = 0x8000
FLAG_RD = 0x0100
RCODE_MASK = 0x000F

MAX_MESSAGE_SIZE = 4096


def encode_name(name: str) -> bytes:
    """将域名编码为 DNS 标签序列"""
    encoded = b''
    for label in name.rstrip('.').split('.'):
        try:
            raw = label.encode('idna')
        except UnicodeError as e:
            raise DnsError(f"无效的域名: {name}") from e
        if not raw or len(raw) > 63:
            raise DnsError(f"无效的域名: {name}")
        encoded += struct.pack('>B', len(raw)) + raw
    return encoded + b'\x00'


def build_query(name: str, qtype: int, query_id: int) -> bytes:
    """构造一个带递归标志的单问题查询报文"""
    header = struct.pack(HEADER_FORMAT, query_id, FLAG_RD, 1, 0, 0, 0)
    return header + encode_name(name) + struct.pack('>HH', qtype, QCLASS_IN)


def _skip_name(data: bytes, offset: int) -> int:
    """跳过报文中的域名（支持压缩指针），返回其后的偏移"""
    while True:
        length = data[offset]
        if length == 0:
            return offset + 1
        if length & 0xC0 == 0xC0:
            return offset + 2
        offset += 1 + length


def parse_response(data: bytes, query_id: int, qtype: int) -> List[IPAddress]:
    """
    解析查询响应，返回与查询类型匹配的地址记录

    Raises:
        DnsError: ID 不匹配、不是响应报文、RCODE 非零或报文损坏
    """
    try:
        rid, flags, qdcount, ancount, _, _ = struct.unpack(HEADER_FORMAT, data[:HEADER_SIZE])
        if rid != query_id:
            raise DnsError(f"响应 ID 不匹配: {rid} != {query_id}")
        if not flags & FLAG_QR:
            raise DnsError("收到的不是响应报文")
        rcode = flags & RCODE_MASK
        if rcode != 0:
            raise DnsError(f"DNS 服务器返回错误码 {rcode}")

        offset = HEADER_SIZE
        for _ in range(qdcount):
            offset = _skip_name(data, offset) + 4

        addresses: List[IPAddress] = []
        for _ in range(ancount):
            offset = _skip_name(data, offset)
            rtype, rclass, _, rdlength = struct.unpack('>HHIH', data[offset:offset + 10])
            offset += 10
            rdata = data[offset:offset + rdlength]
            if len(rdata) != rdlength:
                raise DnsError("应答记录被截断")
            offset += rdlength
            # CNAME 等其他记录跳过，递归解析器会在同一应答中给出最终地址
            if rtype != qtype or rclass != QCLASS_IN:
                continue
            if rtype == QTYPE_A and rdlength == 4:
                addresses.append(ipaddress.IPv4Address(rdata))
            elif rtype == QTYPE_AAAA and rdlength == 16:
                addresses.append(ipaddress.IPv6Address(rdata))
        return addresses
    except (struct.error, IndexError) as e:
        raise DnsError(f"DNS 响应报文损坏: {e}") from e


class DnsClient:
    """
    通过 Dialer 发送 UDP 查询的 DNS 客户端

    Attributes:
        dialer: 拨号器，UDP 拨号会被改写到配置的 DNS 服务器
    """

    def __init__(self, dialer: Dialer):
        self.dialer = dialer

    async def query(self, name: str, qtype: int) -> List[IPAddress]:
        """发送一次查询并等待匹配的响应（超时由调用方控制）"""
        query_id = struct.unpack('>H', os.urandom(2))[0]
        packet = build_query(name, qtype, query_id)
        loop = asyncio.get_running_loop()

        sock = await self.dialer.dial('udp')
        try:
            await loop.sock_sendall(sock, packet)
            while True:
                data = await loop.sock_recv(sock, MAX_MESSAGE_SIZE)
                if len(data) >= 2 and struct.unpack('>H', data[:2])[0] != query_id:
                    # 迟到的或伪造的响应，继续等待
                    logger.debug(f"DNS: 丢弃 ID 不匹配的响应 ({name})")
                    continue
                return parse_response(data, query_id, qtype)
        finally:
            sock.close()

    async def lookup_ip(self, name: str) -> List[IPAddress]:
        """
        并发查询 A 和 AAAA 记录

        Returns:
            地址列表，IPv4 在前

        Raises:
            两个查询都失败时抛出第一个查询的异常
        """
        results: Tuple = await asyncio.gather(
            self.query(name, QTYPE_A),
            self.query(name, QTYPE_AAAA),
            return_exceptions=True,
        )
        addresses: List[IPAddress] = []
        errors = []
        for result in results:
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                errors.append(result)
            else:
                addresses.extend(result)
        if len(errors) == len(results):
            raise errors[0]
        for error in errors:
            logger.debug(f"DNS: {name} 部分查询失败: {error}")
        return addresses

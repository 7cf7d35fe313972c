"""
DNS 存根解析器测试

测试内容:
1. 查询报文构造
2. 响应解析（压缩指针、CNAME 跳过、错误码、报文截断）
3. 通过本地 UDP 假 DNS 服务器完成 A/AAAA 查询
"""

import asyncio
import ipaddress
import struct

import pytest

from hideme_rest.dialer import Dialer
from hideme_rest.dns import (
    QTYPE_A, QTYPE_AAAA, DnsClient, build_query, encode_name, parse_response,
)
from hideme_rest.errors import DnsError


def make_response(query: bytes, answers, rcode=0):
    """
    根据查询报文构造响应

    参数:
        query: 查询报文
        answers: [(类型, rdata)] 列表，名称统一使用指向问题的压缩指针
        rcode: 响应码
    """
    query_id = struct.unpack('>H', query[:2])[0]
    header = struct.pack('>HHHHHH', query_id, 0x8180 | rcode, 1, len(answers), 0, 0)
    body = b''
    for rtype, rdata in answers:
        body += b'\xc0\x0c' + struct.pack('>HHIH', rtype, 1, 300, len(rdata)) + rdata
    return header + query[12:] + body


class FakeDnsServer(asyncio.DatagramProtocol):
    """按查询类型返回固定记录的 UDP DNS 服务器"""

    def __init__(self, records, rcode=0):
        self.records = records
        self.rcode = rcode
        self.queries = []

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        qtype = struct.unpack('>H', data[-4:-2])[0]
        self.queries.append(qtype)
        answers = [(qtype, record) for record in self.records.get(qtype, [])]
        self.transport.sendto(make_response(data, answers, self.rcode), addr)


async def start_fake_dns(records, rcode=0):
    loop = asyncio.get_running_loop()
    transport, protocol = await loop.create_datagram_endpoint(
        lambda: FakeDnsServer(records, rcode), local_addr=('127.0.0.1', 0))
    port = transport.get_extra_info('sockname')[1]
    return transport, protocol, port


def test_build_query():
    query = build_query("nl.hideservers.net", QTYPE_A, 0x1234)
    query_id, flags, qdcount, ancount, nscount, arcount = struct.unpack('>HHHHHH', query[:12])
    assert (query_id, flags, qdcount, ancount, nscount, arcount) == (0x1234, 0x0100, 1, 0, 0, 0)
    assert query[12:] == b'\x02nl\x0bhideservers\x03net\x00' + struct.pack('>HH', QTYPE_A, 1)


def test_encode_name_rejects_bad_labels():
    with pytest.raises(DnsError):
        encode_name("bad..name")
    with pytest.raises(DnsError):
        encode_name("a" * 64 + ".net")


def test_parse_response_skips_cname():
    query = build_query("nl.hideservers.net", QTYPE_A, 7)
    cname = b'\x03any\xc0\x0c'
    response = make_response(query, [(5, cname), (QTYPE_A, bytes([203, 0, 113, 9]))])
    assert parse_response(response, 7, QTYPE_A) == [ipaddress.IPv4Address("203.0.113.9")]


def test_parse_response_aaaa():
    query = build_query("nl.hideservers.net", QTYPE_AAAA, 9)
    address = ipaddress.IPv6Address("2001:db8::9")
    response = make_response(query, [(QTYPE_AAAA, address.packed)])
    assert parse_response(response, 9, QTYPE_AAAA) == [address]


def test_parse_response_errors():
    query = build_query("nl.hideservers.net", QTYPE_A, 11)
    with pytest.raises(DnsError):
        parse_response(make_response(query, [], rcode=3), 11, QTYPE_A)
    with pytest.raises(DnsError):
        parse_response(make_response(query, []), 12, QTYPE_A)
    with pytest.raises(DnsError):
        parse_response(query, 11, QTYPE_A)  # 不是响应报文
    truncated = make_response(query, [(QTYPE_A, bytes([1, 2, 3, 4]))])[:-2]
    with pytest.raises(DnsError):
        parse_response(truncated, 11, QTYPE_A)


@pytest.mark.asyncio
async def test_lookup_ip_through_dialer():
    records = {QTYPE_A: [bytes([198, 51, 100, 7])]}
    transport, protocol, port = await start_fake_dns(records)
    try:
        client = DnsClient(Dialer(dns_servers=[f"127.0.0.1:{port}"]))
        addresses = await asyncio.wait_for(client.lookup_ip("nl.hideservers.net"), 5)
    finally:
        transport.close()
    assert addresses == [ipaddress.IPv4Address("198.51.100.7")]
    assert sorted(protocol.queries) == [QTYPE_A, QTYPE_AAAA]


@pytest.mark.asyncio
async def test_lookup_ip_ipv4_first():
    records = {
        QTYPE_A: [bytes([198, 51, 100, 7])],
        QTYPE_AAAA: [ipaddress.IPv6Address("2001:db8::7").packed],
    }
    transport, _, port = await start_fake_dns(records)
    try:
        client = DnsClient(Dialer(dns_servers=[f"127.0.0.1:{port}"]))
        addresses = await asyncio.wait_for(client.lookup_ip("nl.hideservers.net"), 5)
    finally:
        transport.close()
    assert addresses == [ipaddress.IPv4Address("198.51.100.7"), ipaddress.IPv6Address("2001:db8::7")]


@pytest.mark.asyncio
async def test_lookup_ip_nxdomain():
    transport, _, port = await start_fake_dns({}, rcode=3)
    try:
        client = DnsClient(Dialer(dns_servers=[f"127.0.0.1:{port}"]))
        with pytest.raises(DnsError):
            await asyncio.wait_for(client.lookup_ip("missing.hideservers.net"), 5)
    finally:
        transport.close()

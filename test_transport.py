"""
证书固定传输层测试

在本地启动 TLS 1.3 + HTTP/2 服务器（h2 状态机），验证：
1. SSL 上下文：TLS 1.3 下限、无效 CA 文件报 ConfigError
2. 握手完成后立即校验指纹，失败时不发送任何请求数据
3. 只协商 h2，使用 sni_hostname 扩展作为 TLS 服务器名
4. 端到端请求经由 Dialer 和 PinnedTransport 完成
5. 连接失败映射为 httpx.ConnectError
6. 请求不限时（rest_timeout=0）也有握手和等待响应的单阶段上限
"""

import asyncio
import socket
import ssl

import h2.config
import h2.connection
import h2.events
import httpx
import pytest

from hideme_rest import transport
from hideme_rest.client import RestClient
from hideme_rest.config import Config
from hideme_rest.dialer import Dialer
from hideme_rest.errors import AppUpdateRequiredError, BadPinError, ConfigError
from hideme_rest.pins import PinVerifier, common_name, public_key_pin
from hideme_rest.transport import PinnedBackend, create_ssl_context

KEY = bytes(range(32))


class H2Server:
    """
    最小的 HTTP/2 测试服务器

    对每个请求返回固定的状态码和正文，并记录请求头、请求正文和 SNI。
    stall 为真时收下请求但永不响应。
    """

    def __init__(self, ssl_context, status=200, body=b'{}', stall=False):
        self.status = status
        self.stall = stall
        self.body = body
        self.requests = []
        self.server_names = []
        ssl_context.sni_callback = self._on_sni
        self.ssl_context = ssl_context
        self.server = None

    def _on_sni(self, ssl_object, server_name, context):
        self.server_names.append(server_name)

    async def start(self):
        self.server = await asyncio.start_server(self.handle, '127.0.0.1', 0, ssl=self.ssl_context)
        return self.server.sockets[0].getsockname()[1]

    async def handle(self, reader, writer):
        conn = h2.connection.H2Connection(config=h2.config.H2Configuration(client_side=False))
        conn.initiate_connection()
        writer.write(conn.data_to_send())
        bodies = {}
        headers = {}
        try:
            await writer.drain()
            while True:
                data = await reader.read(65535)
                if not data:
                    break
                events = conn.receive_data(data)
                for event in events:
                    if isinstance(event, h2.events.RequestReceived):
                        headers[event.stream_id] = dict(event.headers)
                        bodies[event.stream_id] = b''
                    elif isinstance(event, h2.events.DataReceived):
                        bodies[event.stream_id] += event.data
                        conn.acknowledge_received_data(event.flow_controlled_length, event.stream_id)
                    elif isinstance(event, h2.events.StreamEnded):
                        self.requests.append((headers[event.stream_id], bodies[event.stream_id]))
                        if self.stall:
                            continue
                        conn.send_headers(event.stream_id, [
                            (':status', str(self.status)),
                            ('content-type', 'application/json'),
                            ('content-length', str(len(self.body))),
                        ])
                        conn.send_data(event.stream_id, self.body, end_stream=True)
                writer.write(conn.data_to_send())
                await writer.drain()
                if any(isinstance(event, h2.events.ConnectionTerminated) for event in events):
                    break
        except (OSError, ssl.SSLError):
            pass
        finally:
            writer.close()

    async def close(self):
        self.server.close()
        await self.server.wait_closed()


def pins_for_ca(tls_files):
    ca_cert = tls_files['ca_cert']
    return {common_name(ca_cert): public_key_pin(ca_cert)}


def closed_port():
    placeholder = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    placeholder.bind(("127.0.0.1", 0))
    port = placeholder.getsockname()[1]
    placeholder.close()
    return port


def test_ssl_context_requires_tls13(tls_files):
    context = create_ssl_context(tls_files['ca_file'])
    assert context.minimum_version == ssl.TLSVersion.TLSv1_3
    assert context.verify_mode == ssl.CERT_REQUIRED
    assert context.check_hostname


def test_ssl_context_bad_ca(tmp_path):
    with pytest.raises(ConfigError):
        create_ssl_context(str(tmp_path / "missing.pem"))
    garbage = tmp_path / "garbage.pem"
    garbage.write_text("-----BEGIN CERTIFICATE-----\nnot a certificate\n-----END CERTIFICATE-----\n")
    with pytest.raises(ConfigError):
        create_ssl_context(str(garbage))


@pytest.mark.asyncio
async def test_start_tls_with_authorized_pin(tls_files, server_ssl_context):
    server = H2Server(server_ssl_context)
    port = await server.start()
    try:
        backend = PinnedBackend(Dialer(), PinVerifier(pins_for_ca(tls_files)))
        stream = await backend.connect_tcp('127.0.0.1', port, timeout=5)
        stream = await stream.start_tls(
            create_ssl_context(tls_files['ca_file']), server_hostname='any.hideservers.net', timeout=5)
        ssl_object = stream.get_extra_info('ssl_object')
        assert ssl_object.version() == 'TLSv1.3'
        assert ssl_object.selected_alpn_protocol() == 'h2'
        await stream.aclose()
    finally:
        await server.close()
    assert server.server_names == ['any.hideservers.net']


@pytest.mark.asyncio
async def test_start_tls_rejects_unpinned_ca(tls_files, server_ssl_context):
    server = H2Server(server_ssl_context)
    port = await server.start()
    try:
        backend = PinnedBackend(Dialer(), PinVerifier({}))
        stream = await backend.connect_tcp('127.0.0.1', port, timeout=5)
        with pytest.raises(BadPinError) as excinfo:
            await stream.start_tls(
                create_ssl_context(tls_files['ca_file']), server_hostname='any.hideservers.net', timeout=5)
        assert excinfo.value.common_name == 'Hide.Me Test Root CA'
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_client_end_to_end(tls_files, server_ssl_context):
    server = H2Server(server_ssl_context, body=b'true')
    port = await server.start()
    config = Config(host='127.0.0.1', port=port, ca=tls_files['ca_file'], rest_timeout=5.0)
    try:
        async with RestClient(config, pins=pins_for_ca(tls_files)) as client:
            await client.resolve()
            await client.disconnect(b'session')
            await client.disconnect(b'session')
    finally:
        await server.close()

    assert len(server.requests) == 2
    headers, body = server.requests[0]
    assert headers[b':method'] == b'POST'
    assert headers[b':path'] == b'/v1.0.0/disconnect'
    assert headers[b'user-agent'] == b'HIDE.ME.LINUX.CLI-0.9.3'
    assert b'"sessionToken": "c2Vzc2lvbg=="' in body
    # 不复用连接：每个请求都重新握手
    assert server.server_names == ['hideservers.net', 'hideservers.net']


@pytest.mark.asyncio
async def test_client_rejects_server_outside_pin_table(tls_files, server_ssl_context):
    server = H2Server(server_ssl_context)
    port = await server.start()
    config = Config(host='127.0.0.1', port=port, ca=tls_files['ca_file'], rest_timeout=5.0)
    try:
        async with RestClient(config) as client:
            await client.resolve()
            with pytest.raises(BadPinError):
                await client.connect(KEY)
    finally:
        await server.close()
    assert server.requests == []


@pytest.mark.asyncio
async def test_client_error_status_over_http2(tls_files, server_ssl_context):
    server = H2Server(server_ssl_context, status=403, body=b'')
    port = await server.start()
    config = Config(host='127.0.0.1', port=port, ca=tls_files['ca_file'], rest_timeout=5.0)
    try:
        async with RestClient(config, pins=pins_for_ca(tls_files)) as client:
            await client.resolve()
            with pytest.raises(AppUpdateRequiredError):
                await client.connect(KEY)
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_connection_refused():
    config = Config(host='127.0.0.1', port=closed_port(), rest_timeout=5.0)
    async with RestClient(config) as client:
        await client.resolve()
        with pytest.raises(httpx.ConnectError):
            await client.connect(KEY)


@pytest.mark.asyncio
async def test_handshake_stall_times_out_without_rest_timeout(tls_files, monkeypatch):
    monkeypatch.setattr(transport, 'TLS_HANDSHAKE_TIMEOUT', 0.2)

    async def silent(reader, writer):
        # 收下 ClientHello 但不回应
        await reader.read()
        writer.close()

    server = await asyncio.start_server(silent, '127.0.0.1', 0)
    port = server.sockets[0].getsockname()[1]
    config = Config(host='127.0.0.1', port=port, ca=tls_files['ca_file'], rest_timeout=0)
    async with server:
        async with RestClient(config, pins=pins_for_ca(tls_files)) as client:
            await client.resolve()
            with pytest.raises(httpx.ConnectTimeout):
                await asyncio.wait_for(client.connect(KEY), 5)


@pytest.mark.asyncio
async def test_response_stall_times_out_without_rest_timeout(tls_files, server_ssl_context, monkeypatch):
    monkeypatch.setattr(transport, 'RESPONSE_HEADER_TIMEOUT', 0.2)
    server = H2Server(server_ssl_context, stall=True)
    port = await server.start()
    config = Config(host='127.0.0.1', port=port, ca=tls_files['ca_file'], rest_timeout=0)
    try:
        async with RestClient(config, pins=pins_for_ca(tls_files)) as client:
            await client.resolve()
            with pytest.raises(httpx.ReadTimeout):
                await asyncio.wait_for(client.connect(KEY), 5)
    finally:
        await server.close()
    assert len(server.requests) == 1

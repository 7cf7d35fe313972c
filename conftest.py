"""
测试公共夹具

使用 P-256 密钥生成测试证书，速度比 RSA 快得多。
"""

import ssl
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.x509.oid import NameOID
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec


def make_cert(common_name, ca, issuer_cert=None, issuer_key=None, san=None):
    """
    生成证书

    参数:
        common_name: 主体通用名称
        ca: 是否为 CA 证书
        issuer_cert: 签发者证书，None 表示自签名
        issuer_key: 签发者私钥
        san: 可选的 DNS SAN 列表

    返回:
        (证书, 私钥)
    """
    key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "hide.me test"),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])
    now = datetime.now(timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer_cert.subject if issuer_cert is not None else subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
    )
    if issuer_key is not None:
        # 严格校验模式（VERIFY_X509_STRICT）要求非自签名证书带 AKI
        builder = builder.add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(issuer_key.public_key()),
            critical=False,
        )
    if ca:
        builder = builder.add_extension(
            x509.KeyUsage(
                digital_signature=True, content_commitment=False, key_encipherment=False,
                data_encipherment=False, key_agreement=False, key_cert_sign=True,
                crl_sign=True, encipher_only=False, decipher_only=False,
            ),
            critical=True,
        )
    if san:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(name) for name in san]),
            critical=False,
        )
    certificate = builder.sign(issuer_key if issuer_key is not None else key, hashes.SHA256())
    return certificate, key


@pytest.fixture
def cert_factory():
    return make_cert


@pytest.fixture
def tls_files(tmp_path):
    """
    生成一套 CA + 服务器证书并写入临时目录

    返回:
        字典: ca_cert, ca_file, cert_file, key_file
    """
    ca_cert, ca_key = make_cert("Hide.Me Test Root CA", ca=True)
    server_cert, server_key = make_cert(
        "any.hideservers.net", ca=False, issuer_cert=ca_cert, issuer_key=ca_key,
        san=["hideservers.net", "*.hideservers.net"],
    )

    ca_file = tmp_path / "ca.pem"
    ca_file.write_bytes(ca_cert.public_bytes(serialization.Encoding.PEM))
    cert_file = tmp_path / "server.crt"
    cert_file.write_bytes(server_cert.public_bytes(serialization.Encoding.PEM))
    key_file = tmp_path / "server.key"
    key_file.write_bytes(server_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ))
    return {
        'ca_cert': ca_cert,
        'ca_file': str(ca_file),
        'cert_file': str(cert_file),
        'key_file': str(key_file),
    }


@pytest.fixture
def server_ssl_context(tls_files):
    """TLS 1.3 服务端上下文，只提供 h2"""
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_3
    context.load_cert_chain(tls_files['cert_file'], tls_files['key_file'])
    context.set_alpn_protocols(['h2'])
    return context

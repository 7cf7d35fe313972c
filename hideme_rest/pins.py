"""
证书公钥固定（Public Key Pinning）

每次 TLS 握手完成后，对标准证书链校验已经通过的证书链再做一次指纹检查：
链中每一张 CA 证书的 通用名称(CN) 和 SubjectPublicKeyInfo 的 SHA-256 指纹
必须同时出现在授权表中，否则整个连接被拒绝。

指纹格式:
    base64( sha256( DER 编码的 SubjectPublicKeyInfo ) )
"""

import base64
import hashlib
import logging
from types import MappingProxyType
from typing import Iterable, List, Mapping

from cryptography import x509
from cryptography.x509.oid import NameOID
from cryptography.hazmat.primitives import serialization

from .errors import BadPinError

logger = logging.getLogger('hideme-rest-pins')

# 授权的 CA 证书: 通用名称 -> 公钥指纹
AUTHORIZED_PINS: Mapping[str, str] = MappingProxyType({
    "Hide.Me Root CA": "AdKh8rXi68jeqv5kEzF4wJ9M2R89gFuMILRQ1uwADQI=",
    "Hide.Me Server CA #1": "CsEyDelMHMPh9qLGgeQn8sJwdUwvc+fCMhOU9Ne5PbU=",
    "DigiCert Global Root CA": "r/mIkG3eEpVdm+u/ko/cwxzOMo1bk4TyHIlByibiA5E=",
    "DigiCert TLS RSA SHA256 2020 CA1": "RQeZkB42znUfsDIIFWIRiYEcKl7nHwNFwWCrnMMJbVc=",
})


def public_key_pin(certificate: x509.Certificate) -> str:
    """计算证书公钥指纹"""
    spki = certificate.public_key().public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return base64.b64encode(hashlib.sha256(spki).digest()).decode('ascii')


def common_name(certificate: x509.Certificate) -> str:
    """获取证书主体的通用名称，没有 CN 时返回空字符串"""
    attributes = certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    if not attributes:
        return ''
    return str(attributes[0].value)


def is_ca(certificate: x509.Certificate) -> bool:
    """判断证书是否为 CA 证书（BasicConstraints ca=True）"""
    try:
        constraints = certificate.extensions.get_extension_for_class(x509.BasicConstraints)
    except x509.ExtensionNotFound:
        return False
    return constraints.value.ca


class PinVerifier:
    """
    证书指纹校验器

    授权表在构造时固定，之后只读；校验过程除日志外没有副作用，
    可以被多个并发握手同时调用。

    Attributes:
        pins: 通用名称 -> 公钥指纹 的只读映射
    """

    def __init__(self, pins: Mapping[str, str] = AUTHORIZED_PINS):
        self.pins = MappingProxyType(dict(pins))

    def __call__(self, verified_chains: Iterable[List[x509.Certificate]]) -> None:
        self.verify(verified_chains)

    def verify(self, verified_chains: Iterable[List[x509.Certificate]]) -> None:
        """
        校验所有已验证的证书链

        Args:
            verified_chains: 证书链列表，每条链为 x509.Certificate 列表（叶子证书在前）

        Raises:
            BadPinError: 任意一张 CA 证书的 (CN, 指纹) 不在授权表中
        """
        for chain in verified_chains:
            for certificate in chain:
                # 叶子证书已由标准证书链校验确认，这里只检查 CA
                if not is_ca(certificate):
                    continue
                name = common_name(certificate)
                pin = public_key_pin(certificate)
                if self.pins.get(name) == pin:
                    logger.info(f"Pins: {name} 指纹校验通过")
                    continue
                logger.error(f"Pins: {name} 指纹校验失败")
                raise BadPinError(name)

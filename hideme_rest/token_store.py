"""
访问令牌存储

令牌在内存中是原始字节，在磁盘上是标准 base64 文本。
- 启动时从文件加载，读取或解码失败视为"没有令牌"（首次运行的正常状态）
- 刷新成功后立即写回文件，权限为仅所有者可读写（0600）
"""

import base64
import binascii
import logging
import os
from typing import Optional

from .errors import DecodeError, TokenPersistError

logger = logging.getLogger('hideme-rest-token')


def decode_token(text: str) -> bytes:
    """严格的标准 base64 解码"""
    try:
        return base64.b64decode(text.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecodeError(f"访问令牌不是有效的 base64: {e}") from e


class TokenStore:
    """
    访问令牌存储

    Attributes:
        path: 令牌文件路径，空字符串或 None 表示不持久化
        token: 令牌字节，没有令牌时为 None
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path or None
        self.token: Optional[bytes] = None
        if self.path:
            self.token = self._load()

    def _load(self) -> Optional[bytes]:
        try:
            with open(self.path, 'r', encoding='ascii') as f:
                text = f.read()
            token = decode_token(text)
        except (OSError, UnicodeDecodeError, DecodeError) as e:
            logger.info(f"AccessToken: 未从 {self.path} 加载令牌: {e}")
            return None
        if not token:
            return None
        logger.debug(f"AccessToken: 已从 {self.path} 加载令牌")
        return token

    def have(self) -> bool:
        """是否持有访问令牌"""
        return self.token is not None

    def update(self, text: str):
        """
        用服务器下发的 base64 文本更新令牌

        先解码，解码失败时内存状态保持不变；解码成功后更新内存，
        再写入文件。

        Raises:
            DecodeError: 文本不是有效的 base64
            TokenPersistError: 写文件失败（内存中的令牌已更新）
        """
        self.token = decode_token(text)
        if not self.path:
            return
        try:
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, 'w', encoding='ascii') as f:
                # 文件已存在时 O_CREAT 的权限不生效，显式收紧
                os.fchmod(f.fileno(), 0o600)
                f.write(text)
        except OSError as e:
            logger.error(f"AccessToken: 写入 {self.path} 失败: {e}")
            raise TokenPersistError(f"failed to write {self.path}: {e}") from e
        logger.info(f"AccessToken: 令牌已保存到 {self.path}")

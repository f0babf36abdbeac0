"""
已签发证书的可用性校验。

所有失败都折叠为“不可用”，只记录日志不向上抛出。
"""

from typing import Tuple

from loguru import logger

from .core import validate_key_pair
from .errors import CertificateValidationError, ControlPlaneError, TrustedRootsError
from .interfaces import SecretStore, TrustedRoots


class CertificateValidator:
    def __init__(self, secret_store: SecretStore, trusted_roots: TrustedRoots):
        self.secret_store = secret_store
        self.trusted_roots = trusted_roots

    async def load(self, namespace: str, secret_name: str) -> Tuple[bytes, bytes] | None:
        """读取 Secret 中的证书与私钥；不存在返回 None。"""
        secret = await self.secret_store.get(namespace, secret_name)
        if secret is None:
            return None
        return secret.cert, secret.key

    async def is_usable(self, namespace: str, secret_name: str) -> bool:
        """Secret 存在且其中的证书链、用途、有效期与私钥全部校验通过时返回 True。"""
        try:
            loaded = await self.load(namespace, secret_name)
        except ControlPlaneError as e:
            logger.error(f"读取 Secret [{namespace}/{secret_name}] 失败: {e}")
            return False
        if loaded is None:
            logger.debug(f"Secret [{namespace}/{secret_name}] 不存在")
            return False
        cert_pem, key_pem = loaded

        try:
            roots = self.trusted_roots.read()
        except TrustedRootsError as e:
            logger.error(f"certificate validation failed for [{namespace}/{secret_name}], error loading CAs, {e}")
            return False

        try:
            validate_key_pair(cert_pem, key_pem, roots)
        except CertificateValidationError as e:
            logger.error(f"certificate validation failed for [{namespace}/{secret_name}], {e}")
            return False
        return True

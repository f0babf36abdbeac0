"""
本地开发用的协作者实现：内存 Secret 存储 + 自管开发 CA 的签发方。
不依赖集群，便于在开发环境与测试中跑通完整的签发流程。
"""

import asyncio
import os
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncIterator, Dict, List, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PrivateFormat,
    NoEncryption,
)
from cryptography.x509.oid import NameOID, ExtendedKeyUsageOID
from loguru import logger

from src.server.config import config
from .errors import ControlPlaneError, ResourceConflictError
from .schemas import (
    CONDITION_APPROVED,
    CONDITION_DENIED,
    USAGE_CLIENT_AUTH,
    USAGE_SERVER_AUTH,
    CSRCondition,
    CertificateSigningRequest,
    CredentialSecret,
    WatchEvent,
)

_USAGE_TO_EKU = {
    USAGE_CLIENT_AUTH: ExtendedKeyUsageOID.CLIENT_AUTH,
    USAGE_SERVER_AUTH: ExtendedKeyUsageOID.SERVER_AUTH,
}


def _get_dev_ca_dir() -> Path:
    """
    获取开发用 CA 的存储目录。
    优先使用配置 dev_ca_dir（或环境变量 DEV_CA_DIR），其次使用与当前模块同级的 dev_ca 目录。
    """
    configured = os.environ.get("DEV_CA_DIR") or config.dev_ca_dir
    if configured:
        return Path(configured)
    return Path(__file__).resolve().parent / "dev_ca"


class DevCertificateAuthority:
    """开发用自签 CA，私钥与证书持久化在 ca_dir 下。"""

    def __init__(self, ca_dir: str | Path | None = None, validity_days: int = 365):
        self.ca_dir = Path(ca_dir) if ca_dir else _get_dev_ca_dir()
        self.key_path = self.ca_dir / "ca_key.pem"
        self.cert_path = self.ca_dir / "ca_cert.pem"
        self.validity_days = validity_days
        self._ca_key, self._ca_cert = self._load_or_create()

    @property
    def certificate(self) -> x509.Certificate:
        return self._ca_cert

    def _load_or_create(self) -> Tuple[ec.EllipticCurvePrivateKey, x509.Certificate]:
        """加载或创建开发用自签 CA。"""
        self.ca_dir.mkdir(parents=True, exist_ok=True)

        if self.key_path.exists() and self.cert_path.exists():
            ca_key = serialization.load_pem_private_key(self.key_path.read_bytes(), password=None)
            ca_cert = x509.load_pem_x509_certificate(self.cert_path.read_bytes())
            return ca_key, ca_cert

        # 生成新的 CA 私钥与自签根证书
        ca_key = ec.generate_private_key(ec.SECP256R1())
        subject = x509.Name(
            [
                x509.NameAttribute(NameOID.ORGANIZATION_NAME, config.dev_ca_organization_name),
                x509.NameAttribute(NameOID.COMMON_NAME, config.dev_ca_common_name),
            ]
        )
        now = datetime.now(timezone.utc)
        ca_cert = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(subject)
            .public_key(ca_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(minutes=1))
            .not_valid_after(now + timedelta(days=3650))
            .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    key_encipherment=False,
                    key_cert_sign=True,
                    crl_sign=True,
                    content_commitment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .sign(private_key=ca_key, algorithm=hashes.SHA256())
        )

        self.key_path.write_bytes(
            ca_key.private_bytes(
                encoding=Encoding.PEM,
                format=PrivateFormat.PKCS8,
                encryption_algorithm=NoEncryption(),
            )
        )
        self.cert_path.write_bytes(ca_cert.public_bytes(Encoding.PEM))
        logger.info(f"已创建开发 CA: {self.cert_path}")
        return ca_key, ca_cert

    def sign(self, request_pem: bytes, usages: List[str]) -> bytes:
        """
        使用开发 CA 对 PEM CSR 签名，返回 PEM 证书。
        扩展用途取自 CSR 资源声明的 usages；SAN 从 CSR 扩展中复制。
        :raises ValueError: CSR 无法解析或签名校验失败。
        """
        csr = x509.load_pem_x509_csr(request_pem)
        if not csr.is_signature_valid:
            raise ValueError("CSR 签名无效")

        now = datetime.now(timezone.utc)
        builder = (
            x509.CertificateBuilder()
            .subject_name(csr.subject)
            .issuer_name(self._ca_cert.subject)
            .public_key(csr.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(minutes=1))
            .not_valid_after(now + timedelta(days=self.validity_days))
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    key_encipherment=True,
                    key_cert_sign=False,
                    crl_sign=False,
                    content_commitment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
        )
        ekus = [_USAGE_TO_EKU[u] for u in usages if u in _USAGE_TO_EKU]
        if ekus:
            builder = builder.add_extension(x509.ExtendedKeyUsage(ekus), critical=False)

        # 复制 CSR 中请求的 SAN
        try:
            san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName)
            builder = builder.add_extension(san.value, critical=san.critical)
        except x509.ExtensionNotFound:
            pass

        cert = builder.sign(private_key=self._ca_key, algorithm=hashes.SHA256())
        return cert.public_bytes(Encoding.PEM)


class InMemorySecretStore:
    """进程内的 Secret 存储。"""

    def __init__(self):
        self._secrets: Dict[Tuple[str, str], CredentialSecret] = {}

    async def get(self, namespace: str, name: str) -> CredentialSecret | None:
        secret = self._secrets.get((namespace, name))
        return secret.model_copy(deep=True) if secret is not None else None

    async def create(self, secret: CredentialSecret) -> None:
        key = (secret.namespace, secret.name)
        if key in self._secrets:
            raise ResourceConflictError(f'secrets "{secret.name}" already exists', status_code=409)
        self._secrets[key] = secret.model_copy(deep=True)


class LocalSigningAuthority:
    """
    进程内的 CSR 资源存储与签发方。
    auto_sign 为 True 时，CSR 一旦被审批即由开发 CA 签发；否则需要显式调用 sign()。
    """

    def __init__(self, ca: DevCertificateAuthority, *, auto_sign: bool = True):
        self.ca = ca
        self.auto_sign = auto_sign
        self._requests: Dict[str, CertificateSigningRequest] = {}
        self._watchers: Dict[str, List[asyncio.Queue]] = {}
        self._resource_version = 0

    def _bump(self, csr: CertificateSigningRequest) -> None:
        self._resource_version += 1
        csr.metadata.resource_version = str(self._resource_version)

    def _notify(self, event_type: str, csr: CertificateSigningRequest) -> None:
        for queue in self._watchers.get(csr.name, []):
            queue.put_nowait(WatchEvent(type=event_type, object=csr.model_copy(deep=True)))

    def _require(self, name: str) -> CertificateSigningRequest:
        csr = self._requests.get(name)
        if csr is None:
            raise ControlPlaneError(f'certificatesigningrequests "{name}" not found', status_code=404)
        return csr

    async def get_request(self, name: str) -> CertificateSigningRequest | None:
        csr = self._requests.get(name)
        return csr.model_copy(deep=True) if csr is not None else None

    async def create_request(self, csr: CertificateSigningRequest) -> CertificateSigningRequest:
        if csr.name in self._requests:
            raise ResourceConflictError(f'certificatesigningrequests "{csr.name}" already exists', status_code=409)
        stored = csr.model_copy(deep=True)
        stored.metadata.uid = str(uuid.uuid4())
        stored.status.conditions = []
        stored.status.certificate = None
        self._bump(stored)
        self._requests[stored.name] = stored
        self._notify("ADDED", stored)
        return stored.model_copy(deep=True)

    async def delete_request(self, name: str) -> None:
        csr = self._require(name)
        del self._requests[name]
        self._notify("DELETED", csr)

    async def update_approval(self, csr: CertificateSigningRequest) -> CertificateSigningRequest:
        stored = self._require(csr.name)
        if csr.metadata.uid and csr.metadata.uid != stored.metadata.uid:
            raise ResourceConflictError(f"CSR {csr.name} uid mismatch", status_code=409)
        stored.status.conditions = [c.model_copy() for c in csr.status.conditions]
        self._bump(stored)
        self._notify("MODIFIED", stored)
        result = stored.model_copy(deep=True)

        latest = stored.latest_condition
        if self.auto_sign and latest is not None and latest.type == CONDITION_APPROVED:
            self.sign(csr.name)
        return result

    def sign(self, name: str) -> None:
        """以开发 CA 签发已审批的 CSR，并推送 MODIFIED 事件。"""
        stored = self._require(name)
        stored.status.certificate = self.ca.sign(stored.spec.request, stored.spec.usages)
        self._bump(stored)
        self._notify("MODIFIED", stored)
        logger.info(f"开发 CA 已签发 CSR: {name}")

    def deny(self, name: str, reason: str = "Denied", message: str = "") -> None:
        stored = self._require(name)
        stored.status.conditions.append(
            CSRCondition(type=CONDITION_DENIED, reason=reason, message=message, last_update_time=datetime.now(timezone.utc))
        )
        self._bump(stored)
        self._notify("MODIFIED", stored)

    async def watch(self, name: str, timeout_seconds: int) -> AsyncIterator[WatchEvent]:
        queue: asyncio.Queue = asyncio.Queue()
        self._watchers.setdefault(name, []).append(queue)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds
        try:
            current = self._requests.get(name)
            if current is not None:
                yield WatchEvent(type="ADDED", object=current.model_copy(deep=True))
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=remaining)
                except asyncio.TimeoutError:
                    return
                yield event
        finally:
            queues = self._watchers.get(name, [])
            if queue in queues:
                queues.remove(queue)
            if not queues:
                self._watchers.pop(name, None)

"""
证书控制器的密码学核心逻辑。
包括生成 RSA 私钥与 CSR、解析 PEM 证书、校验证书链/用途/私钥匹配等。
本模块不做任何 I/O，受信根证书由调用方传入。
"""

import ipaddress
import re
from datetime import datetime, timezone
from typing import List, Sequence, Tuple

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PrivateFormat,
    NoEncryption,
)
from cryptography.x509.oid import NameOID, ExtendedKeyUsageOID
from loguru import logger

from src.server.config import config
from .errors import CertificateValidationError, KeyMaterialError

RSA_KEY_SIZE = 2048
RSA_PUBLIC_EXPONENT = 65537

REQUIRED_EXTENDED_KEY_USAGES = {
    ExtendedKeyUsageOID.CLIENT_AUTH: "client auth",
    ExtendedKeyUsageOID.SERVER_AUTH: "server auth",
}

_PEM_CERT_RE = re.compile(
    rb"-----BEGIN CERTIFICATE-----[\s\S]*?-----END CERTIFICATE-----"
)


def _new_private_key(size: int = RSA_KEY_SIZE) -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=RSA_PUBLIC_EXPONENT, key_size=size)


def _private_key_to_pem(key: rsa.RSAPrivateKey) -> bytes:
    """以 PKCS#1（RSA PRIVATE KEY）格式导出私钥。"""
    return key.private_bytes(
        encoding=Encoding.PEM,
        format=PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=NoEncryption(),
    )


def parse_ip_addresses(ip_list: Sequence[str]) -> List[ipaddress.IPv4Address | ipaddress.IPv6Address]:
    """
    将字符串形式的 IP 列表解析为地址对象。
    :raises KeyMaterialError: 存在无法解析的 IP 字符串时。
    """
    parsed = []
    for ip in ip_list:
        try:
            parsed.append(ipaddress.ip_address(ip.strip()))
        except ValueError:
            raise KeyMaterialError(f"无效的 IP 地址: {ip!r}")
    return parsed


def generate_csr(
    common_name: str, dns_names: Sequence[str], ip_addresses: Sequence[str]
) -> Tuple[bytes, bytes]:
    """
    生成新的 RSA 私钥，并据此构造自签名的 PKCS#10 证书签名请求。
    :param common_name: 证书主体 CN。
    :param dns_names: DNS SAN 列表。
    :param ip_addresses: IP SAN 列表（字符串）。
    :return: (DER 编码的 CSR, PKCS#1 PEM 编码的私钥)。
    :raises KeyMaterialError: 私钥生成或 CSR 构造失败时。
    """
    ip_list = parse_ip_addresses(ip_addresses)

    try:
        private_key = _new_private_key()
    except (ValueError, UnsupportedAlgorithm) as e:
        raise KeyMaterialError(f"生成 RSA 私钥失败: {e}") from e

    subject = x509.Name(
        [
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, config.csr_organization),
            x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, config.csr_organizational_unit),
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        ]
    )
    builder = x509.CertificateSigningRequestBuilder().subject_name(subject)

    sans: List[x509.GeneralName] = [x509.DNSName(name) for name in dns_names]
    sans.extend(x509.IPAddress(ip) for ip in ip_list)
    if sans:
        builder = builder.add_extension(x509.SubjectAlternativeName(sans), critical=False)

    try:
        csr = builder.sign(private_key, hashes.SHA256())
    except (ValueError, TypeError) as e:
        raise KeyMaterialError(f"构造 CSR 失败: {e}") from e

    return csr.public_bytes(Encoding.DER), _private_key_to_pem(private_key)


def encode_csr_pem(csr_der: bytes) -> bytes:
    """将 DER 格式的 CSR 包装为 CERTIFICATE REQUEST PEM 块。"""
    return x509.load_der_x509_csr(csr_der).public_bytes(Encoding.PEM)


def load_pem_certificates(data: bytes) -> List[x509.Certificate]:
    """从一段 PEM 文本中提取所有证书块；无法解析的块会被跳过。"""
    certs = []
    for block in _PEM_CERT_RE.findall(data):
        try:
            certs.append(x509.load_pem_x509_certificate(block))
        except ValueError as e:
            logger.warning(f"跳过无法解析的证书块: {e}")
    return certs


def _is_within_validity(cert: x509.Certificate, now: datetime) -> bool:
    return cert.not_valid_before_utc <= now <= cert.not_valid_after_utc


def _verify_chain(
    cert: x509.Certificate, roots: Sequence[x509.Certificate], now: datetime
) -> x509.Certificate:
    """返回直接签发该证书、且当前有效的受信根；找不到时抛出校验错误。"""
    candidates = [root for root in roots if root.subject == cert.issuer]
    if not candidates:
        raise CertificateValidationError(
            f"certificate signed by unknown authority: {cert.issuer.rfc4514_string()}"
        )
    for root in candidates:
        if not _is_within_validity(root, now):
            continue
        try:
            cert.verify_directly_issued_by(root)
        except (ValueError, TypeError, InvalidSignature, UnsupportedAlgorithm):
            continue
        return root
    raise CertificateValidationError(
        f"certificate signature does not verify against trusted root {cert.issuer.rfc4514_string()}"
    )


def _verify_extended_key_usage(cert: x509.Certificate) -> None:
    try:
        eku = cert.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
    except x509.ExtensionNotFound:
        raise CertificateValidationError("certificate has no extended key usage")
    except (ValueError, x509.DuplicateExtension) as e:
        raise CertificateValidationError(f"can not parse certificate extensions: {e}")
    missing = [name for oid, name in REQUIRED_EXTENDED_KEY_USAGES.items() if oid not in eku]
    if missing:
        names = ", ".join(missing)
        raise CertificateValidationError(f"certificate specifies an incompatible key usage, missing: {names}")


def _public_key_der(public_key) -> bytes:
    return public_key.public_bytes(
        encoding=Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def _verify_key_matches(cert: x509.Certificate, key_pem: bytes) -> None:
    try:
        private_key = serialization.load_pem_private_key(key_pem, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise CertificateValidationError(f"can not load private key: {e}")
    if not isinstance(private_key, rsa.RSAPrivateKey):
        raise CertificateValidationError("private key is not an RSA key")
    if _public_key_der(private_key.public_key()) != _public_key_der(cert.public_key()):
        raise CertificateValidationError("private key does not match public key in certificate")


def validate_key_pair(
    cert_pem: bytes,
    key_pem: bytes,
    roots: Sequence[x509.Certificate],
    now: datetime | None = None,
) -> x509.Certificate:
    """
    校验一对证书与私钥是否可以继续使用。
    检查顺序：PEM 解码 -> 证书链 -> 有效期 -> 扩展用途（client auth 与 server auth）-> 私钥匹配。
    :param cert_pem: PEM 格式证书。
    :param key_pem: PEM 格式私钥。
    :param roots: 受信根证书集合。
    :param now: 校验时刻，默认当前 UTC 时间。
    :return: 解析后的证书对象。
    :raises CertificateValidationError: 任一检查失败时，消息说明原因。
    """
    now = now or datetime.now(timezone.utc)

    if not cert_pem or b"-----BEGIN CERTIFICATE-----" not in cert_pem:
        raise CertificateValidationError("can not decode cert to PEM")
    try:
        cert = x509.load_pem_x509_certificate(cert_pem)
    except ValueError as e:
        raise CertificateValidationError(f"can not parse cert: {e}")

    if not roots:
        raise CertificateValidationError("trusted root set is empty")

    _verify_chain(cert, roots, now)
    if not _is_within_validity(cert, now):
        raise CertificateValidationError(
            f"certificate has expired or is not yet valid: "
            f"not_before={cert.not_valid_before_utc}, not_after={cert.not_valid_after_utc}"
        )
    _verify_extended_key_usage(cert)
    _verify_key_matches(cert, key_pem)
    return cert

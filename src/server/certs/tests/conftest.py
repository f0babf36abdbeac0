"""
证书控制器测试的公共夹具：临时根 CA、按需签发的叶子证书、本地协作者。
"""

from datetime import datetime, timedelta, timezone
from typing import Iterable, Tuple

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from src.server.certs.local import DevCertificateAuthority, InMemorySecretStore, LocalSigningAuthority
from src.server.certs.trust import FileTrustedRoots

BOTH_USAGES = (ExtendedKeyUsageOID.CLIENT_AUTH, ExtendedKeyUsageOID.SERVER_AUTH)


def make_root(common_name: str = "Test Root CA") -> Tuple[ec.EllipticCurvePrivateKey, x509.Certificate]:
    """生成一个自签根 CA。"""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
    return key, cert


def make_leaf(
    root_key,
    root_cert: x509.Certificate,
    *,
    usages: Iterable | None = BOTH_USAGES,
    not_before: datetime | None = None,
    not_after: datetime | None = None,
    leaf_key: rsa.RSAPrivateKey | None = None,
    extra_extensions: Iterable[x509.ExtensionType] = (),
) -> Tuple[bytes, bytes]:
    """用给定根签发 RSA 叶子证书，返回 (证书 PEM, PKCS#1 私钥 PEM)。usages 为 None 时不带 EKU 扩展。"""
    leaf_key = leaf_key or rsa.generate_private_key(public_exponent=65537, key_size=2048)
    now = datetime.now(timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "pd-0.db.svc")]))
        .issuer_name(root_cert.subject)
        .public_key(leaf_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before or now - timedelta(hours=1))
        .not_valid_after(not_after or now + timedelta(days=7))
    )
    if usages is not None:
        builder = builder.add_extension(x509.ExtendedKeyUsage(list(usages)), critical=False)
    for extension in extra_extensions:
        builder = builder.add_extension(extension, critical=False)
    cert = builder.sign(root_key, hashes.SHA256())
    key_pem = leaf_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return cert.public_bytes(serialization.Encoding.PEM), key_pem


@pytest.fixture
def root():
    return make_root()


@pytest.fixture
def dev_ca(tmp_path):
    return DevCertificateAuthority(tmp_path / "dev_ca")


@pytest.fixture
def secret_store():
    return InMemorySecretStore()


@pytest.fixture
def authority(dev_ca):
    return LocalSigningAuthority(dev_ca)


@pytest.fixture
def trusted_roots(dev_ca):
    return FileTrustedRoots(dev_ca.cert_path)

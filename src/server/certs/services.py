"""
证书控制器的业务逻辑层。
此模块按配置装配协作者与控制器，并提供路由层与调用方使用的接口。
"""

from typing import List

from loguru import logger

from src.server.config import config
from .controller import CertControl
from .kube import KubeClient, KubeSecretStore, KubeSigningAuthority
from .local import DevCertificateAuthority, InMemorySecretStore, LocalSigningAuthority
from .schemas import CertificateStatusResponse, EnsureCertificateResponse, IdentityDescriptor
from .trust import FileTrustedRoots

_controller: CertControl | None = None
_kube_client: KubeClient | None = None


def build_controller() -> CertControl:
    """
    按 cert_backend 配置装配控制器。
    - kubernetes: 集群 Secret + certificates.k8s.io CSR，受信根取 trusted_roots_path
    - local: 内存 Secret + 开发 CA，受信根即开发 CA 证书
    """
    global _kube_client
    if config.cert_backend == "local":
        ca = DevCertificateAuthority()
        logger.info(f"使用本地开发后端，CA 目录: {ca.ca_dir}")
        return CertControl(InMemorySecretStore(), LocalSigningAuthority(ca), FileTrustedRoots(ca.cert_path))

    _kube_client = KubeClient()
    logger.info(f"使用 Kubernetes 后端: {_kube_client.base_url}")
    return CertControl(
        KubeSecretStore(_kube_client),
        KubeSigningAuthority(_kube_client),
        FileTrustedRoots(config.trusted_roots_path),
    )


def get_controller() -> CertControl:
    global _controller
    if _controller is None:
        _controller = build_controller()
    return _controller


def set_controller(controller: CertControl | None) -> None:
    global _controller
    _controller = controller


async def close_controller() -> None:
    """释放控制器持有的连接。"""
    global _kube_client
    if _kube_client is not None:
        await _kube_client.aclose()
        _kube_client = None
    set_controller(None)


async def ensure_certificate(
    namespace: str,
    instance: str,
    common_name: str,
    dns_names: List[str],
    ip_addresses: List[str],
    component: str,
    suffix: str,
) -> bool:
    """
    为实例确保可用的身份证书。
    :return: True 表示新签发，False 表示复用已有 Secret。
    :raises CertControlError: 签发失败时。
    """
    identity = IdentityDescriptor(
        namespace=namespace,
        instance=instance,
        common_name=common_name,
        dns_names=dns_names,
        ip_addresses=ip_addresses,
        component=component,
        suffix=suffix,
    )
    return await get_controller().ensure_certificate(identity)


async def ensure_certificate_service(identity: IdentityDescriptor) -> EnsureCertificateResponse:
    """处理确保证书存在的请求。"""
    issued = await get_controller().ensure_certificate(identity)
    return EnsureCertificateResponse(
        csr_name=identity.csr_name,
        secret_name=identity.secret_name,
        issued=issued,
    )


async def certificate_status_service(namespace: str, secret_name: str) -> CertificateStatusResponse:
    """查询 Secret 中的证书是否可用。"""
    usable = await get_controller().check_secret(namespace, secret_name)
    return CertificateStatusResponse(namespace=namespace, secret_name=secret_name, usable=usable)

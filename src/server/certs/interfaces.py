"""
证书控制器依赖的外部协作者接口。

- SecretStore: 按 namespace + name 存取 Credential Secret
- SigningAuthority: 集群 CSR 资源的读写、审批与 watch；审批（approver）能力与提交能力分开声明
- TrustedRoots: 受信根证书集合
"""

from typing import AsyncIterator, List, Protocol

from cryptography import x509

from .schemas import CertificateSigningRequest, CredentialSecret, WatchEvent


class SecretStore(Protocol):
    async def get(self, namespace: str, name: str) -> CredentialSecret | None:
        """返回 Secret；不存在时返回 None，其他失败抛出 ControlPlaneError。"""
        ...

    async def create(self, secret: CredentialSecret) -> None:
        """创建 Secret；同名已存在时抛出 ResourceConflictError。"""
        ...


class SigningAuthority(Protocol):
    async def get_request(self, name: str) -> CertificateSigningRequest | None:
        ...

    async def create_request(self, csr: CertificateSigningRequest) -> CertificateSigningRequest:
        ...

    async def delete_request(self, name: str) -> None:
        ...

    async def update_approval(self, csr: CertificateSigningRequest) -> CertificateSigningRequest:
        """提交 csr.status.conditions 中的审批条件。"""
        ...

    def watch(self, name: str, timeout_seconds: int) -> AsyncIterator[WatchEvent]:
        """
        按资源名过滤的事件流；首批事件包含资源当前状态。
        到达超时或服务端关闭时流结束。
        """
        ...


class TrustedRoots(Protocol):
    def read(self) -> List[x509.Certificate]:
        ...

"""
文件功能：
    定义证书控制器使用的数据模型（Pydantic）。

公开接口：
    - IdentityDescriptor: 一次签发操作的身份描述
    - ObjectMeta / CSRCondition / CSRSpec / CSRStatus / CertificateSigningRequest: CSR 资源
    - WatchEvent: CSR watch 事件
    - CredentialSecret: 保存证书与私钥的 Secret
    - EnsureCertificateResponse / CertificateStatusResponse: HTTP 接口的响应模型

内部方法：
    无
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field

CONDITION_APPROVED = "Approved"
CONDITION_DENIED = "Denied"
CONDITION_FAILED = "Failed"

USAGE_DIGITAL_SIGNATURE = "digital signature"
USAGE_KEY_ENCIPHERMENT = "key encipherment"
USAGE_CLIENT_AUTH = "client auth"
USAGE_SERVER_AUTH = "server auth"

CERT_FIELD = "cert"
KEY_FIELD = "key"


class IdentityDescriptor(BaseModel):
    """一次证书签发所针对的身份，签发过程中不可变。"""

    model_config = ConfigDict(frozen=True)

    namespace: str = Field(min_length=1, description="实例所在命名空间")
    instance: str = Field(min_length=1, description="实例名")
    component: str = Field(default="", description="组件名，写入 Secret 标签")
    suffix: str = Field(default="", description="资源名后缀，例如 peer / client")
    common_name: str = Field(min_length=1, description="证书 CN")
    dns_names: List[str] = Field(default_factory=list, description="DNS SAN 列表")
    ip_addresses: List[str] = Field(default_factory=list, description="IP SAN 列表")

    @property
    def csr_name(self) -> str:
        """CSR 资源名：无后缀时为实例名，否则为 实例名-后缀。"""
        if not self.suffix:
            return self.instance
        return f"{self.instance}-{self.suffix}"

    @property
    def secret_name(self) -> str:
        """Credential Secret 名，与 CSR 资源名一致。"""
        return self.csr_name


class ObjectMeta(BaseModel):
    name: str
    uid: str | None = None
    resource_version: str | None = None
    labels: Dict[str, str] = Field(default_factory=dict)


class CSRCondition(BaseModel):
    type: str
    status: str = "True"
    reason: str = ""
    message: str = ""
    last_update_time: datetime | None = None


class CSRSpec(BaseModel):
    request: bytes = Field(description="PEM 编码的 PKCS#10 请求")
    signer_name: str
    usages: List[str] = Field(default_factory=list)


class CSRStatus(BaseModel):
    conditions: List[CSRCondition] = Field(default_factory=list)
    certificate: bytes | None = Field(default=None, description="签发后的 PEM 证书")


class CertificateSigningRequest(BaseModel):
    """集群控制面中的 CSR 资源。"""

    metadata: ObjectMeta
    spec: CSRSpec
    status: CSRStatus = Field(default_factory=CSRStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def latest_condition(self) -> CSRCondition | None:
        if not self.status.conditions:
            return None
        return self.status.conditions[-1]

    def is_signed(self) -> bool:
        """最新条件为 Approved 且已带有证书内容。"""
        cond = self.latest_condition
        return (
            cond is not None
            and cond.type == CONDITION_APPROVED
            and bool(self.status.certificate)
        )


class WatchEvent(BaseModel):
    type: str = Field(description="ADDED / MODIFIED / DELETED / BOOKMARK / ERROR")
    object: CertificateSigningRequest | None = None


class CredentialSecret(BaseModel):
    """保存签发证书与私钥的 Secret，固定包含 cert 与 key 两个字段。"""

    namespace: str
    name: str
    labels: Dict[str, str] = Field(default_factory=dict)
    data: Dict[str, bytes] = Field(default_factory=dict)

    @property
    def cert(self) -> bytes:
        return self.data.get(CERT_FIELD, b"")

    @property
    def key(self) -> bytes:
        return self.data.get(KEY_FIELD, b"")


class EnsureCertificateResponse(BaseModel):
    """确保证书存在接口的响应。"""

    csr_name: str
    secret_name: str
    issued: bool = Field(description="本次调用是否新签发了证书；False 表示复用已有 Secret")


class CertificateStatusResponse(BaseModel):
    """查询 Secret 中证书是否可用的响应。"""

    namespace: str
    secret_name: str
    usable: bool

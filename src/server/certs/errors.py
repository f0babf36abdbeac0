"""
证书控制器的异常定义。

签发流程中的每一类失败都有独立的异常类型，便于调用方与路由层区分处理。
校验类异常（CertificateValidationError、TrustedRootsError）只在校验器内部使用，
对外一律折叠为“不可用”。
"""


class CertControlError(RuntimeError):
    """证书控制器所有运行期错误的基类。"""


class KeyMaterialError(CertControlError):
    """私钥或 CSR 生成失败（含非法 IP 地址）。"""


class CSRConflictError(CertControlError):
    """同名 CSR 资源已存在且不属于本控制器，拒绝覆盖。"""

    def __init__(self, csr_name: str, message: str):
        super().__init__(message)
        self.csr_name = csr_name


class ControlPlaneError(CertControlError):
    """控制面（Kubernetes API）调用失败。"""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ResourceConflictError(ControlPlaneError):
    """同名资源已存在（HTTP 409）。"""


class SigningTimeoutError(CertControlError):
    """watch 结束时仍未拿到已签发的证书。"""

    def __init__(self, csr_name: str):
        super().__init__(f"fail to get signed certificate for {csr_name}: watch closed before the request was signed")
        self.csr_name = csr_name


class PersistenceError(CertControlError):
    """证书已签发，但写入 Secret 失败；CSR 资源保留以便人工排查。"""


class CSRCleanupError(CertControlError):
    """证书已保存到 Secret，但删除已消费的 CSR 资源失败。"""


class CertControlCancelled(CertControlError):
    """等待签发期间收到停止信号。"""


class CertificateValidationError(ValueError):
    """证书/私钥校验失败的原因。"""


class TrustedRootsError(RuntimeError):
    """受信根证书集合不可读或为空。"""

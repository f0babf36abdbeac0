"""
受信根证书集合的读取。

根证书文件（默认是 ServiceAccount 挂载的 ca.crt）可能被轮换，因此每次校验都重新读取，不做缓存。
"""

from pathlib import Path
from typing import List

from cryptography import x509

from src.server.config import config
from .core import load_pem_certificates
from .errors import TrustedRootsError


def read_trusted_roots(path: str | Path) -> List[x509.Certificate]:
    """
    读取 PEM bundle 中的全部根证书。
    :raises TrustedRootsError: 文件不可读或不含任何证书时。
    """
    p = Path(path)
    try:
        data = p.read_bytes()
    except OSError as e:
        raise TrustedRootsError(f"无法读取受信根证书 {p}: {e}") from e
    roots = load_pem_certificates(data)
    if not roots:
        raise TrustedRootsError(f"受信根证书文件中没有可用证书: {p}")
    return roots


class FileTrustedRoots:
    """基于文件的受信根集合，每次 read() 都重新加载。"""

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path or config.trusted_roots_path)

    def read(self) -> List[x509.Certificate]:
        return read_trusted_roots(self.path)

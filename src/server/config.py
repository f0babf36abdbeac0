"""
配置加载模块：支持 .env、环境变量、工作目录 config.json（或 CONFIG_FILE 指定）多来源合并。
公开接口：
- Config: 证书控制器的设置类
- config: Config 的单例实例
内部方法：
- JsonConfigFileSource: config.json 配置来源
- Config.settings_customise_sources: 自定义配置来源顺序
- Config.normalize_backend: 规范化后端名称
- Config.check_signer_name: 校验 CSR 签发方名称
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Literal, Tuple

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict, PydanticBaseSettingsSource

SERVICE_ACCOUNT_DIR = "/var/run/secrets/kubernetes.io/serviceaccount"
LEGACY_UNKNOWN_SIGNER = "kubernetes.io/legacy-unknown"


def _config_file_path() -> Path:
    """CONFIG_FILE 指定的路径，未指定时为工作目录下的 config.json。"""
    cfg_path = os.environ.get("CONFIG_FILE")
    return Path(cfg_path) if cfg_path else Path.cwd() / "config.json"


class JsonConfigFileSource(PydanticBaseSettingsSource):
    """以 JSON 文件作为配置来源；文件缺失或内容不是 JSON 对象时视为空。"""

    def __init__(self, settings_cls: type[BaseSettings], path: Path | None = None):
        super().__init__(settings_cls)
        self.path = path or _config_file_path()
        self._data = self._read()

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return {}
        return data if isinstance(data, dict) else {}

    def get_field_value(self, field, field_name: str) -> Tuple[Any, str, bool]:
        if field_name in self._data:
            return self._data[field_name], field_name, True
        return None, field_name, False

    def __call__(self) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        for field_name, field in self.settings_cls.model_fields.items():
            value, key, found = self.get_field_value(field, field_name)
            if found:
                values[key] = value
        return values


class Config(BaseSettings):
    # 控制面后端：kubernetes 使用集群 API，local 使用内存存储 + 开发 CA
    cert_backend: Literal["kubernetes", "local"] = "kubernetes"

    # Kubernetes API 访问（集群内默认值）
    kube_api_server: str = ""
    kube_token_path: str = f"{SERVICE_ACCOUNT_DIR}/token"
    kube_ca_path: str = f"{SERVICE_ACCOUNT_DIR}/ca.crt"
    kube_request_timeout: float = 30.0

    # 校验已有证书时使用的受信根证书集合（每次校验都重新读取）
    trusted_roots_path: str = f"{SERVICE_ACCOUNT_DIR}/ca.crt"

    # 标签与 CSR 主体
    managed_by: str = "cert-controller"
    csr_organization: str = "Cluster Certificate Control"
    csr_organizational_unit: str = "Certificate Controller"
    # certificates.k8s.io/v1 不接受 kubernetes.io/legacy-unknown，需由集群内的签发方处理该名称
    cert_signer_name: str = "cert-controller.cluster.local/identity"

    # 等待签发
    cert_watch_timeout_seconds: int = 300
    cert_pending_log_interval: float = 10.0
    max_stale_replacements: int = 1

    # 本地开发 CA
    dev_ca_dir: str = ""
    dev_ca_common_name: str = "Cluster Development Root CA"
    dev_ca_organization_name: str = "Cluster Certificate Control"

    log_level: str = "INFO"

    # pydantic v2 风格配置（等价于旧版的 class Config）
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("cert_backend", mode="before")
    @classmethod
    def normalize_backend(cls, value: Any) -> Any:
        """允许环境变量中使用大小写混合或带空白的后端名称。"""
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("cert_signer_name")
    @classmethod
    def check_signer_name(cls, value: str) -> str:
        """签发方名称必须是 域名/名称 形式，且不能是 v1 API 拒绝的 legacy-unknown。"""
        value = value.strip()
        if value == LEGACY_UNKNOWN_SIGNER:
            raise ValueError(f"{LEGACY_UNKNOWN_SIGNER} is not accepted by certificates.k8s.io/v1")
        if "/" not in value:
            raise ValueError(f"signer name must be <domain>/<name>, got {value!r}")
        return value

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        """来源优先级：入参 > 环境变量 > .env > config.json > secrets。"""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            JsonConfigFileSource(settings_cls),
            file_secret_settings,
        )


config = Config()

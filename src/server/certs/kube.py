"""
基于 Kubernetes API 的协作者实现（httpx 异步客户端）。

公开接口：
- KubeClient: 集群内 API 访问（ServiceAccount token + CA）
- KubeSecretStore: core/v1 Secret 存取
- KubeSigningAuthority: certificates.k8s.io/v1 CSR 的增删查、审批与 watch

内部方法：
- csr_to_manifest / csr_from_manifest: CSR 模型与 API 对象之间的转换
"""

from __future__ import annotations

import base64
import json
import os
from pathlib import Path
from typing import Any, AsyncIterator, Dict

import httpx
from loguru import logger

from src.server.config import config
from .errors import ControlPlaneError, ResourceConflictError
from .schemas import CertificateSigningRequest, CredentialSecret, WatchEvent

CSR_API_PATH = "/apis/certificates.k8s.io/v1/certificatesigningrequests"


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64decode(data: str | None) -> bytes | None:
    if data is None:
        return None
    return base64.b64decode(data)


def _format_time(value) -> str | None:
    if value is None:
        return None
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def csr_to_manifest(csr: CertificateSigningRequest) -> Dict[str, Any]:
    """将 CSR 模型转换为 Kubernetes API 对象。"""
    metadata: Dict[str, Any] = {"name": csr.metadata.name, "labels": dict(csr.metadata.labels)}
    if csr.metadata.uid:
        metadata["uid"] = csr.metadata.uid
    if csr.metadata.resource_version:
        metadata["resourceVersion"] = csr.metadata.resource_version

    conditions = []
    for cond in csr.status.conditions:
        item = {"type": cond.type, "status": cond.status, "reason": cond.reason, "message": cond.message}
        if cond.last_update_time is not None:
            item["lastUpdateTime"] = _format_time(cond.last_update_time)
        conditions.append(item)

    status: Dict[str, Any] = {"conditions": conditions}
    if csr.status.certificate:
        status["certificate"] = _b64encode(csr.status.certificate)

    return {
        "apiVersion": "certificates.k8s.io/v1",
        "kind": "CertificateSigningRequest",
        "metadata": metadata,
        "spec": {
            "request": _b64encode(csr.spec.request),
            "signerName": csr.spec.signer_name,
            "usages": list(csr.spec.usages),
        },
        "status": status,
    }


def csr_from_manifest(obj: Dict[str, Any]) -> CertificateSigningRequest:
    """将 Kubernetes API 返回的对象解析为 CSR 模型。"""
    metadata = obj.get("metadata") or {}
    spec = obj.get("spec") or {}
    status = obj.get("status") or {}
    return CertificateSigningRequest.model_validate(
        {
            "metadata": {
                "name": metadata.get("name", ""),
                "uid": metadata.get("uid"),
                "resource_version": metadata.get("resourceVersion"),
                "labels": metadata.get("labels") or {},
            },
            "spec": {
                "request": _b64decode(spec.get("request")) or b"",
                "signer_name": spec.get("signerName", ""),
                "usages": spec.get("usages") or [],
            },
            "status": {
                "conditions": [
                    {
                        "type": c.get("type", ""),
                        "status": c.get("status", "True"),
                        "reason": c.get("reason", ""),
                        "message": c.get("message", ""),
                        "last_update_time": c.get("lastUpdateTime"),
                    }
                    for c in status.get("conditions") or []
                ],
                "certificate": _b64decode(status.get("certificate")),
            },
        }
    )


def _default_api_server() -> str:
    if config.kube_api_server:
        return config.kube_api_server
    host = os.environ.get("KUBERNETES_SERVICE_HOST")
    port = os.environ.get("KUBERNETES_SERVICE_PORT", "443")
    if not host:
        raise ControlPlaneError("无法确定 Kubernetes API 地址：未配置 kube_api_server 且不在集群内运行")
    if ":" in host:
        host = f"[{host}]"
    return f"https://{host}:{port}"


class KubeClient:
    """
    最小化的 Kubernetes REST 客户端。
    token 每次请求都重新读取，以兼容 ServiceAccount token 轮换。
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        token_path: str | None = None,
        ca_path: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url or _default_api_server()
        self.token_path = Path(token_path or config.kube_token_path)
        self.timeout = timeout if timeout is not None else config.kube_request_timeout
        ca = Path(ca_path or config.kube_ca_path)
        verify: Any = str(ca) if ca.exists() else True
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            verify=verify,
            timeout=self.timeout,
            transport=transport,
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token_path.exists():
            token = self.token_path.read_text(encoding="utf-8").strip()
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def request(
        self,
        method: str,
        path: str,
        *,
        body: Dict[str, Any] | None = None,
        allow_not_found: bool = False,
    ) -> Dict[str, Any] | None:
        """
        发送请求并返回 JSON 对象。
        :param allow_not_found: 为 True 时 404 返回 None，否则抛出 ControlPlaneError。
        :raises ResourceConflictError: 409 冲突。
        :raises ControlPlaneError: 网络错误或其他非 2xx 响应。
        """
        logger.debug(f"{method} {path}")
        try:
            resp = await self._client.request(method, path, json=body, headers=self._headers())
        except httpx.HTTPError as e:
            raise ControlPlaneError(f"{method} {path} failed: {e}") from e

        if resp.status_code == 404 and allow_not_found:
            return None
        if resp.status_code == 409:
            raise ResourceConflictError(f"{method} {path} conflict: {resp.text}", status_code=409)
        if resp.status_code >= 400:
            raise ControlPlaneError(
                f"{method} {path} failed with status {resp.status_code}: {resp.text}",
                status_code=resp.status_code,
            )
        if not resp.content:
            return {}
        return resp.json()

    async def stream_json_lines(
        self, path: str, params: Dict[str, Any], read_timeout: float
    ) -> AsyncIterator[Dict[str, Any]]:
        """以流的方式读取 watch 响应，每行一个 JSON 对象。"""
        timeout = httpx.Timeout(self.timeout, read=read_timeout)
        try:
            async with self._client.stream(
                "GET", path, params=params, headers=self._headers(), timeout=timeout
            ) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    raise ControlPlaneError(
                        f"watch {path} failed with status {resp.status_code}: {resp.text}",
                        status_code=resp.status_code,
                    )
                async for line in resp.aiter_lines():
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        yield json.loads(line)
                    except ValueError:
                        logger.warning(f"忽略无法解析的 watch 事件: {line[:200]}")
        except httpx.ReadTimeout:
            logger.debug(f"watch {path} 读取超时，结束事件流")
        except httpx.HTTPError as e:
            raise ControlPlaneError(f"watch {path} failed: {e}") from e

    async def aclose(self) -> None:
        await self._client.aclose()


class KubeSecretStore:
    """core/v1 Secret 作为 Credential Secret 的存储。"""

    def __init__(self, client: KubeClient):
        self.client = client

    async def get(self, namespace: str, name: str) -> CredentialSecret | None:
        obj = await self.client.request(
            "GET", f"/api/v1/namespaces/{namespace}/secrets/{name}", allow_not_found=True
        )
        if obj is None:
            return None
        metadata = obj.get("metadata") or {}
        data = {k: base64.b64decode(v) for k, v in (obj.get("data") or {}).items()}
        return CredentialSecret(
            namespace=namespace,
            name=metadata.get("name", name),
            labels=metadata.get("labels") or {},
            data=data,
        )

    async def create(self, secret: CredentialSecret) -> None:
        body = {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {"name": secret.name, "labels": dict(secret.labels)},
            "type": "Opaque",
            "data": {k: _b64encode(v) for k, v in secret.data.items()},
        }
        await self.client.request("POST", f"/api/v1/namespaces/{secret.namespace}/secrets", body=body)


class KubeSigningAuthority:
    """certificates.k8s.io/v1 CertificateSigningRequest 的请求方与审批方。"""

    def __init__(self, client: KubeClient):
        self.client = client

    async def get_request(self, name: str) -> CertificateSigningRequest | None:
        obj = await self.client.request("GET", f"{CSR_API_PATH}/{name}", allow_not_found=True)
        return csr_from_manifest(obj) if obj is not None else None

    async def create_request(self, csr: CertificateSigningRequest) -> CertificateSigningRequest:
        manifest = csr_to_manifest(csr)
        manifest.pop("status", None)
        obj = await self.client.request("POST", CSR_API_PATH, body=manifest)
        return csr_from_manifest(obj or {})

    async def delete_request(self, name: str) -> None:
        await self.client.request("DELETE", f"{CSR_API_PATH}/{name}")

    async def update_approval(self, csr: CertificateSigningRequest) -> CertificateSigningRequest:
        obj = await self.client.request(
            "PUT", f"{CSR_API_PATH}/{csr.name}/approval", body=csr_to_manifest(csr)
        )
        return csr_from_manifest(obj or {})

    async def watch(self, name: str, timeout_seconds: int) -> AsyncIterator[WatchEvent]:
        # 不指定 resourceVersion，首批 ADDED 事件即为资源当前状态
        params = {
            "watch": "true",
            "fieldSelector": f"metadata.name={name}",
            "timeoutSeconds": str(timeout_seconds),
        }
        async for raw in self.client.stream_json_lines(CSR_API_PATH, params, read_timeout=timeout_seconds + 30):
            event_type = raw.get("type", "")
            obj = raw.get("object") or {}
            if event_type == "ERROR" or obj.get("kind") not in (None, "CertificateSigningRequest"):
                logger.warning(f"watch CSR {name} 收到错误事件: {obj.get('message', obj)}")
                yield WatchEvent(type=event_type or "ERROR")
                continue
            yield WatchEvent(type=event_type, object=csr_from_manifest(obj))

"""
CSR 生命周期控制器。

ensure_certificate 的流程：
1. 检查 Secret 中已有证书是否可用，可用则直接返回；
2. 生成新的 RSA 私钥与 CSR；
3. 处理同名 CSR 资源：他人创建的直接报错，自己遗留的删除后重建（有重试上限）；
4. 以本控制器身份审批该 CSR；
5. watch 该 CSR，直到签发方写入证书或 watch 结束；
6. 将证书与私钥写入 Secret，成功后删除已消费的 CSR 资源。

同一身份的并发调用没有任何互斥保护，调用方需自行避免。
"""

import asyncio
import contextlib
from datetime import datetime, timezone
from typing import AsyncIterator, Tuple

from loguru import logger

from src.server.config import config
from .core import encode_csr_pem, generate_csr
from .errors import (
    CSRCleanupError,
    CSRConflictError,
    CertControlCancelled,
    ControlPlaneError,
    KeyMaterialError,
    PersistenceError,
    SigningTimeoutError,
)
from .interfaces import SecretStore, SigningAuthority, TrustedRoots
from .labels import csr_labels, is_owned_by, secret_labels
from .schemas import (
    CONDITION_APPROVED,
    CONDITION_DENIED,
    CONDITION_FAILED,
    CERT_FIELD,
    KEY_FIELD,
    USAGE_CLIENT_AUTH,
    USAGE_DIGITAL_SIGNATURE,
    USAGE_KEY_ENCIPHERMENT,
    USAGE_SERVER_AUTH,
    CSRCondition,
    CSRSpec,
    CertificateSigningRequest,
    CredentialSecret,
    IdentityDescriptor,
    ObjectMeta,
)
from .validator import CertificateValidator

CSR_USAGES = [
    USAGE_DIGITAL_SIGNATURE,
    USAGE_KEY_ENCIPHERMENT,
    USAGE_CLIENT_AUTH,
    USAGE_SERVER_AUTH,
]


async def _drain(task: asyncio.Future | None) -> None:
    """取消并回收尚未使用的等待任务。"""
    if task is None:
        return
    if not task.done():
        task.cancel()
    with contextlib.suppress(asyncio.CancelledError, Exception):
        await task


class CertControl:
    """管理集群内服务实例身份证书的签发与复用。"""

    def __init__(
        self,
        secret_store: SecretStore,
        authority: SigningAuthority,
        trusted_roots: TrustedRoots,
        *,
        watch_timeout_seconds: int | None = None,
        pending_log_interval: float | None = None,
        max_stale_replacements: int | None = None,
    ):
        self.secret_store = secret_store
        self.authority = authority
        self.validator = CertificateValidator(secret_store, trusted_roots)
        self.watch_timeout_seconds = (
            watch_timeout_seconds if watch_timeout_seconds is not None else config.cert_watch_timeout_seconds
        )
        self.pending_log_interval = (
            pending_log_interval if pending_log_interval is not None else config.cert_pending_log_interval
        )
        self.max_stale_replacements = (
            max_stale_replacements if max_stale_replacements is not None else config.max_stale_replacements
        )

    async def ensure_certificate(
        self, identity: IdentityDescriptor, *, stop_event: asyncio.Event | None = None
    ) -> bool:
        """
        确保 identity 对应的 Secret 中存在可用证书。
        :param identity: 身份描述。
        :param stop_event: 可选的停止信号，等待签发期间被 set 时中止。
        :return: True 表示本次新签发了证书，False 表示复用了已有 Secret。
        :raises CertControlError: 任一步骤失败时（见 errors 模块）。
        """
        ns, instance, csr_name = identity.namespace, identity.instance, identity.csr_name

        if await self.check_secret(ns, identity.secret_name):
            logger.info(f"Secret {identity.secret_name} already exist, reusing the key pair. [{ns}/{instance}]")
            return False

        try:
            raw_csr, key_pem = generate_csr(identity.common_name, identity.dns_names, identity.ip_addresses)
        except KeyMaterialError as e:
            raise KeyMaterialError(f"fail to generate new key and certificate for {ns}/{csr_name}, {e}") from e

        created = await self._send_csr(identity, encode_csr_pem(raw_csr))
        await self._approve_csr(identity, created)

        cert = await self._wait_for_certificate(identity, created, stop_event)

        await self.save_to_secret(identity, cert, key_pem)
        try:
            await self.authority.delete_request(csr_name)
        except ControlPlaneError as e:
            raise CSRCleanupError(
                f"certificate saved to secret {ns}/{identity.secret_name}, but failed to delete CSR {csr_name}: {e}"
            ) from e
        logger.info(f"approved CSR cleaned up for [{ns}/{instance}]: {csr_name}")
        return True

    async def load_from_secret(self, namespace: str, secret_name: str) -> Tuple[bytes, bytes] | None:
        """读取 Secret 中的证书与私钥；不存在时返回 None。"""
        return await self.validator.load(namespace, secret_name)

    async def check_secret(self, namespace: str, secret_name: str) -> bool:
        """Secret 存在且证书可用时返回 True。"""
        return await self.validator.is_usable(namespace, secret_name)

    async def save_to_secret(self, identity: IdentityDescriptor, cert: bytes, key: bytes) -> None:
        """
        将签发的证书与私钥写入新的 Secret。
        :raises PersistenceError: 写入失败时；此时 CSR 资源保留不删。
        """
        ns, secret_name = identity.namespace, identity.secret_name
        secret = CredentialSecret(
            namespace=ns,
            name=secret_name,
            labels=secret_labels(ns, identity.instance, identity.component),
            data={CERT_FIELD: cert, KEY_FIELD: key},
        )
        try:
            await self.secret_store.create(secret)
        except ControlPlaneError as e:
            logger.error(f"save cert to secret {ns}/{secret_name} failed: {e}")
            raise PersistenceError(f"fail to save signed certificate to secret {ns}/{secret_name}: {e}") from e
        logger.info(f"save cert to secret {ns}/{secret_name}")

    async def _get_csr(self, identity: IdentityDescriptor) -> CertificateSigningRequest | None:
        """返回本控制器为该实例创建的同名 CSR；不存在返回 None，属于他人时报冲突。"""
        ns, csr_name = identity.namespace, identity.csr_name
        try:
            csr = await self.authority.get_request(csr_name)
        except ControlPlaneError as e:
            raise ControlPlaneError(
                f"failed to get CSR for [{ns}/{identity.instance}]: {csr_name}, error: {e}", e.status_code
            ) from e
        if csr is None:
            return None
        if is_owned_by(csr.metadata.labels, ns, identity.instance):
            return csr
        raise CSRConflictError(csr_name, f"CSR {ns}/{csr_name} already exist, but not created by {config.managed_by}, skip it")

    async def _send_csr(self, identity: IdentityDescriptor, request_pem: bytes) -> CertificateSigningRequest:
        ns, instance, csr_name = identity.namespace, identity.instance, identity.csr_name

        replaced = 0
        existing = await self._get_csr(identity)
        while existing is not None:
            if replaced >= self.max_stale_replacements:
                raise CSRConflictError(
                    csr_name,
                    f"CSR {ns}/{csr_name} still exists after {replaced} replacement(s), another actor may be recreating it",
                )
            logger.info(f"found exist CSR {ns}/{csr_name} created by {config.managed_by}, overwriting (uid={existing.metadata.uid})")
            try:
                await self.authority.delete_request(csr_name)
            except ControlPlaneError as e:
                raise ControlPlaneError(
                    f"failed to delete exist old CSR for [{ns}/{instance}]: {csr_name}, error: {e}", e.status_code
                ) from e
            logger.info(f"exist old CSR deleted for [{ns}/{instance}]: {csr_name}")
            replaced += 1
            existing = await self._get_csr(identity)

        csr = CertificateSigningRequest(
            metadata=ObjectMeta(name=csr_name, labels=csr_labels(ns, instance)),
            spec=CSRSpec(request=request_pem, signer_name=config.cert_signer_name, usages=list(CSR_USAGES)),
        )
        try:
            created = await self.authority.create_request(csr)
        except ControlPlaneError as e:
            raise ControlPlaneError(
                f"failed to create CSR for [{ns}/{instance}]: {csr_name}, error: {e}", e.status_code
            ) from e
        logger.info(f"CSR created for [{ns}/{instance}]: {csr_name}")
        return created

    async def _approve_csr(
        self, identity: IdentityDescriptor, csr: CertificateSigningRequest
    ) -> CertificateSigningRequest:
        approved = csr.model_copy(deep=True)
        approved.status.conditions.append(
            CSRCondition(
                type=CONDITION_APPROVED,
                status="True",
                reason="AutoApproved",
                message=f"Auto approved by {config.managed_by}",
                last_update_time=datetime.now(timezone.utc),
            )
        )
        try:
            result = await self.authority.update_approval(approved)
        except ControlPlaneError as e:
            raise ControlPlaneError(
                f"error updating approval for csr {identity.csr_name}: {e}", e.status_code
            ) from e
        logger.info(f"CSR approved for [{identity.namespace}/{identity.instance}]: {identity.csr_name}")
        return result

    async def _wait_for_certificate(
        self,
        identity: IdentityDescriptor,
        created: CertificateSigningRequest,
        stop_event: asyncio.Event | None,
    ) -> bytes:
        """
        在 watch 事件、定时日志与停止信号三者之间等待，直到拿到签发证书。
        :raises SigningTimeoutError: watch 流结束仍未签发。
        """
        ns, instance, csr_name = identity.namespace, identity.instance, identity.csr_name
        events: AsyncIterator = self.authority.watch(csr_name, self.watch_timeout_seconds)

        next_event = asyncio.ensure_future(events.__anext__())
        stop_wait = asyncio.ensure_future(stop_event.wait()) if stop_event is not None else None
        loop = asyncio.get_running_loop()
        # 定时日志按固定节拍触发，不因收到事件而重新计时
        next_tick = loop.time() + self.pending_log_interval
        try:
            while True:
                waiters = {next_event} if stop_wait is None else {next_event, stop_wait}
                done, _ = await asyncio.wait(
                    waiters, timeout=max(0.0, next_tick - loop.time()), return_when=asyncio.FIRST_COMPLETED
                )
                if loop.time() >= next_tick:
                    logger.info(f"CSR still not approved for [{ns}/{instance}]: {csr_name}, retry later")
                    next_tick = loop.time() + self.pending_log_interval
                if not done:
                    continue
                if stop_wait is not None and stop_wait in done:
                    raise CertControlCancelled(f"stopped waiting for signed certificate of CSR {csr_name}")

                try:
                    event = next_event.result()
                except StopAsyncIteration:
                    logger.error(f"watch closed before CSR was signed for [{ns}/{instance}]: {csr_name}")
                    raise SigningTimeoutError(csr_name)
                except ControlPlaneError as e:
                    raise ControlPlaneError(
                        f"error watch CSR for [{ns}/{instance}]: {csr_name}, error: {e}", e.status_code
                    ) from e
                next_event = asyncio.ensure_future(events.__anext__())

                updated = event.object
                if updated is None or not updated.status.conditions:
                    continue
                if updated.metadata.uid == created.metadata.uid and updated.is_signed():
                    logger.info(f"signed certificate for [{ns}/{instance}]: {csr_name}")
                    return updated.status.certificate
                cond = updated.latest_condition
                if cond.type in (CONDITION_DENIED, CONDITION_FAILED):
                    logger.warning(f"CSR {csr_name} is {cond.type}: {cond.reason} {cond.message}")
        finally:
            await _drain(next_event)
            await _drain(stop_wait)
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()

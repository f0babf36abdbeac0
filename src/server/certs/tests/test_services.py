"""
测试 services.py 模块：按配置装配控制器并走通本地后端的签发流程。
"""

import pytest

from src.server.certs import services
from src.server.certs.controller import CertControl
from src.server.certs.errors import ControlPlaneError
from src.server.certs.kube import KubeSigningAuthority
from src.server.certs.local import LocalSigningAuthority
from src.server.certs.schemas import IdentityDescriptor
from src.server.config import config


@pytest.fixture
def local_backend(monkeypatch, tmp_path):
    monkeypatch.setattr(config, "cert_backend", "local")
    monkeypatch.setenv("DEV_CA_DIR", str(tmp_path / "dev_ca"))
    services.set_controller(None)
    yield
    services.set_controller(None)


def test_build_controller_local(local_backend, tmp_path):
    controller = services.build_controller()
    assert isinstance(controller, CertControl)
    assert isinstance(controller.authority, LocalSigningAuthority)
    assert (tmp_path / "dev_ca" / "ca_cert.pem").exists()


def test_get_controller_is_cached(local_backend):
    assert services.get_controller() is services.get_controller()


@pytest.mark.asyncio
async def test_build_controller_kubernetes(monkeypatch, tmp_path):
    monkeypatch.setattr(config, "cert_backend", "kubernetes")
    monkeypatch.setattr(config, "kube_api_server", "https://kube.test")
    monkeypatch.setattr(config, "kube_ca_path", str(tmp_path / "missing"))
    services.set_controller(None)

    controller = services.get_controller()
    assert isinstance(controller.authority, KubeSigningAuthority)
    assert controller.authority.client.base_url == "https://kube.test"

    await services.close_controller()
    assert services._controller is None
    assert services._kube_client is None


def test_build_controller_kubernetes_outside_cluster(monkeypatch):
    monkeypatch.setattr(config, "cert_backend", "kubernetes")
    monkeypatch.setattr(config, "kube_api_server", "")
    monkeypatch.delenv("KUBERNETES_SERVICE_HOST", raising=False)
    with pytest.raises(ControlPlaneError):
        services.build_controller()


@pytest.mark.asyncio
async def test_ensure_certificate_issues_then_reuses(local_backend):
    issued = await services.ensure_certificate(
        namespace="db",
        instance="pd-0",
        common_name="pd-0.db.svc",
        dns_names=["pd-0.db.svc"],
        ip_addresses=["10.0.0.5"],
        component="pd",
        suffix="peer",
    )
    assert issued is True

    status = await services.certificate_status_service("db", "pd-0-peer")
    assert status.usable is True

    again = await services.ensure_certificate(
        namespace="db",
        instance="pd-0",
        common_name="pd-0.db.svc",
        dns_names=["pd-0.db.svc"],
        ip_addresses=["10.0.0.5"],
        component="pd",
        suffix="peer",
    )
    assert again is False


@pytest.mark.asyncio
async def test_ensure_certificate_service_response(local_backend):
    identity = IdentityDescriptor(namespace="db", instance="tidb-0", common_name="tidb-0.db.svc", suffix="client")

    response = await services.ensure_certificate_service(identity)

    assert response.csr_name == "tidb-0-client"
    assert response.secret_name == "tidb-0-client"
    assert response.issued is True


@pytest.mark.asyncio
async def test_certificate_status_absent(local_backend):
    status = await services.certificate_status_service("db", "missing")
    assert status.namespace == "db"
    assert status.secret_name == "missing"
    assert status.usable is False

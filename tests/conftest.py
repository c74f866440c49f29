from pathlib import Path
from typing import Dict, List
from unittest import mock

import pytest
import yaml
from fastapi.testclient import TestClient
from httpx import AsyncClient
from square.dtypes import K8sConfig

import cwh.api
import cwh.logstreams
from cwh.models import Database, ServerConfig, SideCarConfig
from cwh.rbac import Outcome, Provisioner
from cwh.webhook import WebhookContext

SUPPORT = Path(__file__).parent / "support"


def pytest_configure(*args, **kwargs):
    """Pytest calls this hook on startup."""
    # Set log level to DEBUG for all unit tests.
    cwh.logstreams.setup("DEBUG")


def get_server_config():
    return ServerConfig(
        kubeconfig=Path("/tmp/kind-kubeconf.yaml"),
        kubecontext="kind-kind",
        host="0.0.0.0",
        port=8080,
        loglevel="info",
        sidecar=SideCarConfig(image="carrier/sidecar:v1"),
    )


def load_manifest(name: str) -> dict:
    """Return the manifest `tests/support/<name>.yaml`."""
    return yaml.safe_load((SUPPORT / f"{name}.yaml").read_text())


class FakeAccessControl:
    """In memory stand in for the K8s RBAC API."""

    def __init__(self):
        self.service_accounts: Dict[str, Outcome] = {}
        self.role_bindings: Dict[str, Outcome] = {}
        self.create_result = Outcome.CREATED
        self.lookup_result: Outcome | None = None
        self.created: List[dict] = []

    async def get_service_account(self, namespace: str, name: str) -> Outcome:
        if self.lookup_result is not None:
            return self.lookup_result
        return self.service_accounts.get(f"{namespace}/{name}", Outcome.NOT_FOUND)

    async def get_role_binding(self, namespace: str, name: str) -> Outcome:
        if self.lookup_result is not None:
            return self.lookup_result
        return self.role_bindings.get(f"{namespace}/{name}", Outcome.NOT_FOUND)

    async def create_service_account(self, manifest: dict) -> Outcome:
        self.created.append(manifest)
        return self.create_result

    async def create_role_binding(self, manifest: dict) -> Outcome:
        self.created.append(manifest)
        return self.create_result

    async def create_cluster_role(self, manifest: dict) -> Outcome:
        self.created.append(manifest)
        return self.create_result


@pytest.fixture
def access():
    return FakeAccessControl()


@pytest.fixture
def ctx(access):
    cfg = get_server_config()
    return WebhookContext(cfg.sidecar, Provisioner(access))


@pytest.fixture
async def k8scfg(respx_mock):
    """Return a K8s config with a client that only talks to `respx`."""
    async with AsyncClient(base_url="https://k8s.test") as client:
        yield K8sConfig(client=client)


@pytest.fixture
def client(ctx):
    """Return a test client without running the lifespan handler."""
    with mock.patch.dict("os.environ", {"CWH_SIDECAR_IMAGE": "carrier/sidecar:v1"}):
        app = cwh.api.make_app()
    c = TestClient(app)
    c.app.extra.update(  # type: ignore
        {"db": Database(), "config": get_server_config(), "webhook": ctx}
    )
    yield c

"""Provision the RBAC resources the Carrier SDK sidecar needs.

Every namespace with GameServers needs the `carrier-sdk` service account and a
role binding that grants it the `carrier-sdk` cluster role. The webhook
creates them on demand when it admits the first resource of a namespace.

"""

import enum
import logging
from typing import Protocol

from square.dtypes import K8sConfig

import cwh.k8s
from cwh.defaults import DEFAULT_SERVICE_ACCOUNT, GROUP_NAME
from cwh.errors import ProvisioningError
from cwh.models import Database

# Convenience.
logit = logging.getLogger("app")

ROLE_NAME = DEFAULT_SERVICE_ACCOUNT
RBAC_API = "rbac.authorization.k8s.io/v1"


class Outcome(enum.Enum):
    FOUND = "found"
    NOT_FOUND = "not-found"
    CREATED = "created"
    ALREADY_EXISTS = "already-exists"
    FAILED = "failed"


class AccessControl(Protocol):
    """Look up and create the RBAC resources of a cluster."""

    async def get_service_account(self, namespace: str, name: str) -> Outcome: ...

    async def create_service_account(self, manifest: dict) -> Outcome: ...

    async def get_role_binding(self, namespace: str, name: str) -> Outcome: ...

    async def create_role_binding(self, manifest: dict) -> Outcome: ...

    async def create_cluster_role(self, manifest: dict) -> Outcome: ...


# ----------------------------------------------------------------------
# Manifests.
# ----------------------------------------------------------------------


def default_service_account(namespace: str) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "ServiceAccount",
        "metadata": {"name": DEFAULT_SERVICE_ACCOUNT, "namespace": namespace},
    }


def default_role_binding(namespace: str) -> dict:
    return {
        "apiVersion": RBAC_API,
        "kind": "RoleBinding",
        "metadata": {"name": ROLE_NAME, "namespace": namespace},
        "roleRef": {
            "apiGroup": "rbac.authorization.k8s.io",
            "kind": "ClusterRole",
            "name": ROLE_NAME,
        },
        "subjects": [
            {
                "kind": "ServiceAccount",
                "name": DEFAULT_SERVICE_ACCOUNT,
                "namespace": namespace,
            }
        ],
    }


def default_cluster_role() -> dict:
    return {
        "apiVersion": RBAC_API,
        "kind": "ClusterRole",
        "metadata": {"name": ROLE_NAME},
        "rules": [
            {"apiGroups": [""], "resources": ["events"], "verbs": ["create", "patch"]},
            {
                "apiGroups": [GROUP_NAME],
                "resources": [
                    "gameservers",
                    "gameservers/status",
                    "webhookconfigurations",
                ],
                "verbs": ["*"],
            },
        ],
    }


# ----------------------------------------------------------------------
# Provisioner.
# ----------------------------------------------------------------------


class Provisioner:
    """Ensure the default service account and role binding exist."""

    def __init__(self, access: AccessControl):
        self.access = access

    async def ensure_service_identity(self, namespace: str, requested: str) -> None:
        """Create the default service identity of `namespace` if necessary.

        Does nothing unless the workload requests the default service account,
        either explicitly or by leaving `requested` empty. Raise
        `ProvisioningError` if a lookup or a create fails.

        """
        if requested not in ("", DEFAULT_SERVICE_ACCOUNT):
            return

        meta_log = {"namespace": namespace, "name": DEFAULT_SERVICE_ACCOUNT}

        # Service account.
        ret = await self.access.get_service_account(namespace, DEFAULT_SERVICE_ACCOUNT)
        if ret == Outcome.NOT_FOUND:
            manifest = default_service_account(namespace)
            ret = await self.access.create_service_account(manifest)
            if ret not in (Outcome.CREATED, Outcome.ALREADY_EXISTS):
                logit.error("cannot create service account", meta_log)
                raise ProvisioningError(
                    f"cannot create service account {namespace}/{DEFAULT_SERVICE_ACCOUNT}"
                )
            logit.info("created service account", meta_log)
        elif ret != Outcome.FOUND:
            logit.error("cannot look up service account", meta_log)
            raise ProvisioningError(
                f"cannot look up service account {namespace}/{DEFAULT_SERVICE_ACCOUNT}"
            )

        # Role binding.
        ret = await self.access.get_role_binding(namespace, ROLE_NAME)
        if ret == Outcome.NOT_FOUND:
            manifest = default_role_binding(namespace)
            ret = await self.access.create_role_binding(manifest)
            if ret not in (Outcome.CREATED, Outcome.ALREADY_EXISTS):
                logit.error("cannot create role binding", meta_log)
                raise ProvisioningError(
                    f"cannot create role binding {namespace}/{ROLE_NAME}"
                )
            logit.info("created role binding", meta_log)
        elif ret != Outcome.FOUND:
            logit.error("cannot look up role binding", meta_log)
            raise ProvisioningError(f"cannot look up role binding {namespace}/{ROLE_NAME}")

    async def ensure_cluster_role(self) -> None:
        """Create the `carrier-sdk` cluster role.

        Raise `ProvisioningError` unless the role exists afterwards.

        """
        ret = await self.access.create_cluster_role(default_cluster_role())
        if ret not in (Outcome.CREATED, Outcome.ALREADY_EXISTS):
            logit.error("cannot create cluster role", {"name": ROLE_NAME})
            raise ProvisioningError(f"cannot create cluster role {ROLE_NAME}")
        logit.info("cluster role ready", {"name": ROLE_NAME, "outcome": ret.value})


# ----------------------------------------------------------------------
# K8s access.
# ----------------------------------------------------------------------


class K8sAccessControl:
    """Look up resources in the watch caches and create them via the K8s API."""

    def __init__(self, k8scfg: K8sConfig, db: Database):
        self.k8scfg = k8scfg
        self.db = db

    def _lookup(self, kind: str, namespace: str, name: str) -> Outcome:
        try:
            cache = self.db.resources[kind].manifests
        except KeyError:
            logit.error("resource is not cached", {"kind": kind})
            return Outcome.FAILED
        return Outcome.FOUND if f"{namespace}/{name}" in cache else Outcome.NOT_FOUND

    async def _create(self, url: str, manifest: dict) -> Outcome:
        _, code, err = await cwh.k8s.post(self.k8scfg, url, manifest)
        if not err:
            return Outcome.CREATED
        return Outcome.ALREADY_EXISTS if code == 409 else Outcome.FAILED

    async def get_service_account(self, namespace: str, name: str) -> Outcome:
        return self._lookup("ServiceAccount", namespace, name)

    async def get_role_binding(self, namespace: str, name: str) -> Outcome:
        return self._lookup("RoleBinding", namespace, name)

    async def create_service_account(self, manifest: dict) -> Outcome:
        namespace = manifest["metadata"]["namespace"]
        url = f"/api/v1/namespaces/{namespace}/serviceaccounts"
        return await self._create(url, manifest)

    async def create_role_binding(self, manifest: dict) -> Outcome:
        namespace = manifest["metadata"]["namespace"]
        url = f"/apis/{RBAC_API}/namespaces/{namespace}/rolebindings"
        return await self._create(url, manifest)

    async def create_cluster_role(self, manifest: dict) -> Outcome:
        return await self._create(f"/apis/{RBAC_API}/clusterroles", manifest)

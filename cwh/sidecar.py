"""Inject the Carrier SDK sidecar into GameServer pods.

The sidecar is assembled from a base container and a list of options. Each
option is a plain data model and `apply_option` interprets it. The options are
applied in list order.

"""

import logging
import re
from decimal import Decimal
from typing import List, Sequence, Tuple, Union

from kubernetes.utils import parse_quantity
from pydantic import BaseModel, ConfigDict

from cwh.defaults import GAMESERVER_POD_LABEL
from cwh.models import (
    K8sContainer,
    K8sEnvVar,
    K8sPod,
    K8sProbe,
    K8sProbeHttp,
    K8sRequestLimit,
    K8sVolumeMount,
    SideCarConfig,
)

# Convenience.
logit = logging.getLogger("app")

SIDECAR_NAME = "carrier-gameserver-sidecar"

# Where the service account token volume is mounted into the sidecar.
TOKEN_MOUNT_PATH = "/var/run/secrets/kubernetes.io/serviceaccount"

# Pod annotations to override the SDK ports of a particular pod.
GRPC_PORT_KEY = "carrier.ocgi.dev/grpc-port"
HTTP_PORT_KEY = "carrier.ocgi.dev/http-port"

# Port annotations must be plain decimal integers with an optional sign.
PORT_RE = re.compile(r"[+-]?[0-9]+")

# Environment variables of the sidecar.
GAMESERVER_NAME_ENV = "GAMESERVER_NAME"
NAMESPACE_ENV = "POD_NAMESPACE"

# Environment variables stamped onto the game server containers.
GRPC_PORT_ENV = "CARRIER_SDK_GRPC_PORT"
HTTP_PORT_ENV = "CARRIER_SDK_HTTP_PORT"


# ----------------------------------------------------------------------
# Sidecar options.
# ----------------------------------------------------------------------


class WithImage(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    image: str


class WithResources(BaseModel):
    """Identical requests and limits."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    cpu: str
    memory: str


class WithEnvs(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    gameserver_name: str


class WithHealthCheck(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    path: str = "/healthz"
    port: int = 8080


class WithArgs(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    http_port: int
    grpc_port: int


SidecarOption = Union[WithImage, WithResources, WithEnvs, WithHealthCheck, WithArgs]


class PortEnvs(BaseModel):
    """Pre-injection hook: tell the game server containers the SDK ports."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    http_port: int
    grpc_port: int


# ----------------------------------------------------------------------
# Injection.
# ----------------------------------------------------------------------


def has_sidecar(pod: K8sPod) -> bool:
    return any(_.name == SIDECAR_NAME for _ in pod.spec.containers)


def is_gameserver_pod(pod: K8sPod) -> bool:
    return pod.metadata.labels.get(GAMESERVER_POD_LABEL, "") != ""


def inject_sidecar(
    pod: K8sPod,
    hook: PortEnvs | None = None,
    options: Sequence[SidecarOption] = (),
) -> K8sPod:
    """Return a copy of `pod` with the SDK sidecar.

    Return `pod` unchanged if it already has a sidecar or does not belong to a
    GameServer.

    """
    if has_sidecar(pod) or not is_gameserver_pod(pod):
        logit.debug("skip sidecar injection", {"pod": pod.metadata.name})
        return pod

    pod = pod.model_copy(deep=True)

    # The hook must run before we add the sidecar or it would also stamp the
    # port variables onto the sidecar itself.
    if hook is not None:
        stamp_port_envs(pod, hook)

    sidecar = base_sidecar(pod)
    for opt in options:
        apply_option(sidecar, opt)
    pod.spec.containers.append(sidecar)
    return pod


def stamp_port_envs(pod: K8sPod, hook: PortEnvs) -> None:
    for container in pod.spec.containers:
        if container.name == SIDECAR_NAME:
            continue
        container.env.extend(
            [
                K8sEnvVar(name=GRPC_PORT_ENV, value=str(hook.grpc_port)),
                K8sEnvVar(name=HTTP_PORT_ENV, value=str(hook.http_port)),
            ]
        )


def base_sidecar(pod: K8sPod) -> K8sContainer:
    """Return the sidecar container without any options applied."""
    sidecar = K8sContainer(name=SIDECAR_NAME, imagePullPolicy="IfNotPresent")

    # Mount the token of the pod's service account, if it has one.
    token_name = f"{pod.spec.serviceAccountName}-token"
    for volume in pod.spec.volumes:
        if token_name in volume.name:
            sidecar.volumeMounts = [
                K8sVolumeMount(
                    name=volume.name, mountPath=TOKEN_MOUNT_PATH, readOnly=True
                )
            ]
            break
    return sidecar


def apply_option(container: K8sContainer, opt: SidecarOption) -> None:
    if isinstance(opt, WithImage):
        container.image = opt.image
    elif isinstance(opt, WithResources):
        resources = {
            name: value
            for name, value in (("cpu", opt.cpu), ("memory", opt.memory))
            if value != ""
        }
        container.resources = K8sRequestLimit(
            requests=resources.copy(), limits=resources.copy()
        )
    elif isinstance(opt, WithEnvs):
        container.env = [
            K8sEnvVar(name=GAMESERVER_NAME_ENV, value=opt.gameserver_name),
            K8sEnvVar(
                name=NAMESPACE_ENV,
                valueFrom={"fieldRef": {"fieldPath": "metadata.namespace"}},
            ),
        ]
    elif isinstance(opt, WithHealthCheck):
        container.livenessProbe = K8sProbe(
            httpGet=K8sProbeHttp(path=opt.path, port=opt.port),
            initialDelaySeconds=3,
            timeoutSeconds=1,
            periodSeconds=10,
            successThreshold=1,
            failureThreshold=3,
        )
    elif isinstance(opt, WithArgs):
        container.args = [
            f"--grpc-port={opt.grpc_port}",
            f"--http-port={opt.http_port}",
            "--v=5",
        ]
    else:
        raise TypeError(f"unknown sidecar option <{type(opt).__name__}>")


# ----------------------------------------------------------------------
# Configuration.
# ----------------------------------------------------------------------


def is_zero_quantity(quantity: str) -> bool:
    if quantity == "":
        return True
    return parse_quantity(quantity) == Decimal(0)


def get_ports(config: SideCarConfig, pod: K8sPod) -> Tuple[int, int]:
    """Return the `(http, grpc)` ports of the SDK sidecar for `pod`.

    Pod annotations override the configured ports. Annotations that are not
    integers are ignored.

    """
    http_port, grpc_port = config.httpPort, config.grpcPort
    annotations = pod.metadata.annotations

    value = annotations.get(GRPC_PORT_KEY, "")
    if PORT_RE.fullmatch(value):
        grpc_port = int(value)

    value = annotations.get(HTTP_PORT_KEY, "")
    if PORT_RE.fullmatch(value):
        http_port = int(value)
    return http_port, grpc_port


def sidecar_options(
    config: SideCarConfig, pod: K8sPod, http_port: int, grpc_port: int
) -> List[SidecarOption]:
    """Return the sidecar options for `pod` in the order they must be applied."""
    opts: List[SidecarOption] = [WithImage(image=config.image)]
    if not (is_zero_quantity(config.cpu) and is_zero_quantity(config.memory)):
        opts.append(WithResources(cpu=config.cpu, memory=config.memory))
    opts.append(WithEnvs(gameserver_name=pod.metadata.name))
    opts.append(WithHealthCheck())
    opts.append(WithArgs(http_port=http_port, grpc_port=grpc_port))
    return opts

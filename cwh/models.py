from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from kubernetes.utils import parse_quantity
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# ----------------------------------------------------------------------
# Generic Models
# ----------------------------------------------------------------------


class K8sModel(BaseModel):
    """Base for all manifest models.

    Unknown fields are retained so that a decoded manifest dumps back into the
    same manifest, even if we only model a fraction of its schema.

    """

    model_config = ConfigDict(extra="allow")

    @model_validator(mode="before")
    @classmethod
    def drop_nulls(cls, data: Any) -> Any:
        """Treat an explicit `null` like an absent field.

        Only applies to fields whose default is not `None`, ie `labels: null`
        becomes `{}` but `selector: null` stays `None`.

        """
        if not isinstance(data, dict):
            return data

        fields = cls.model_fields
        return {
            k: v
            for k, v in data.items()
            if v is not None or k not in fields or fields[k].default is None
        }


# ----------------------------------------------------------------------
# Kubernetes
# ----------------------------------------------------------------------


class K8sMetadata(K8sModel):
    name: str = ""
    namespace: str = ""
    labels: Dict[str, str] = {}
    annotations: Dict[str, str] = {}
    creationTimestamp: Any = None


class K8sLabelSelector(K8sModel):
    # NOTE: `None` and `{}` are different things here. Only the former
    # will be defaulted.
    matchLabels: Optional[Dict[str, str]] = None
    matchExpressions: List[dict] = []


class K8sEnvVar(K8sModel):
    name: str
    value: str = ""
    valueFrom: Any = None


class K8sProbeHttp(K8sModel):
    path: str = ""
    port: Union[int, str] = 0


class K8sProbe(K8sModel):
    httpGet: Optional[K8sProbeHttp] = None
    initialDelaySeconds: int = 0
    timeoutSeconds: int = 0
    periodSeconds: int = 0
    successThreshold: int = 0
    failureThreshold: int = 0


class K8sRequestLimit(K8sModel):
    requests: Dict[str, Any] = {}
    limits: Dict[str, Any] = {}


class K8sContainerPort(K8sModel):
    name: str = ""
    containerPort: int = 0
    hostPort: int = 0
    protocol: str = ""


class K8sVolumeMount(K8sModel):
    name: str = ""
    mountPath: str = ""
    readOnly: bool = False


class K8sVolume(K8sModel):
    name: str = ""


class K8sContainer(K8sModel):
    name: str = ""
    image: str = ""
    imagePullPolicy: str = ""
    command: List[str] = []
    args: List[str] = []
    env: List[K8sEnvVar] = []
    ports: List[K8sContainerPort] = []
    resources: K8sRequestLimit = K8sRequestLimit()
    livenessProbe: Optional[K8sProbe] = None
    readinessProbe: Optional[K8sProbe] = None
    volumeMounts: List[K8sVolumeMount] = []
    terminationMessagePath: str = ""
    terminationMessagePolicy: str = ""


class K8sPodSpec(K8sModel):
    containers: List[K8sContainer] = []
    initContainers: List[K8sContainer] = []
    volumes: List[K8sVolume] = []
    restartPolicy: str = ""
    dnsPolicy: str = ""
    serviceAccountName: str = ""
    schedulerName: str = ""
    terminationGracePeriodSeconds: Optional[int] = None
    securityContext: Any = None


class K8sPodTemplateSpec(K8sModel):
    metadata: K8sMetadata = K8sMetadata()
    spec: K8sPodSpec = K8sPodSpec()


class K8sPodTemplate(K8sModel):
    """A standalone `PodTemplate`, used as the subject of structural validation."""

    apiVersion: str = ""
    kind: str = ""
    metadata: K8sMetadata = K8sMetadata()
    template: K8sPodTemplateSpec = K8sPodTemplateSpec()


class K8sPod(K8sModel):
    apiVersion: str = ""
    kind: str = ""
    metadata: K8sMetadata = K8sMetadata()
    spec: K8sPodSpec = K8sPodSpec()


# ----------------------------------------------------------------------
# Carrier resources.
# ----------------------------------------------------------------------


class PortRange(K8sModel):
    minPort: int = 0
    maxPort: int = 0


class GameServerPort(K8sModel):
    name: str = ""
    containerPort: Optional[int] = None
    containerPortRange: Optional[PortRange] = None
    hostPort: Optional[int] = None
    hostPortRange: Optional[PortRange] = None
    portPolicy: str = ""
    protocol: str = ""


class GameServerSpec(K8sModel):
    ports: List[GameServerPort] = []
    template: K8sPodTemplateSpec = K8sPodTemplateSpec()
    scheduling: str = ""
    readinessGates: List[str] = []
    deletableGates: List[str] = []


class GameServer(K8sModel):
    apiVersion: str = ""
    kind: str = ""
    metadata: K8sMetadata = K8sMetadata()
    spec: GameServerSpec = GameServerSpec()


class GameServerTemplateSpec(K8sModel):
    metadata: K8sMetadata = K8sMetadata()
    spec: GameServerSpec = GameServerSpec()


class GameServerSetSpec(K8sModel):
    replicas: int = 0
    selector: Optional[K8sLabelSelector] = None
    template: GameServerTemplateSpec = GameServerTemplateSpec()
    scheduling: str = ""


class GameServerSet(K8sModel):
    apiVersion: str = ""
    kind: str = ""
    metadata: K8sMetadata = K8sMetadata()
    spec: GameServerSetSpec = GameServerSetSpec()


class RollingUpdateSquad(K8sModel):
    # Absolute number (eg 5) or a percentage of the replicas (eg "25%").
    maxUnavailable: Optional[Union[int, str]] = None
    maxSurge: Optional[Union[int, str]] = None


class SquadStrategy(K8sModel):
    type: str = ""
    rollingUpdate: Optional[RollingUpdateSquad] = None


class SquadSpec(K8sModel):
    replicas: int = 0
    selector: Optional[K8sLabelSelector] = None
    template: GameServerTemplateSpec = GameServerTemplateSpec()
    strategy: SquadStrategy = SquadStrategy()
    revisionHistoryLimit: Optional[int] = None
    scheduling: str = ""


class Squad(K8sModel):
    apiVersion: str = ""
    kind: str = ""
    metadata: K8sMetadata = K8sMetadata()
    spec: SquadSpec = SquadSpec()


# ----------------------------------------------------------------------
# Admission Review.
# ----------------------------------------------------------------------


class GroupVersionKind(BaseModel):
    group: str = ""
    version: str = ""
    kind: str = ""


class AdmissionRequest(BaseModel):
    uid: str = ""
    kind: GroupVersionKind = GroupVersionKind()
    resource: Dict[str, str] = {}
    name: str = ""
    namespace: str = ""
    operation: str = ""
    userInfo: Dict[str, Any] = {}

    # Raw manifests. The webhook decodes them once it knows the kind.
    object: Optional[Dict[str, Any]] = None
    oldObject: Optional[Dict[str, Any]] = None


class StatusCause(BaseModel):
    reason: str = ""
    message: str = ""
    field: str = ""


class StatusDetails(BaseModel):
    name: str = ""
    group: str = ""
    kind: str = ""
    uid: str = ""
    causes: List[StatusCause] = []


class Status(BaseModel):
    code: int = 0
    message: str = ""
    details: Optional[StatusDetails] = None


class AdmissionResponse(BaseModel):
    uid: str = ""
    allowed: bool = False
    status: Optional[Status] = None

    # Base64 encoded JSON patch.
    patch: Optional[str] = None
    patchType: Optional[str] = None


class AdmissionReview(BaseModel):
    apiVersion: str = "admission.k8s.io/v1"
    kind: str = "AdmissionReview"
    request: Optional[AdmissionRequest] = None
    response: Optional[AdmissionResponse] = None


# ----------------------------------------------------------------------
# Webhook Internal Models.
# ----------------------------------------------------------------------


class FieldError(BaseModel):
    """A single problem with a single field, eg `spec.ports[0].hostPort`."""

    model_config = ConfigDict(extra="forbid")

    type: str
    field: str
    detail: str = ""
    value: Any = None


class Decision(BaseModel):
    """Outcome of a single admission request."""

    model_config = ConfigDict(extra="forbid")

    allowed: bool
    patch: Optional[bytes] = None
    patchType: Optional[str] = None
    reason: str = ""
    causes: List[FieldError] = []
    code: int = 0


class SideCarConfig(BaseModel):
    """Operator supplied configuration of the injected SDK sidecar."""

    model_config = ConfigDict(extra="forbid")

    image: str
    cpu: str = "100m"
    memory: str = "100M"
    httpPort: int = Field(default=9021, ge=1, le=65535)
    grpcPort: int = Field(default=9020, ge=1, le=65535)

    @field_validator("cpu", "memory")
    @classmethod
    def valid_quantity(cls, v: str) -> str:
        # An empty quantity is valid and means "do not set a resource".
        if v == "":
            return v
        parse_quantity(v)
        return v


class ServerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kubeconfig: Path
    kubecontext: str

    loglevel: str
    host: str
    port: int

    # Serve plain HTTP unless both are provided.
    tls_cert: str = ""
    tls_key: str = ""

    sidecar: SideCarConfig


class WatchedResource(BaseModel):
    """Each watch uses one instance of this to track the resource it monitors."""

    model_config = ConfigDict(extra="forbid")

    apiVersion: str
    kind: str
    path: str

    # Cached manifests as `{"namespace/name": manifest}`.
    manifests: Dict[str, dict] = {}


def factory_WatchedResource() -> Dict[str, WatchedResource]:
    """Aggregate all the cached resources.

    There is one `Watch` instance for each resource.
    """
    data = dict(
        ServiceAccount=WatchedResource(
            kind="ServiceAccount", apiVersion="v1", path="/api/v1/serviceaccounts"
        ),
        RoleBinding=WatchedResource(
            kind="RoleBinding",
            apiVersion="rbac.authorization.k8s.io/v1",
            path="/apis/rbac.authorization.k8s.io/v1/rolebindings",
        ),
    )
    return data


class Database(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # All cached K8s resources.
    resources: Dict[str, WatchedResource] = Field(
        default_factory=factory_WatchedResource
    )

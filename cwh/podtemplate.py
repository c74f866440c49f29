"""Structural validation of Pod templates and object metadata.

This replicates the salient subset of the rules the API server applies to a
`PodTemplate`. The webhook uses it to reject GameServer templates early,
ie before the controller tries (and fails) to create their Pods.

"""

import re
from typing import Dict, List, Protocol, Set

import cwh.field as field
from cwh.models import (
    FieldError,
    K8sContainer,
    K8sMetadata,
    K8sPodSpec,
    K8sPodTemplate,
)

DNS1123_LABEL_MAX_LENGTH = 63
DNS1123_SUBDOMAIN_MAX_LENGTH = 253
QUALIFIED_NAME_MAX_LENGTH = 63
LABEL_VALUE_MAX_LENGTH = 63
ANNOTATIONS_MAX_SIZE = 256 * (1 << 10)

DNS1123_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
DNS1123_SUBDOMAIN = re.compile(
    r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$"
)
QUALIFIED_NAME = re.compile(r"^([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9]$")
LABEL_VALUE = re.compile(r"^(([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9])?$")
ENV_VAR_NAME = re.compile(r"^[-._a-zA-Z][-._a-zA-Z0-9]*$")
IANA_SVC_NAME = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")

PULL_POLICIES = ["Always", "IfNotPresent", "Never"]
RESTART_POLICIES = ["Always", "OnFailure", "Never"]
DNS_POLICIES = ["ClusterFirstWithHostNet", "ClusterFirst", "Default", "None"]
TERMINATION_MESSAGE_POLICIES = ["File", "FallbackToLogsOnError"]
PROTOCOLS = ["TCP", "UDP", "SCTP"]


class PodTemplateValidator(Protocol):
    """Validate a fully defaulted `PodTemplate`."""

    def validate(self, template: K8sPodTemplate) -> List[FieldError]: ...


# ----------------------------------------------------------------------
# Names, labels and annotations.
# ----------------------------------------------------------------------


def is_dns1123_label(value: str) -> List[str]:
    errs = []
    if len(value) > DNS1123_LABEL_MAX_LENGTH:
        errs.append(f"must be no more than {DNS1123_LABEL_MAX_LENGTH} characters")
    if DNS1123_LABEL.match(value) is None:
        errs.append(
            "a lowercase RFC 1123 label must consist of lower case alphanumeric "
            "characters or '-', and must start and end with an alphanumeric character"
        )
    return errs


def is_dns1123_subdomain(value: str) -> List[str]:
    errs = []
    if len(value) > DNS1123_SUBDOMAIN_MAX_LENGTH:
        errs.append(
            f"must be no more than {DNS1123_SUBDOMAIN_MAX_LENGTH} characters"
        )
    if DNS1123_SUBDOMAIN.match(value) is None:
        errs.append(
            "a lowercase RFC 1123 subdomain must consist of lower case alphanumeric "
            "characters, '-' or '.', and must start and end with an alphanumeric "
            "character"
        )
    return errs


def is_qualified_name(value: str) -> List[str]:
    """Validate label and annotation keys, eg `carrier.ocgi.dev/squad`."""
    prefix, sep, name = value.rpartition("/")
    if sep and prefix == "":
        return ["prefix part must be non-empty"]
    if value.count("/") > 1:
        return [
            "a qualified name must consist of an optional DNS subdomain prefix "
            "and a name, separated by a single '/'"
        ]

    errs = []
    if prefix != "":
        errs += [f"prefix part {_}" for _ in is_dns1123_subdomain(prefix)]

    if name == "":
        errs.append("name part must be non-empty")
    elif len(name) > QUALIFIED_NAME_MAX_LENGTH:
        errs.append(f"name part must be no more than {QUALIFIED_NAME_MAX_LENGTH} characters")
    if name != "" and QUALIFIED_NAME.match(name) is None:
        errs.append(
            "name part must consist of alphanumeric characters, '-', '_' or '.', "
            "and must start and end with an alphanumeric character"
        )
    return errs


def is_label_value(value: str) -> List[str]:
    errs = []
    if len(value) > LABEL_VALUE_MAX_LENGTH:
        errs.append(f"must be no more than {LABEL_VALUE_MAX_LENGTH} characters")
    if LABEL_VALUE.match(value) is None:
        errs.append(
            "a valid label must be an empty string or consist of alphanumeric "
            "characters, '-', '_' or '.', and must start and end with an "
            "alphanumeric character"
        )
    return errs


def validate_labels(labels: Dict[str, str], path: str) -> List[FieldError]:
    errs: List[FieldError] = []
    for key, value in labels.items():
        for msg in is_qualified_name(key):
            errs.append(field.invalid(path, key, msg))
        for msg in is_label_value(value):
            errs.append(field.invalid(path, value, msg))
    return errs


def validate_annotations(annotations: Dict[str, str], path: str) -> List[FieldError]:
    errs: List[FieldError] = []
    total = 0
    for key, value in annotations.items():
        for msg in is_qualified_name(key.lower()):
            errs.append(field.invalid(path, key, msg))
        total += len(key) + len(value)

    if total > ANNOTATIONS_MAX_SIZE:
        errs.append(field.too_long(path, total, ANNOTATIONS_MAX_SIZE))
    return errs


def validate_metadata(meta: K8sMetadata, path: str) -> List[FieldError]:
    errs = validate_labels(meta.labels, field.join(path, "labels"))
    errs += validate_annotations(meta.annotations, field.join(path, "annotations"))
    return errs


# ----------------------------------------------------------------------
# Defaulting.
# ----------------------------------------------------------------------


def default_pull_policy(image: str) -> str:
    """Return `Always` for `latest` (or untagged) images, `IfNotPresent` otherwise."""
    if "@" in image:
        return "IfNotPresent"
    name = image.rpartition("/")[2]
    tag = name.partition(":")[2]
    return "Always" if tag in ("", "latest") else "IfNotPresent"


def set_pod_template_defaults(template: K8sPodTemplate) -> None:
    """Fill in the values the API server would set on a new `PodTemplate`.

    NOTE: this function will modify the `template` in-place.

    """
    spec = template.template.spec
    spec.restartPolicy = spec.restartPolicy or "Always"
    spec.dnsPolicy = spec.dnsPolicy or "ClusterFirst"
    spec.schedulerName = spec.schedulerName or "default-scheduler"
    if spec.terminationGracePeriodSeconds is None:
        spec.terminationGracePeriodSeconds = 30
    if spec.securityContext is None:
        spec.securityContext = {}

    for container in spec.initContainers + spec.containers:
        container.imagePullPolicy = container.imagePullPolicy or default_pull_policy(
            container.image
        )
        container.terminationMessagePath = (
            container.terminationMessagePath or "/dev/termination-log"
        )
        container.terminationMessagePolicy = (
            container.terminationMessagePolicy or "File"
        )
        for port in container.ports:
            port.protocol = port.protocol or "TCP"


# ----------------------------------------------------------------------
# Validation.
# ----------------------------------------------------------------------


class CorePodTemplateValidator:
    """Validate Pod templates with the core rules of the API server."""

    def validate(self, template: K8sPodTemplate) -> List[FieldError]:
        errs: List[FieldError] = []

        for msg in is_dns1123_subdomain(template.metadata.name):
            errs.append(field.invalid("metadata.name", template.metadata.name, msg))
        for msg in is_dns1123_label(template.metadata.namespace):
            errs.append(
                field.invalid("metadata.namespace", template.metadata.namespace, msg)
            )

        errs += validate_metadata(template.template.metadata, "template.metadata")
        errs += self.validate_pod_spec(template.template.spec, "template.spec")
        return errs

    def validate_pod_spec(self, spec: K8sPodSpec, path: str) -> List[FieldError]:
        errs: List[FieldError] = []

        # Volumes.
        volumes: Set[str] = set()
        for idx, vol in enumerate(spec.volumes):
            vpath = field.join(path, "volumes", idx, "name")
            if vol.name == "":
                errs.append(field.required(vpath))
                continue
            for msg in is_dns1123_label(vol.name):
                errs.append(field.invalid(vpath, vol.name, msg))
            if vol.name in volumes:
                errs.append(field.duplicate(vpath, vol.name))
            volumes.add(vol.name)

        # Containers.
        if len(spec.containers) == 0:
            errs.append(field.required(field.join(path, "containers")))

        names: Set[str] = set()
        for kind, containers in (
            ("initContainers", spec.initContainers),
            ("containers", spec.containers),
        ):
            for idx, container in enumerate(containers):
                cpath = field.join(path, kind, idx)
                errs += self.validate_container(container, cpath, volumes)

                if container.name in names:
                    errs.append(
                        field.duplicate(field.join(cpath, "name"), container.name)
                    )
                names.add(container.name)

        # Pod level policies.
        if spec.restartPolicy not in RESTART_POLICIES:
            errs.append(
                field.not_supported(
                    field.join(path, "restartPolicy"),
                    spec.restartPolicy,
                    RESTART_POLICIES,
                )
            )
        if spec.dnsPolicy not in DNS_POLICIES:
            errs.append(
                field.not_supported(
                    field.join(path, "dnsPolicy"), spec.dnsPolicy, DNS_POLICIES
                )
            )

        if spec.serviceAccountName != "":
            sa_path = field.join(path, "serviceAccountName")
            for msg in is_dns1123_subdomain(spec.serviceAccountName):
                errs.append(field.invalid(sa_path, spec.serviceAccountName, msg))

        grace = spec.terminationGracePeriodSeconds
        if grace is not None and grace < 0:
            errs.append(
                field.invalid(
                    field.join(path, "terminationGracePeriodSeconds"),
                    grace,
                    "must be greater than or equal to 0",
                )
            )
        return errs

    def validate_container(
        self, container: K8sContainer, path: str, volumes: Set[str]
    ) -> List[FieldError]:
        errs: List[FieldError] = []

        name_path = field.join(path, "name")
        if container.name == "":
            errs.append(field.required(name_path))
        else:
            for msg in is_dns1123_label(container.name):
                errs.append(field.invalid(name_path, container.name, msg))

        if container.image.strip() == "":
            errs.append(field.required(field.join(path, "image")))
        elif container.image != container.image.strip():
            errs.append(
                field.invalid(
                    field.join(path, "image"),
                    container.image,
                    "must not have leading or trailing whitespace",
                )
            )

        if container.imagePullPolicy not in PULL_POLICIES:
            errs.append(
                field.not_supported(
                    field.join(path, "imagePullPolicy"),
                    container.imagePullPolicy,
                    PULL_POLICIES,
                )
            )
        if container.terminationMessagePolicy not in TERMINATION_MESSAGE_POLICIES:
            errs.append(
                field.not_supported(
                    field.join(path, "terminationMessagePolicy"),
                    container.terminationMessagePolicy,
                    TERMINATION_MESSAGE_POLICIES,
                )
            )

        # Ports.
        port_names: Set[str] = set()
        for idx, port in enumerate(container.ports):
            ppath = field.join(path, "ports", idx)
            if port.name != "":
                if IANA_SVC_NAME.match(port.name) is None or len(port.name) > 15:
                    errs.append(
                        field.invalid(
                            field.join(ppath, "name"),
                            port.name,
                            "must be no more than 15 characters and consist of "
                            "lower case alphanumeric characters or '-'",
                        )
                    )
                if port.name in port_names:
                    errs.append(field.duplicate(field.join(ppath, "name"), port.name))
                port_names.add(port.name)

            if not 1 <= port.containerPort <= 65535:
                errs.append(
                    field.invalid(
                        field.join(ppath, "containerPort"),
                        port.containerPort,
                        "must be between 1 and 65535, inclusive",
                    )
                )
            if not 0 <= port.hostPort <= 65535:
                errs.append(
                    field.invalid(
                        field.join(ppath, "hostPort"),
                        port.hostPort,
                        "must be between 1 and 65535, inclusive",
                    )
                )
            if port.protocol not in PROTOCOLS:
                errs.append(
                    field.not_supported(
                        field.join(ppath, "protocol"), port.protocol, PROTOCOLS
                    )
                )

        # Environment variables.
        for idx, env in enumerate(container.env):
            epath = field.join(path, "env", idx, "name")
            if env.name == "":
                errs.append(field.required(epath))
            elif ENV_VAR_NAME.match(env.name) is None:
                errs.append(
                    field.invalid(
                        epath,
                        env.name,
                        "a valid environment variable name must consist of "
                        "alphabetic characters, digits, '_', '-', or '.', and "
                        "must not start with a digit",
                    )
                )

        # Volume mounts must reference a volume of the Pod.
        for idx, mount in enumerate(container.volumeMounts):
            mpath = field.join(path, "volumeMounts", idx)
            if mount.name == "":
                errs.append(field.required(field.join(mpath, "name")))
            elif mount.name not in volumes:
                errs.append(
                    field.FieldError(
                        type="FieldValueNotFound",
                        field=field.join(mpath, "name"),
                        value=mount.name,
                    )
                )
            if mount.mountPath == "":
                errs.append(field.required(field.join(mpath, "mountPath")))
        return errs

"""Validate Carrier resources on creation and on update.

Create time checks inspect a single (already defaulted) manifest. Update time
checks first copy the fields that may change from the new onto a clone of the
old manifest and then compare what is left.

"""

from typing import Any, List

import cwh.field as field
import cwh.podtemplate as podtemplate
from cwh.defaults import DYNAMIC
from cwh.models import (
    FieldError,
    GameServer,
    GameServerSet,
    GameServerSpec,
    K8sMetadata,
    K8sPodTemplate,
    K8sPodTemplateSpec,
    Squad,
)
from cwh.podtemplate import (
    LABEL_VALUE_MAX_LENGTH,
    CorePodTemplateValidator,
    PodTemplateValidator,
)

# Forbidden update of the GameServer spec in a GameServerSet or Squad template.
SPEC_IMMUTABLE = (
    "GameServer Spec are not allowed to changed, expect for image and resource"
)


# ----------------------------------------------------------------------
# Semantic equality.
# ----------------------------------------------------------------------


def prune(value: Any) -> Any:
    """Recursively drop `None`, empty lists and empty dicts from `value`."""
    if isinstance(value, dict):
        out = {k: prune(v) for k, v in value.items()}
        return {k: v for k, v in out.items() if v not in (None, [], {})}
    if isinstance(value, list):
        return [prune(_) for _ in value]
    return value


def semantic_equal(a: Any, b: Any) -> bool:
    """Return `True` if `a` and `b` only differ in unset vs empty fields."""
    if hasattr(a, "model_dump"):
        a = a.model_dump(mode="json", exclude_defaults=True)
    if hasattr(b, "model_dump"):
        b = b.model_dump(mode="json", exclude_defaults=True)
    return prune(a) == prune(b)


# ----------------------------------------------------------------------
# Shared rules.
# ----------------------------------------------------------------------


def validate_name(meta: K8sMetadata) -> List[FieldError]:
    """The name must fit into the labels of the objects the controllers create."""
    # Label values are limited in bytes, not characters.
    size = len(meta.name.encode())
    if size > LABEL_VALUE_MAX_LENGTH:
        return [field.too_long("name", size, LABEL_VALUE_MAX_LENGTH)]
    return []


def validate_labels_and_annotations(meta: K8sMetadata) -> List[FieldError]:
    errs = podtemplate.validate_labels(meta.labels, "labels")
    errs += podtemplate.validate_annotations(meta.annotations, "annotations")
    return errs


def validate_spec(spec: GameServerSpec) -> List[FieldError]:
    """Check the port declarations and the pod template metadata."""
    errs: List[FieldError] = []
    for idx, port in enumerate(spec.ports):
        path = field.join("spec", "ports", idx)
        cpr, hpr = port.containerPortRange, port.hostPortRange

        if cpr is not None and cpr.minPort > cpr.maxPort:
            errs.append(
                field.invalid(
                    field.join(path, "containerPortRange"),
                    cpr.minPort,
                    "containerPortRange.minPort can not be larger than "
                    "containerPortRange.maxPort",
                )
            )
        if hpr is not None and hpr.minPort > hpr.maxPort:
            errs.append(
                field.invalid(
                    field.join(path, "hostPortRange"),
                    hpr.minPort,
                    "hostPortRange.minPort can not be larger than "
                    "hostPortRange.maxPort",
                )
            )
        if cpr is not None and port.containerPort is not None:
            errs.append(
                field.forbidden(
                    field.join(path, "containerPortRange"),
                    "containerPortRange and ContainerPort are exclusive in one "
                    "GameServer Port",
                )
            )
        if port.containerPort is not None and port.containerPort <= 0:
            errs.append(
                field.invalid(
                    field.join(path, "containerPort"),
                    port.containerPort,
                    "containerPort cannot <= 0",
                )
            )
        if cpr is not None and cpr.minPort <= 0:
            errs.append(
                field.forbidden(
                    field.join(path, "containerPortRange"),
                    "containerPortRange.minPort cannot <= 0",
                )
            )
        if cpr is not None and cpr.maxPort <= 0:
            errs.append(
                field.forbidden(
                    field.join(path, "containerPortRange"),
                    "containerPortRange.maxPort cannot <= 0",
                )
            )
        if port.hostPort is not None and port.hostPort > 0 and port.portPolicy == DYNAMIC:
            errs.append(
                field.forbidden(
                    field.join(path, "hostPort"),
                    "hostPort should not filled when policy is dynamic",
                )
            )
    return errs + validate_labels_and_annotations(spec.template.metadata)


def validate_pod_template(
    template: K8sPodTemplate, validator: PodTemplateValidator | None = None
) -> List[FieldError]:
    """Apply the platform defaults to a copy of `template` and validate it.

    The template receives a placeholder name and namespace because the
    manifest it was extracted from has no meaningful value for either.

    """
    validator = validator or CorePodTemplateValidator()
    template = template.model_copy(deep=True)
    template.metadata.name = "fake"
    template.metadata.namespace = "fake"
    podtemplate.set_pod_template_defaults(template)
    return validator.validate(template)


# ----------------------------------------------------------------------
# Create.
# ----------------------------------------------------------------------


def validate_gameserver(
    gs: GameServer, validator: PodTemplateValidator | None = None
) -> List[FieldError]:
    errs = validate_name(gs.metadata)
    errs += validate_spec(gs.spec)
    errs += validate_pod_template(K8sPodTemplate(template=gs.spec.template), validator)
    return errs


def _validate_gameserver_template(
    meta: K8sMetadata,
    tmeta: K8sMetadata,
    spec: GameServerSpec,
    validator: PodTemplateValidator | None,
) -> List[FieldError]:
    errs = validate_name(meta)
    errs += validate_spec(spec)
    errs += validate_labels_and_annotations(tmeta)
    tpl = K8sPodTemplate(
        metadata=meta.model_copy(deep=True),
        template=spec.template.model_copy(deep=True),
    )
    errs += validate_pod_template(tpl, validator)
    return errs


def validate_gameserverset(
    gss: GameServerSet, validator: PodTemplateValidator | None = None
) -> List[FieldError]:
    return _validate_gameserver_template(
        gss.metadata, gss.spec.template.metadata, gss.spec.template.spec, validator
    )


def validate_squad(
    squad: Squad, validator: PodTemplateValidator | None = None
) -> List[FieldError]:
    return _validate_gameserver_template(
        squad.metadata,
        squad.spec.template.metadata,
        squad.spec.template.spec,
        validator,
    )


# ----------------------------------------------------------------------
# Update.
# ----------------------------------------------------------------------


def _copy_images(src: K8sPodTemplateSpec, dst: K8sPodTemplateSpec, pull_policy: bool):
    """Copy the container images (and pull policies) from `src` to `dst` by index."""
    for src_c, dst_c in zip(src.spec.containers, dst.spec.containers):
        dst_c.image = src_c.image
        if pull_policy:
            dst_c.imagePullPolicy = src_c.imagePullPolicy


def validate_gameserver_update(old: GameServer, new: GameServer) -> List[FieldError]:
    """Only the container images and the host ports of a GameServer may change."""
    errs = validate_name(new.metadata)
    old = old.model_copy(deep=True)

    _copy_images(new.spec.template, old.spec.template, pull_policy=False)

    if not semantic_equal(old.spec.readinessGates, new.spec.readinessGates):
        errs.append(
            field.forbidden(
                "template.spec.readinessGates",
                "readinessGates cannot be updated after creation",
            )
        )
    if not semantic_equal(old.spec.deletableGates, new.spec.deletableGates):
        errs.append(
            field.forbidden(
                "template.spec.deletableGates",
                "deletableGates cannot be updated after creation",
            )
        )

    # Host ports are allocated by the controller after the GameServer exists.
    for old_port, new_port in zip(old.spec.ports, new.spec.ports):
        old_port.hostPort = new_port.hostPort
        old_port.hostPortRange = new_port.hostPortRange

    old_ports = [_.model_dump(mode="json", exclude_defaults=True) for _ in old.spec.ports]
    new_ports = [_.model_dump(mode="json", exclude_defaults=True) for _ in new.spec.ports]
    if not semantic_equal(old_ports, new_ports):
        errs.append(
            field.forbidden(
                "template.spec.ports", "ports cannot be updated after creation"
            )
        )

    if not semantic_equal(old.spec.template.spec, new.spec.template.spec):
        errs.append(
            field.forbidden(
                "template.spec.template", "template cannot be updated after creation"
            )
        )
    return errs


def validate_gameserverset_update(
    old: GameServerSet, new: GameServerSet
) -> List[FieldError]:
    """Only the images, pull policies and replicas of a GameServerSet may change."""
    errs = validate_name(new.metadata)
    old = old.model_copy(deep=True)

    _copy_images(new.spec.template.spec.template, old.spec.template.spec.template, True)
    old.spec.replicas = new.spec.replicas

    if not semantic_equal(old.spec.template.spec, new.spec.template.spec):
        errs.append(field.forbidden("spec.template.spec", SPEC_IMMUTABLE))
    return errs


def validate_squad_update(old: Squad, new: Squad) -> List[FieldError]:
    """Only the images and pull policies of the Squad template may change.

    Everything outside the GameServer spec of the template, eg the replicas
    or the update strategy, is left to the Squad controller.

    """
    errs = validate_name(new.metadata)
    old = old.model_copy(deep=True)

    _copy_images(new.spec.template.spec.template, old.spec.template.spec.template, True)

    if not semantic_equal(old.spec.template.spec, new.spec.template.spec):
        errs.append(field.forbidden("spec.template.spec", SPEC_IMMUTABLE))
    return errs

"""Admit, default and validate Carrier resources and Pods.

`mutate` routes an admission request to the handler of its kind. Each handler
returns the JSON patch for the API server (or `None`) and raises an
`AdmissionError` to reject the request. `mutate` converts both outcomes into a
`Decision` and `review_response` wraps that into the reply to the API server.

"""

import base64
import logging
from typing import Awaitable, Callable, Dict, List, Type, TypeVar

import pydantic

import cwh.field as field
import cwh.sidecar as sidecar
from cwh.defaults import (
    copy_defaults_for_squad,
    ensure_defaults_for_gameserver,
    ensure_defaults_for_gameserverset,
    ensure_defaults_for_squad,
)
from cwh.errors import AdmissionError, DecodeError, ValidationError
from cwh.models import (
    AdmissionRequest,
    AdmissionResponse,
    AdmissionReview,
    Decision,
    FieldError,
    GameServer,
    GameServerSet,
    K8sPod,
    SideCarConfig,
    Squad,
    Status,
    StatusDetails,
)
from cwh.patch import EMPTY_PATCH, create_json_patch
from cwh.podtemplate import CorePodTemplateValidator, PodTemplateValidator
from cwh.rbac import Provisioner
from cwh.validation import (
    validate_gameserver,
    validate_gameserver_update,
    validate_gameserverset,
    validate_gameserverset_update,
    validate_squad,
    validate_squad_update,
)

# Convenience.
logit = logging.getLogger("app")

CREATE = "CREATE"
UPDATE = "UPDATE"
PATCH_TYPE = "JSONPatch"

T = TypeVar("T", bound=pydantic.BaseModel)


class WebhookContext:
    """Everything the handlers need besides the request itself."""

    def __init__(
        self,
        sidecar: SideCarConfig,
        provisioner: Provisioner,
        validator: PodTemplateValidator | None = None,
    ):
        self.sidecar = sidecar
        self.provisioner = provisioner
        self.validator = validator or CorePodTemplateValidator()


Handler = Callable[[AdmissionRequest, WebhookContext], Awaitable[bytes | None]]


# ----------------------------------------------------------------------
# Decoding.
# ----------------------------------------------------------------------


def decode_review(body: bytes) -> AdmissionReview:
    """Return the `AdmissionReview` in `body` or raise `DecodeError`."""
    try:
        review = AdmissionReview.model_validate_json(body)
    except pydantic.ValidationError as err:
        raise DecodeError(f"cannot decode admission review: {err}")
    if review.request is None:
        raise DecodeError("admission review has no request")
    return review


def decode(model: Type[T], raw: dict | None) -> T:
    if raw is None:
        raise DecodeError(f"request contains no {model.__name__}")
    try:
        return model.model_validate(raw)
    except pydantic.ValidationError as err:
        logit.error("cannot decode object", {"kind": model.__name__, "reason": str(err)})
        raise DecodeError(f"cannot decode {model.__name__}: {err}")


def check(errs: List[FieldError]) -> None:
    """Raise `ValidationError` if there are any `errs`."""
    if len(errs) > 0:
        raise ValidationError(field.aggregate(errs), errs)


# ----------------------------------------------------------------------
# Handlers.
# ----------------------------------------------------------------------


async def for_gameserver(req: AdmissionRequest, ctx: WebhookContext) -> bytes | None:
    gs = decode(GameServer, req.object)

    if req.operation == CREATE:
        sa_name = gs.spec.template.spec.serviceAccountName
        await ctx.provisioner.ensure_service_identity(req.namespace, sa_name)

        new_gs = ensure_defaults_for_gameserver(gs)
        check(validate_gameserver(new_gs, ctx.validator))
        return create_json_patch(gs, new_gs)

    if req.operation == UPDATE:
        old_gs = decode(GameServer, req.oldObject)
        check(validate_gameserver_update(old_gs, gs))
    return None


async def for_gameserverset(req: AdmissionRequest, ctx: WebhookContext) -> bytes | None:
    gss = decode(GameServerSet, req.object)

    if req.operation == CREATE:
        sa_name = gss.spec.template.spec.template.spec.serviceAccountName
        await ctx.provisioner.ensure_service_identity(req.namespace, sa_name)

        new_gss = ensure_defaults_for_gameserverset(gss)
        check(validate_gameserverset(new_gss, ctx.validator))
        return create_json_patch(gss, new_gss)

    if req.operation == UPDATE:
        old_gss = decode(GameServerSet, req.oldObject)
        check(validate_gameserverset_update(old_gss, gss))
    return None


async def for_squad(req: AdmissionRequest, ctx: WebhookContext) -> bytes | None:
    squad = decode(Squad, req.object)

    if req.operation == CREATE:
        sa_name = squad.spec.template.spec.template.spec.serviceAccountName
        await ctx.provisioner.ensure_service_identity(req.namespace, sa_name)

        new_squad = ensure_defaults_for_squad(squad)
        check(validate_squad(new_squad, ctx.validator))
        return create_json_patch(squad, new_squad)

    if req.operation == UPDATE:
        old_squad = decode(Squad, req.oldObject)

        # Compare against the new Squad with the defaults of the old one or
        # every update that omits a defaulted field would be rejected.
        new_squad = copy_defaults_for_squad(old_squad, squad)
        check(validate_squad_update(old_squad, new_squad))
        return create_json_patch(squad, new_squad)
    return None


async def for_pod(req: AdmissionRequest, ctx: WebhookContext) -> bytes | None:
    pod = decode(K8sPod, req.object)
    if req.operation != CREATE:
        return None

    http_port, grpc_port = sidecar.get_ports(ctx.sidecar, pod)
    hook = sidecar.PortEnvs(http_port=http_port, grpc_port=grpc_port)
    opts = sidecar.sidecar_options(ctx.sidecar, pod, http_port, grpc_port)
    new_pod = sidecar.inject_sidecar(pod, hook, opts)
    return create_json_patch(pod, new_pod)


HANDLERS: Dict[str, Handler] = {
    "GameServer": for_gameserver,
    "GameServerSet": for_gameserverset,
    "Squad": for_squad,
    "Pod": for_pod,
}


# ----------------------------------------------------------------------
# Entry point.
# ----------------------------------------------------------------------


async def mutate(req: AdmissionRequest, ctx: WebhookContext) -> Decision:
    """Return the admission decision for `req`."""
    kind = req.kind.kind
    meta_log = {
        "kind": kind,
        "namespace": req.namespace,
        "name": req.name,
        "uid": req.uid,
        "operation": req.operation,
    }
    logit.info("admission review", meta_log)

    handler = HANDLERS.get(kind)
    if handler is None:
        logit.debug("ignore unsupported kind", meta_log)
        return Decision(allowed=True)

    try:
        patch = await handler(req, ctx)
    except AdmissionError as err:
        logit.warning("rejected", meta_log | {"reason": err.message})
        return Decision(allowed=False, reason=err.message, causes=err.causes, code=400)

    if patch is None or patch == EMPTY_PATCH:
        return Decision(allowed=True)

    logit.debug("patch", meta_log | {"patch": patch.decode()})
    return Decision(allowed=True, patch=patch, patchType=PATCH_TYPE)


def review_response(review: AdmissionReview, decision: Decision) -> AdmissionReview:
    """Wrap `decision` into the `AdmissionReview` the API server expects."""
    req = review.request or AdmissionRequest()
    status = Status(
        code=decision.code,
        message=decision.reason,
        details=StatusDetails(
            name=req.name,
            group=req.kind.group,
            kind=req.kind.kind,
            uid=req.uid,
            causes=field.status_causes(decision.causes),
        ),
    )
    resp = AdmissionResponse(uid=req.uid, allowed=decision.allowed, status=status)
    if decision.patch:
        resp.patch = base64.b64encode(decision.patch).decode()
        resp.patchType = decision.patchType or PATCH_TYPE
    return AdmissionReview(apiVersion=review.apiVersion, kind=review.kind, response=resp)


def error_response(message: str) -> AdmissionReview:
    """Return the reply to a review we could not even decode."""
    resp = AdmissionResponse(allowed=False, status=Status(message=message))
    return AdmissionReview(response=resp)

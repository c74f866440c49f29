import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Tuple

import pydantic
from fastapi import APIRouter, FastAPI, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.types import ASGIApp

import cwh.watch
from cwh.errors import DecodeError, ProvisioningError
from cwh.models import Database, ServerConfig, SideCarConfig
from cwh.rbac import K8sAccessControl, Provisioner
from cwh.webhook import (
    WebhookContext,
    decode_review,
    error_response,
    mutate,
    review_response,
)

# Convenience.
logit = logging.getLogger("app")

router = APIRouter()


# ----------------------------------------------------------------------
# Setup Server.
# ----------------------------------------------------------------------
def compile_server_config() -> Tuple[ServerConfig, bool]:
    try:
        sidecar = SideCarConfig(
            image=os.environ["CWH_SIDECAR_IMAGE"],
            cpu=os.getenv("CWH_SIDECAR_CPU", "100m"),
            memory=os.getenv("CWH_SIDECAR_MEMORY", "100M"),
            httpPort=int(os.getenv("CWH_SIDECAR_HTTP_PORT", "9021")),
            grpcPort=int(os.getenv("CWH_SIDECAR_GRPC_PORT", "9020")),
        )

        cfg = ServerConfig(
            kubeconfig=Path(os.getenv("KUBECONFIG", "")),
            kubecontext=os.getenv("KUBECONTEXT", ""),
            loglevel=os.getenv("CWH_LOGLEVEL", "info"),
            host=os.getenv("CWH_HOST", "0.0.0.0"),
            port=int(os.getenv("CWH_PORT", "8080")),
            tls_cert=os.getenv("CWH_TLS_CERT", ""),
            tls_key=os.getenv("CWH_TLS_KEY", ""),
            sidecar=sidecar,
        )
        return cfg, False
    except (KeyError, ValueError, pydantic.ValidationError) as e:
        logit.error("invalid environment variables", {"reason": str(e)})
        return (
            ServerConfig(
                kubeconfig=Path(""),
                kubecontext="",
                loglevel="",
                host="",
                port=-1,
                sidecar=SideCarConfig(image=""),
            ),
            True,
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    db: Database = app.extra["db"]
    cfg: ServerConfig = app.extra["config"]

    # Start one watch per cached resource. Each watch needs its own client
    # because it closes it when it shuts down.
    tasks: List[asyncio.Task] = []
    events: List[asyncio.Event] = []
    try:
        for res in db.resources.values():
            k8scfg, err = cwh.watch.create_cluster_config(cfg.kubeconfig, cfg.kubecontext)
            if err:
                raise RuntimeError("cannot load K8s credentials")
            synced = asyncio.Event()
            events.append(synced)
            tasks.append(
                asyncio.create_task(cwh.watch.setup_k8s_watch(k8scfg, db, res, synced))
            )

        k8scfg, err = cwh.watch.create_cluster_config(cfg.kubeconfig, cfg.kubecontext)
        if err:
            raise RuntimeError("cannot load K8s credentials")

        async with k8scfg.client:
            # Do not serve any requests until all caches are complete.
            logit.info("wait for cache sync")
            await asyncio.gather(*[_.wait() for _ in events])

            provisioner = Provisioner(K8sAccessControl(k8scfg, db))
            try:
                await provisioner.ensure_cluster_role()
            except ProvisioningError as err:
                raise RuntimeError(err.message)

            app.extra["webhook"] = WebhookContext(cfg.sidecar, provisioner)

            logit.info("server startup complete")
            yield
    finally:
        # Also runs if the startup failed half way.
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
    logit.info("server shutdown complete")


# ----------------------------------------------------------------------
# Routes.
# ----------------------------------------------------------------------
@router.get("/healthz")
def get_healthz():
    return PlainTextResponse("ok")


@router.post("/mutate")
async def post_mutate(request: Request):
    body = await request.body()
    if len(body) == 0:
        logit.error("empty body")
        return PlainTextResponse("empty body", status_code=status.HTTP_400_BAD_REQUEST)

    content_type = request.headers.get("content-type", "")
    if content_type != "application/json":
        logit.error("invalid content type", {"content-type": content_type})
        return PlainTextResponse(
            "invalid Content-Type, expect `application/json`",
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
        )

    try:
        review = decode_review(body)
    except DecodeError as err:
        logit.error("cannot decode body", {"reason": err.message})
        ret = error_response(err.message)
        return JSONResponse(ret.model_dump(mode="json", exclude_none=True))

    assert review.request is not None
    ctx: WebhookContext = request.app.extra["webhook"]
    decision = await mutate(review.request, ctx)

    ret = review_response(review, decision)
    return JSONResponse(ret.model_dump(mode="json", exclude_none=True))


def make_app() -> ASGIApp:
    """Return a fully configured FastAPI instance."""
    cfg, err = compile_server_config()
    if err:
        raise RuntimeError("could not meet preconditions to start server")

    app = FastAPI(
        title="Carrier Webhook",
        summary="Admission webhook for Carrier game servers",
        version="0.1.0",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
    )
    app.extra["config"] = cfg
    app.extra["db"] = Database()

    app.include_router(router, prefix="", tags=["Webhook"])
    return app

"""Minimal K8s REST client for the caches and the provisioner.

All functions return `(payload, ..., err)` tuples instead of raising. GET
requests are retried with an exponential back off on network errors. Other
methods are sent exactly once because a lost response to a POST may still
have created the resource.

"""

import asyncio
import json
import logging
import ssl
from typing import Tuple
from urllib.parse import urlparse

import httpx
import tenacity as tc
from square.k8s import K8sConfig

# Transport level problems. The API server never saw, or never answered, these.
WEB_EXCEPTIONS = (httpx.RequestError, ssl.SSLError, KeyError, asyncio.TimeoutError)

IDEMPOTENT_METHODS = {"GET"}

# Convenience.
logit = logging.getLogger("app")


class retry_if_idempotent(tc.retry_base):
    """Only retry calls whose `method` argument is in `IDEMPOTENT_METHODS`."""

    def __call__(self, retry_state: tc.RetryCallState) -> bool:
        method = retry_state.args[1]
        return method.upper() in IDEMPOTENT_METHODS


def _log_retry(retry_state: tc.RetryCallState):
    k8sconfig, method, url = retry_state.args[:3]
    logit.warning(
        "retry K8s request",
        {
            "attempt": retry_state.attempt_number,
            "cluster": k8sconfig.name,
            "method": method,
            "path": urlparse(url).path,
        },
    )


async def _sleep(delay: float):
    # Separate function so that tests can patch the back off away.
    await asyncio.sleep(delay)


@tc.retry(
    retry=tc.retry_if_exception_type(WEB_EXCEPTIONS) & retry_if_idempotent(),
    stop=tc.stop_after_attempt(8) | tc.stop_after_delay(300),
    wait=tc.wait_exponential(multiplier=1, min=0, max=20) + tc.wait_random(-5, 5),
    before_sleep=_log_retry,
    sleep=_sleep,
    reraise=True,
)
async def _send(
    k8sconfig: K8sConfig, method: str, url: str, payload: dict | None
) -> httpx.Response:
    return await k8sconfig.client.request(method, url, json=payload)


async def request(
    k8sconfig: K8sConfig, method: str, url: str, payload: dict | None = None
) -> Tuple[dict, int, bool]:
    """Send `payload` to `url` and return `(response, status code, err)`.

    The status code is -1 if the API server could not be reached. A response
    that is not valid JSON is an error even if its status code is not.

    """
    log_meta = {"cluster": k8sconfig.name, "method": method, "url": url}

    try:
        resp = await _send(k8sconfig, method, url, payload)
    except WEB_EXCEPTIONS as err:
        logit.error("K8s unreachable", log_meta | {"reason": str(err)})
        return {}, -1, True

    try:
        data = json.loads(resp.text)
    except json.JSONDecodeError as err:
        logit.error(
            "K8s sent corrupt JSON",
            log_meta | {"code": resp.status_code, "reason": err.msg},
        )
        return {}, resp.status_code, True

    logit.debug("K8s request", log_meta | {"code": resp.status_code})
    return data, resp.status_code, False


async def get(k8sconfig: K8sConfig, url: str) -> Tuple[dict, bool]:
    """Return the resource at `url`. Anything but a 200 is an error."""
    data, code, err = await request(k8sconfig, "GET", url)
    if err or code != 200:
        logit.error("GET failed", {"code": code, "url": url})
        return data, True
    return data, False


async def post(k8sconfig: K8sConfig, url: str, payload: dict) -> Tuple[dict, int, bool]:
    """Create `payload` at `url`. Anything but a 201 is an error.

    The status code lets callers treat a 409 (already exists) differently.

    """
    data, code, err = await request(k8sconfig, "POST", url, payload)
    if err or code != 201:
        # Conflicts are routine when several webhook replicas race.
        log = logit.info if code == 409 else logit.error
        log("POST failed", {"code": code, "url": url})
        return data, code, True
    return data, code, False

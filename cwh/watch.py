"""Mirror K8s resources into the in-memory `Database`.

Each `WatchResource` owns one background task that keeps a LIST+WATCH session
with the API server alive and pushes the events into a queue. Iterating over
the `WatchResource` drains that queue.

A session starts with a LIST. Its items are compared to what the watch already
knows and the differences are queued as synthetic ADDED, MODIFIED and DELETED
events. The first LIST that succeeds is followed by the `SYNCED` marker. The
session then streams the WATCH endpoint from the resource version of the LIST
until the API server hangs up. A 410 (Gone) means the resource version is too
old and forces the next session to LIST again.

The admission handlers never talk to the watch directly. They only read the
manifests `setup_k8s_watch` stores in the `Database`.

"""

import asyncio
import json
import logging
import random
from pathlib import Path
from typing import Dict, List, Tuple

import square.k8s
from square.dtypes import ConnectionParameters, K8sConfig

import cwh.k8s
from cwh.models import Database, WatchedResource

# Convenience.
logit = logging.getLogger("app")

# Queue markers.
SYNCED = "__SYNCED__"
CANCELLED = "__CANCELLED__"
CRASHED = "__EXCEPTION__"

EVENTS = ("ADDED", "MODIFIED", "DELETED")

# How to rewrite an event that contradicts what we know about the UID. The key
# is `(event, uid_is_known)`.
CORRECTIONS = {("ADDED", True): "MODIFIED", ("MODIFIED", False): "ADDED"}


def resync_events(known: Dict[str, dict], items: List[dict]) -> List[Tuple[str, dict]]:
    """Return the events that turn `known` into the LIST result `items`.

    `known` maps UIDs to manifests. Deletions come first, then additions and
    finally modifications.

    """
    latest = {_["metadata"]["uid"]: _ for _ in items}

    events = [("DELETED", known[uid]) for uid in known.keys() - latest.keys()]
    events += [("ADDED", latest[uid]) for uid in latest.keys() - known.keys()]
    events += [
        ("MODIFIED", obj)
        for uid, obj in latest.items()
        if uid in known and known[uid] != obj
    ]
    return events


class WatchResource:
    """Async iterator over the events of the K8s resource at `path`.

    Usage:

    k8scfg, err = cwh.watch.create_cluster_config(Path(kubeconfig), context)
    assert not err
    async with cwh.watch.WatchResource(k8scfg, "/api/v1/serviceaccounts") as watch:
        async for data in watch:
            if data == cwh.watch.SYNCED:
                continue
            print(data["type"], data["object"]["metadata"]["name"])

    """

    def __init__(
        self,
        k8scfg: K8sConfig,
        path: str,
        rv: int = -1,
        timeout: int = 5,
        logger: logging.Logger = logging.getLogger("Watch"),
    ):
        self.logit = logger
        self.k8scfg = k8scfg

        self.list_path = path
        self.watch_path = f"{path}?watch=true&timeoutSeconds={timeout}"

        # Resume the WATCH from this version. Negative values force a LIST.
        self.last_rv = rv

        # What the API server has told us so far: `{UID: manifest}`.
        self.known: Dict[str, dict] = {}
        self.synced = False
        self.queue: asyncio.Queue = asyncio.Queue()

        self.tasks = self.start_tasks()

    def start_tasks(self) -> List[asyncio.Task]:
        return [asyncio.create_task(self.run())]

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.queue.get()
        if item in (CANCELLED, CRASHED):
            # Re-raise whatever killed the background task.
            self.tasks[0].result()
            raise StopAsyncIteration
        return item

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_value, traceback):
        for task in self.tasks:
            task.cancel()

    @property
    def meta_log(self) -> dict:
        url = self.k8scfg.client.base_url
        return {
            "component": "k8s-watch",
            "path": self.list_path,
            "host": str(url) if url else "",
        }

    def watch_url(self, rv: int) -> str:
        return f"{self.watch_path}&resourceVersion={rv}"

    async def emit(self, event: str, obj: dict) -> None:
        await self.queue.put({"type": event, "object": obj})

    async def relist(self) -> Tuple[int, bool]:
        """LIST the resource, queue the differences and return its version."""
        ret, err = await cwh.k8s.get(self.k8scfg, self.list_path)
        if err:
            return -1, True

        try:
            rv = int(ret["metadata"]["resourceVersion"])
            events = resync_events(self.known, ret["items"])
        except (KeyError, TypeError, ValueError):
            self.logit.error("invalid resource list", self.meta_log)
            return -1, True

        for event, obj in events:
            uid = obj["metadata"]["uid"]
            if event == "DELETED":
                del self.known[uid]
            else:
                self.known[uid] = obj
            await self.emit(event, obj)

        if not self.synced:
            self.synced = True
            await self.queue.put(SYNCED)
        return rv, False

    async def apply_event(self, event: str, obj: dict) -> None:
        """Record a WATCH event and queue it.

        Events that contradict `known`, eg an ADDED for a UID we already
        have, are logged and corrected. Deleting an unknown UID is dropped.

        """
        self.last_rv = int(obj["metadata"]["resourceVersion"])
        uid = obj["metadata"]["uid"]
        is_known = uid in self.known

        fixed = CORRECTIONS.get((event, is_known), event)
        if fixed != event:
            self.logit.warning(
                "inconsistent watch event",
                self.meta_log | {"uid": uid, "event": event, "as": fixed},
            )

        if fixed == "DELETED":
            if not is_known:
                self.logit.warning("delete of unknown uid", self.meta_log | {"uid": uid})
                return
            del self.known[uid]
        else:
            self.known[uid] = obj
        await self.emit(fixed, obj)

    async def handle_line(self, line: str) -> bool:
        """Process one line of the WATCH stream.

        Return `True` if the line signals a problem that warrants a back off
        before the next session.

        """
        # The API server ends every WATCH eventually.
        if line == "":
            self.logit.info("watch closed by server", self.meta_log)
            return False

        try:
            data = json.loads(line)
            event, obj = data["type"].upper(), data["object"]
        except (json.JSONDecodeError, KeyError, TypeError, AttributeError):
            self.logit.error("corrupt watch event", self.meta_log)
            return True

        if event in EVENTS:
            await self.apply_event(event, obj)
            return False

        self.logit.info("watch error", self.meta_log | {"event": event, "object": obj})
        if event == "ERROR" and isinstance(obj, dict) and obj.get("code") == 410:
            # Our version is too old: LIST again right away.
            self.last_rv = -1
            return False
        return True

    async def stream_once(self) -> bool:
        """Run one LIST (if required) plus WATCH session.

        Return `True` if the session failed, as opposed to the server closing
        the WATCH or expiring our resource version.

        """
        if self.last_rv < 0:
            rv, err = await self.relist()
            if err:
                return True
            self.last_rv = rv

        url = self.watch_url(self.last_rv)
        try:
            async with self.k8scfg.client.stream("GET", url) as stream:
                if stream.status_code != 200:
                    self.logit.warning(
                        "cannot start watch",
                        self.meta_log | {"status": stream.status_code},
                    )
                    return True

                async for line in stream.aiter_lines():
                    if await self.handle_line(line):
                        return True
        except cwh.k8s.WEB_EXCEPTIONS:
            self.logit.exception("watch aborted", self.meta_log)
            return True
        return False

    async def run(self) -> None:
        """Restart `stream_once` until cancelled."""
        try:
            while True:
                self.logit.info("watch connect", self.meta_log)
                if await self.stream_once():
                    await asyncio.sleep(5 + random.uniform(-2, 2))
        except asyncio.CancelledError:
            self.logit.info("watch task cancelled", self.meta_log)
            await self.queue.put(CANCELLED)
        except Exception:
            self.logit.exception("watch task crashed", self.meta_log)
            await self.queue.put(CRASHED)
            raise


def create_cluster_config(kubeconf: Path, context: str) -> Tuple[K8sConfig, bool]:
    """Return a K8s config with its own httpx client bound to the API server."""
    cfg, err = square.k8s.load_auto_config(kubeconf, context)
    if err:
        return K8sConfig(), True

    # WATCH requests stay open for minutes.
    params = ConnectionParameters(read=600, write=600, pool=600)
    cfg, err = square.k8s.create_httpx_client(cfg, params)
    if err:
        return K8sConfig(), True

    cfg.client.base_url = cfg.url
    return cfg, False


async def setup_k8s_watch(
    k8scfg: K8sConfig, db: Database, res: WatchedResource, synced: asyncio.Event
):
    """Mirror the resource `res` into `db` until cancelled.

    Set `synced` once the cache holds the complete initial resource list.

    """
    log_meta = {"apiVersion": res.apiVersion, "kind": res.kind}
    logit.info("watch started", log_meta)

    # Jitter the WATCH timeout so the watches do not reconnect in lockstep.
    timeout = 120 + int(random.uniform(-10, 10))
    try:
        watch = WatchResource(k8scfg, res.path, timeout=timeout, logger=logit)
        async with k8scfg.client, watch:
            async for data in watch:
                if data == SYNCED:
                    logit.info("cache synced", log_meta)
                    synced.set()
                elif track_resource(db, res, data):
                    logit.warning("cannot cache event", log_meta)
    except asyncio.CancelledError:
        logit.info("watch cancelled", log_meta)


def get_resource_key(manifest: dict) -> Tuple[str, bool]:
    """Return the cache key of `manifest`, eg `games/carrier-sdk`."""
    try:
        meta = manifest["metadata"]
        name = meta["name"]
    except (KeyError, TypeError):
        return "", True

    # Cluster wide resources have no namespace.
    return f"{meta.get('namespace', '')}/{name}", False


def track_resource(db: Database, res: WatchedResource, data: dict) -> bool:
    """Apply the watch event `data` to the cache of `res` in `db`.

    Return `True` if `data` is not a valid watch event.

    """
    try:
        evt, manifest = data["type"], data["object"]
    except (KeyError, TypeError):
        return True

    key, err = get_resource_key(manifest)
    if err or evt not in EVENTS:
        return True

    cache = db.resources[res.kind].manifests
    if evt == "DELETED":
        cache.pop(key, None)
    else:
        # WATCH events omit `kind` and `apiVersion` of the items.
        cache[key] = manifest | {"kind": res.kind, "apiVersion": res.apiVersion}
    return False

import base64
import json

import jsonpatch
import pytest

import cwh.webhook as webhook
from cwh.defaults import LB_READY_KEY
from cwh.errors import DecodeError
from cwh.models import AdmissionRequest, AdmissionReview, Decision, GameServer
from cwh.rbac import Outcome
from cwh.sidecar import SIDECAR_NAME

from .conftest import FakeAccessControl, load_manifest


def make_request(
    kind: str, operation: str, obj: dict | None, old: dict | None = None
) -> AdmissionRequest:
    return AdmissionRequest.model_validate(
        {
            "uid": "req-1",
            "kind": {"group": "carrier.ocgi.dev", "version": "v1alpha1", "kind": kind},
            "name": "demo",
            "namespace": "games",
            "operation": operation,
            "object": obj,
            "oldObject": old,
        }
    )


def apply(decision: Decision, obj: dict) -> dict:
    assert decision.patch is not None
    return jsonpatch.apply_patch(obj, json.loads(decision.patch))


class TestDecode:
    def test_decode_review(self):
        body = json.dumps({"request": {"uid": "1", "kind": {"kind": "Pod"}}})
        review = webhook.decode_review(body.encode())
        assert review.request is not None
        assert review.request.uid == "1"

        with pytest.raises(DecodeError):
            webhook.decode_review(b"{not json")
        with pytest.raises(DecodeError):
            webhook.decode_review(b"{}")

    async def test_corrupt_object(self, ctx):
        obj = load_manifest("gameserver")
        obj["spec"]["ports"] = "not-a-list"
        ret = await webhook.mutate(make_request("GameServer", "CREATE", obj), ctx)
        assert not ret.allowed
        assert ret.code == 400
        assert ret.reason.startswith("cannot decode GameServer")

    async def test_null_fields(self, ctx):
        """Explicit `null` values must decode like absent fields."""
        obj = load_manifest("gameserver")
        obj["metadata"]["labels"] = None
        obj["spec"]["readinessGates"] = None

        gs = webhook.decode(GameServer, obj)
        assert gs.metadata.labels == {}
        assert gs.spec.readinessGates == []

        ret = await webhook.mutate(make_request("GameServer", "CREATE", obj), ctx)
        assert ret.allowed
        assert apply(ret, obj)["spec"]["readinessGates"] == [LB_READY_KEY]

    async def test_missing_old_object(self, ctx):
        obj = load_manifest("gameserver")
        ret = await webhook.mutate(make_request("GameServer", "UPDATE", obj), ctx)
        assert not ret.allowed
        assert ret.reason == "request contains no GameServer"


class TestMutate:
    async def test_unknown_kind(self, ctx):
        ret = await webhook.mutate(make_request("Deployment", "CREATE", {}), ctx)
        assert ret == Decision(allowed=True)

    async def test_gameserver_create(self, ctx, access: FakeAccessControl):
        obj = load_manifest("gameserver")
        ret = await webhook.mutate(make_request("GameServer", "CREATE", obj), ctx)
        assert ret.allowed
        assert ret.patchType == "JSONPatch"

        out = apply(ret, obj)
        assert out["spec"]["readinessGates"] == [LB_READY_KEY]
        assert out["spec"]["scheduling"] == "MostAllocated"
        assert out["spec"]["ports"][0]["portPolicy"] == "LoadBalancer"
        assert out["spec"]["template"]["spec"]["serviceAccountName"] == "carrier-sdk"

        # The webhook must have provisioned the default service identity.
        assert [_["kind"] for _ in access.created] == ["ServiceAccount", "RoleBinding"]

    async def test_gameserver_create_invalid(self, ctx):
        obj = load_manifest("gameserver")
        obj["spec"]["ports"][0]["containerPort"] = 0
        ret = await webhook.mutate(make_request("GameServer", "CREATE", obj), ctx)
        assert not ret.allowed
        assert ret.code == 400
        assert ret.reason == (
            "spec.ports[0].containerPort: Invalid value: 0: containerPort cannot <= 0"
        )
        assert [_.field for _ in ret.causes] == ["spec.ports[0].containerPort"]

    async def test_provisioning_error(self, ctx, access: FakeAccessControl):
        access.lookup_result = Outcome.FAILED
        obj = load_manifest("gameserver")
        ret = await webhook.mutate(make_request("GameServer", "CREATE", obj), ctx)
        assert not ret.allowed
        assert "service account" in ret.reason

    async def test_custom_service_account(self, ctx, access: FakeAccessControl):
        access.lookup_result = Outcome.FAILED
        obj = load_manifest("gameserver")
        obj["spec"]["template"]["spec"]["serviceAccountName"] = "custom"
        ret = await webhook.mutate(make_request("GameServer", "CREATE", obj), ctx)
        assert ret.allowed
        assert access.created == []

    async def test_gameserver_update(self, ctx, access: FakeAccessControl):
        old = apply(
            await webhook.mutate(
                make_request("GameServer", "CREATE", load_manifest("gameserver")), ctx
            ),
            load_manifest("gameserver"),
        )
        access.created.clear()

        # New image and an allocated host port are fine.
        new = json.loads(json.dumps(old))
        new["spec"]["template"]["spec"]["containers"][0]["image"] = "demo:2.0"
        new["spec"]["ports"][0]["hostPort"] = 31000
        ret = await webhook.mutate(make_request("GameServer", "UPDATE", new, old), ctx)
        assert ret == Decision(allowed=True)

        # Updates never provision anything.
        assert access.created == []

        # Readiness gates are immutable.
        new["spec"]["readinessGates"] = []
        ret = await webhook.mutate(make_request("GameServer", "UPDATE", new, old), ctx)
        assert not ret.allowed
        assert ret.reason == (
            "template.spec.readinessGates: Forbidden: "
            "readinessGates cannot be updated after creation"
        )

    async def test_gameserverset_create_and_update(self, ctx):
        obj = load_manifest("gameserverset")
        ret = await webhook.mutate(make_request("GameServerSet", "CREATE", obj), ctx)
        assert ret.allowed
        old = apply(ret, obj)
        assert old["spec"]["selector"] == {
            "matchLabels": {"carrier.ocgi.dev/gameserverset": "demo-gss"}
        }

        new = json.loads(json.dumps(old))
        new["spec"]["replicas"] = 5
        ret = await webhook.mutate(make_request("GameServerSet", "UPDATE", new, old), ctx)
        assert ret == Decision(allowed=True)

        new["spec"]["template"]["spec"]["ports"][0]["name"] = "other"
        ret = await webhook.mutate(make_request("GameServerSet", "UPDATE", new, old), ctx)
        assert not ret.allowed
        assert [_.field for _ in ret.causes] == ["spec.template.spec"]

    async def test_squad_create(self, ctx):
        obj = load_manifest("squad")
        ret = await webhook.mutate(make_request("Squad", "CREATE", obj), ctx)
        assert ret.allowed

        out = apply(ret, obj)
        assert out["spec"]["revisionHistoryLimit"] == 10
        assert out["spec"]["strategy"] == {
            "type": "RollingUpdate",
            "rollingUpdate": {"maxUnavailable": "25%", "maxSurge": "25%"},
        }
        assert out["spec"]["selector"] == {
            "matchLabels": {"carrier.ocgi.dev/squad": "demo-squad"}
        }

    async def test_squad_update(self, ctx):
        obj = load_manifest("squad")
        old = apply(await webhook.mutate(make_request("Squad", "CREATE", obj), ctx), obj)

        # Unchanged Squad.
        ret = await webhook.mutate(make_request("Squad", "UPDATE", old, old), ctx)
        assert ret == Decision(allowed=True)

        # The new Squad omits the defaulted service account and gets it back.
        new = json.loads(json.dumps(old))
        del new["spec"]["template"]["spec"]["template"]["spec"]["serviceAccountName"]
        new["spec"]["template"]["spec"]["template"]["spec"]["containers"][0]["image"] = "x:2"
        ret = await webhook.mutate(make_request("Squad", "UPDATE", new, old), ctx)
        assert ret.allowed
        out = apply(ret, new)
        pod_spec = out["spec"]["template"]["spec"]["template"]["spec"]
        assert pod_spec["serviceAccountName"] == "carrier-sdk"

        # Changed GameServer spec.
        new = json.loads(json.dumps(old))
        new["spec"]["template"]["spec"]["ports"][0]["containerPort"] = 1
        ret = await webhook.mutate(make_request("Squad", "UPDATE", new, old), ctx)
        assert not ret.allowed
        assert [_.field for _ in ret.causes] == ["spec.template.spec"]

    async def test_pod_create(self, ctx):
        obj = load_manifest("pod")
        ret = await webhook.mutate(make_request("Pod", "CREATE", obj), ctx)
        assert ret.allowed

        out = apply(ret, obj)
        server, car = out["spec"]["containers"]
        assert car["name"] == SIDECAR_NAME
        assert car["image"] == "carrier/sidecar:v1"
        assert car["resources"]["limits"] == {"cpu": "100m", "memory": "100M"}
        assert {"name": "CARRIER_SDK_GRPC_PORT", "value": "9020"} in server["env"]

    async def test_pod_annotation_ports(self, ctx):
        obj = load_manifest("pod")
        obj["metadata"]["annotations"] = {"carrier.ocgi.dev/grpc-port": "5000"}
        out = apply(await webhook.mutate(make_request("Pod", "CREATE", obj), ctx), obj)
        assert out["spec"]["containers"][1]["args"] == [
            "--grpc-port=5000",
            "--http-port=9021",
            "--v=5",
        ]

    async def test_pod_noop(self, ctx):
        # Not a game server pod.
        obj = load_manifest("pod")
        obj["metadata"]["labels"] = {}
        ret = await webhook.mutate(make_request("Pod", "CREATE", obj), ctx)
        assert ret == Decision(allowed=True)

        # Pod updates are always allowed.
        obj = load_manifest("pod")
        ret = await webhook.mutate(make_request("Pod", "UPDATE", obj, obj), ctx)
        assert ret == Decision(allowed=True)


class TestReviewResponse:
    def test_allowed_with_patch(self):
        review = AdmissionReview.model_validate(
            {
                "apiVersion": "admission.k8s.io/v1beta1",
                "request": {
                    "uid": "abc",
                    "name": "demo",
                    "kind": {"group": "carrier.ocgi.dev", "kind": "Squad"},
                },
            }
        )
        decision = Decision(allowed=True, patch=b"[]", patchType="JSONPatch")
        ret = webhook.review_response(review, decision)

        assert ret.apiVersion == "admission.k8s.io/v1beta1"
        assert ret.request is None
        assert ret.response is not None
        assert ret.response.uid == "abc"
        assert ret.response.allowed
        assert ret.response.patchType == "JSONPatch"
        assert ret.response.patch is not None
        assert base64.b64decode(ret.response.patch) == b"[]"

        assert ret.response.status is not None
        details = ret.response.status.details
        assert details is not None
        assert (details.name, details.group, details.kind, details.uid) == (
            "demo",
            "carrier.ocgi.dev",
            "Squad",
            "abc",
        )

    def test_rejected(self):
        review = AdmissionReview(request=AdmissionRequest(uid="abc"))
        causes = [webhook.field.forbidden("a", "foo")]
        decision = Decision(allowed=False, reason="a: Forbidden: foo", causes=causes, code=400)

        ret = webhook.review_response(review, decision)
        assert ret.response is not None
        assert not ret.response.allowed
        assert ret.response.patch is None
        assert ret.response.patchType is None
        assert ret.response.status is not None
        assert ret.response.status.code == 400
        assert ret.response.status.message == "a: Forbidden: foo"
        assert ret.response.status.details is not None
        assert ret.response.status.details.causes[0].field == "a"

    def test_error_response(self):
        ret = webhook.error_response("boom")
        assert ret.response is not None
        assert not ret.response.allowed
        assert ret.response.uid == ""
        assert ret.response.status is not None
        assert ret.response.status.message == "boom"

import pytest

import cwh.sidecar as sidecar
from cwh.defaults import GAMESERVER_POD_LABEL
from cwh.models import K8sContainer, K8sPod, SideCarConfig

from .conftest import load_manifest


@pytest.fixture
def pod():
    return K8sPod.model_validate(load_manifest("pod"))


class TestInjection:
    def test_existing_sidecar(self, pod: K8sPod):
        """Never inject a second sidecar."""
        pod.spec.containers.append(K8sContainer(name=sidecar.SIDECAR_NAME))
        hook = sidecar.PortEnvs(http_port=1, grpc_port=2)
        out = sidecar.inject_sidecar(pod, hook, [sidecar.WithImage(image="foo")])
        assert out == pod
        assert len(out.spec.containers) == 2

    @pytest.mark.parametrize("labels", [{}, {GAMESERVER_POD_LABEL: ""}])
    def test_not_a_gameserver_pod(self, pod: K8sPod, labels):
        pod.metadata.labels = labels
        hook = sidecar.PortEnvs(http_port=1, grpc_port=2)
        out = sidecar.inject_sidecar(pod, hook, [sidecar.WithImage(image="foo")])
        assert out == pod
        assert [_.name for _ in out.spec.containers] == ["server"]

    def test_no_options(self, pod: K8sPod):
        out = sidecar.inject_sidecar(pod)

        assert [_.name for _ in out.spec.containers] == ["server", sidecar.SIDECAR_NAME]
        car = out.spec.containers[1]
        assert car.image == ""
        assert car.imagePullPolicy == "IfNotPresent"

        # The sidecar must mount the token of the service account.
        assert len(car.volumeMounts) == 1
        assert car.volumeMounts[0].name == "carrier-sdk-token-x7k2p"
        assert car.volumeMounts[0].mountPath == sidecar.TOKEN_MOUNT_PATH
        assert car.volumeMounts[0].readOnly is True

        # The input must not have changed.
        assert len(pod.spec.containers) == 1

    def test_no_token_volume(self, pod: K8sPod):
        pod.spec.serviceAccountName = "other"
        out = sidecar.inject_sidecar(pod)
        assert out.spec.containers[1].volumeMounts == []

    def test_health_check(self, pod: K8sPod):
        out = sidecar.inject_sidecar(pod, None, [sidecar.WithHealthCheck()])

        probe = out.spec.containers[1].livenessProbe
        assert probe is not None and probe.httpGet is not None
        assert (probe.httpGet.path, probe.httpGet.port) == ("/healthz", 8080)
        assert probe.initialDelaySeconds == 3
        assert probe.timeoutSeconds == 1
        assert probe.periodSeconds == 10
        assert probe.successThreshold == 1
        assert probe.failureThreshold == 3

    def test_full_injection(self, pod: K8sPod):
        """Inject the sidecar the same way the webhook does."""
        cfg = SideCarConfig(image="carrier/sidecar:v1", cpu="200m", memory="64Mi")
        http_port, grpc_port = sidecar.get_ports(cfg, pod)
        hook = sidecar.PortEnvs(http_port=http_port, grpc_port=grpc_port)
        opts = sidecar.sidecar_options(cfg, pod, http_port, grpc_port)

        out = sidecar.inject_sidecar(pod, hook, opts)
        server, car = out.spec.containers

        # The game server learns the SDK ports via environment variables.
        envs = [(_.name, _.value) for _ in server.env]
        assert envs == [
            ("MODE", "prod"),
            (sidecar.GRPC_PORT_ENV, "9020"),
            (sidecar.HTTP_PORT_ENV, "9021"),
        ]

        assert car.name == sidecar.SIDECAR_NAME
        assert car.image == "carrier/sidecar:v1"
        assert car.resources.requests == {"cpu": "200m", "memory": "64Mi"}
        assert car.resources.limits == {"cpu": "200m", "memory": "64Mi"}
        assert car.args == ["--grpc-port=9020", "--http-port=9021", "--v=5"]
        assert car.env[0].name == sidecar.GAMESERVER_NAME_ENV
        assert car.env[0].value == "demo-gs"
        assert car.env[1].name == sidecar.NAMESPACE_ENV
        assert car.env[1].valueFrom == {"fieldRef": {"fieldPath": "metadata.namespace"}}
        assert car.livenessProbe is not None

        # The hook must not stamp the port variables onto the sidecar.
        assert sidecar.GRPC_PORT_ENV not in [_.name for _ in car.env]

    def test_unknown_option(self):
        with pytest.raises(TypeError):
            sidecar.apply_option(K8sContainer(), "foo")  # type: ignore


class TestConfiguration:
    def test_get_ports(self, pod: K8sPod):
        cfg = SideCarConfig(image="foo", httpPort=1000, grpcPort=2000)
        assert sidecar.get_ports(cfg, pod) == (1000, 2000)

        pod.metadata.annotations = {
            sidecar.GRPC_PORT_KEY: "3000",
            sidecar.HTTP_PORT_KEY: "4000",
        }
        assert sidecar.get_ports(cfg, pod) == (4000, 3000)

        # Invalid annotations are ignored.
        pod.metadata.annotations = {
            sidecar.GRPC_PORT_KEY: "abc",
            sidecar.HTTP_PORT_KEY: "4000",
        }
        assert sidecar.get_ports(cfg, pod) == (4000, 2000)

    @pytest.mark.parametrize("value", [" 7000 ", "7_000", "٧٠٠٠", ""])
    def test_get_ports_strict(self, value: str, pod: K8sPod):
        """Only plain ASCII integers override the configured ports."""
        cfg = SideCarConfig(image="foo", httpPort=1000, grpcPort=2000)
        pod.metadata.annotations = {
            sidecar.GRPC_PORT_KEY: value,
            sidecar.HTTP_PORT_KEY: "+7000",
        }
        assert sidecar.get_ports(cfg, pod) == (7000, 2000)

    def test_option_order(self, pod: K8sPod):
        cfg = SideCarConfig(image="foo")
        opts = sidecar.sidecar_options(cfg, pod, 1, 2)
        assert [type(_) for _ in opts] == [
            sidecar.WithImage,
            sidecar.WithResources,
            sidecar.WithEnvs,
            sidecar.WithHealthCheck,
            sidecar.WithArgs,
        ]

    @pytest.mark.parametrize("cpu,memory", [("0", "0"), ("", ""), ("0", "")])
    def test_no_resources_option(self, pod: K8sPod, cpu, memory):
        cfg = SideCarConfig(image="foo", cpu=cpu, memory=memory)
        opts = sidecar.sidecar_options(cfg, pod, 1, 2)
        assert sidecar.WithResources not in [type(_) for _ in opts]

    def test_partial_resources(self):
        container = K8sContainer()
        sidecar.apply_option(container, sidecar.WithResources(cpu="100m", memory=""))
        assert container.resources.requests == {"cpu": "100m"}
        assert container.resources.limits == {"cpu": "100m"}

    def test_is_zero_quantity(self):
        assert sidecar.is_zero_quantity("")
        assert sidecar.is_zero_quantity("0")
        assert sidecar.is_zero_quantity("0m")
        assert not sidecar.is_zero_quantity("1m")
        assert not sidecar.is_zero_quantity("100M")

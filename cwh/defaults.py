"""Fill in the unset fields of Carrier resources.

Every `ensure_*` function returns a new object and never modifies its
argument. This is a precondition for computing the JSON patch between the
submitted and the defaulted manifest. All functions are idempotent.

"""

from typing import Dict

from cwh.models import (
    GameServer,
    GameServerSet,
    GameServerSpec,
    GameServerTemplateSpec,
    K8sLabelSelector,
    RollingUpdateSquad,
    Squad,
    SquadSpec,
    SquadStrategy,
)

# Labels Carrier uses to tie resources to their owners.
GROUP_NAME = "carrier.ocgi.dev"
GAMESERVER_POD_LABEL = f"{GROUP_NAME}/gameserver"
GAMESERVERSET_LABEL = f"{GROUP_NAME}/gameserverset"
SQUAD_LABEL = f"{GROUP_NAME}/squad"

# GameServers with this annotation must wait for their load balancer.
EXTERNAL_NETWORK_KEY = f"{GROUP_NAME}/external-network-type"
LB_READY_KEY = "externalnetwork.ocgi.dev/lb-ready"

# Service account of all GameServer pods unless the user specifies one.
DEFAULT_SERVICE_ACCOUNT = "carrier-sdk"

# Scheduling strategies.
MOST_ALLOCATED = "MostAllocated"
LEAST_ALLOCATED = "LeastAllocated"

# Port policies.
DYNAMIC = "Dynamic"
STATIC = "Static"
LOAD_BALANCER = "LoadBalancer"

# Squad update strategies.
RECREATE = "Recreate"
ROLLING_UPDATE = "RollingUpdate"
DEFAULT_MAX_UNAVAILABLE = "25%"
DEFAULT_MAX_SURGE = "25%"
DEFAULT_REVISION_HISTORY_LIMIT = 10


def ensure_defaults_for_gameserver(gs: GameServer) -> GameServer:
    gs = gs.model_copy(deep=True)
    ensure_lb_readiness_gates(gs)
    gs.spec.scheduling = default_scheduling(gs.spec.scheduling)
    ensure_default_service_account(gs.spec)
    ensure_default_port_policy(gs.spec)
    return gs


def ensure_defaults_for_gameserverset(gss: GameServerSet) -> GameServerSet:
    gss = gss.model_copy(deep=True)
    name = gss.metadata.name

    ensure_default_template_label(gss.spec.template, GAMESERVERSET_LABEL, name)
    if gss.spec.selector is None:
        gss.spec.selector = K8sLabelSelector()
    ensure_default_selector(gss.spec.selector, GAMESERVERSET_LABEL, name)
    gss.spec.scheduling = default_scheduling(gss.spec.scheduling)
    ensure_default_service_account(gss.spec.template.spec)
    ensure_default_port_policy(gss.spec.template.spec)
    return gss


def ensure_defaults_for_squad(squad: Squad) -> Squad:
    squad = squad.model_copy(deep=True)

    ensure_default_revision_history_limit(squad.spec)
    ensure_default_strategy(squad.spec.strategy)
    if squad.spec.selector is None:
        squad.spec.selector = K8sLabelSelector()
    ensure_default_selector(squad.spec.selector, SQUAD_LABEL, squad.metadata.name)
    squad.spec.scheduling = default_scheduling(squad.spec.scheduling)
    ensure_default_service_account(squad.spec.template.spec)
    ensure_default_port_policy(squad.spec.template.spec)
    return squad


def copy_defaults_for_squad(old: Squad, new: Squad) -> Squad:
    """Return a copy of `new` that inherits the defaults of `old`.

    An update that drops the service account would otherwise move the
    GameServers to the `default` service account on the next rollout.

    """
    squad = new.model_copy(deep=True)
    old_pod_spec = old.spec.template.spec.template.spec
    pod_spec = squad.spec.template.spec.template.spec
    if pod_spec.serviceAccountName == "":
        pod_spec.serviceAccountName = old_pod_spec.serviceAccountName
    ensure_default_port_policy(squad.spec.template.spec)
    return squad


def ensure_lb_readiness_gates(gs: GameServer) -> None:
    """Add the load balancer readiness gate if the GameServer needs one."""
    if gs.metadata.annotations.get(EXTERNAL_NETWORK_KEY, "") == "":
        return
    if LB_READY_KEY in gs.spec.readinessGates:
        return
    gs.spec.readinessGates.append(LB_READY_KEY)


def ensure_default_port_policy(spec: GameServerSpec) -> None:
    """Expose ports via a load balancer unless they have a policy or host port."""
    for port in spec.ports:
        if port.portPolicy != "":
            continue
        if port.hostPort is None and port.hostPortRange is None:
            port.portPolicy = LOAD_BALANCER


def ensure_default_service_account(spec: GameServerSpec) -> None:
    if spec.template.spec.serviceAccountName == "":
        spec.template.spec.serviceAccountName = DEFAULT_SERVICE_ACCOUNT


def default_scheduling(strategy: str) -> str:
    return strategy if strategy != "" else MOST_ALLOCATED


def ensure_default_selector(selector: K8sLabelSelector, key: str, name: str) -> None:
    # NOTE: an explicitly empty `matchLabels` is left alone.
    if selector.matchLabels is None:
        selector.matchLabels = {key: name}


def ensure_default_template_label(
    template: GameServerTemplateSpec, key: str, name: str
) -> None:
    if len(template.metadata.labels) == 0:
        labels: Dict[str, str] = {key: name}
        template.metadata.labels = labels


def ensure_default_strategy(strategy: SquadStrategy) -> None:
    if strategy.type == "":
        strategy.type = ROLLING_UPDATE
    if strategy.type != ROLLING_UPDATE:
        return

    if strategy.rollingUpdate is None:
        strategy.rollingUpdate = RollingUpdateSquad()
    if strategy.rollingUpdate.maxUnavailable is None:
        strategy.rollingUpdate.maxUnavailable = DEFAULT_MAX_UNAVAILABLE
    if strategy.rollingUpdate.maxSurge is None:
        strategy.rollingUpdate.maxSurge = DEFAULT_MAX_SURGE


def ensure_default_revision_history_limit(spec: SquadSpec) -> None:
    # NOTE: always overwrites a user supplied value.
    spec.revisionHistoryLimit = DEFAULT_REVISION_HISTORY_LIMIT

"""Worker node registry.

Produces the list of distribution targets, either from an explicit address
list or by asking the cluster for its worker nodes.  Cluster access goes
through the one-method :class:`WorkerIPProvider` protocol;
:class:`KubectlClient` is the implementation used in practice.
"""

from __future__ import annotations

import json
import logging
import subprocess
from dataclasses import dataclass
from typing import Protocol

from kubeship.config import DistributorPolicy
from kubeship.errors import ControlAPIError, NoWorkersFound

logger = logging.getLogger(__name__)

CONTROL_PLANE_LABEL_MARKERS = ("control-plane", "master")
INTERNAL_ADDRESS_TYPE = "InternalIP"


@dataclass
class WorkerNode:
    """A distribution target.

    ``reachable`` and ``last_error`` are written only by the connectivity
    test, which finishes before any distribution begins.
    """

    name: str
    ip: str
    reachable: bool = False
    last_error: Exception | None = None

    def __str__(self) -> str:
        return "%s (%s)" % (self.name, self.ip)


class WorkerIPProvider(Protocol):
    """Anything that can list the internal IPs of the cluster's worker nodes."""

    def get_worker_ips(self) -> list[str]:
        ...


class KubectlClient:
    """Query worker node addresses with ``kubectl get nodes``.

    Args:
        kubeconfig: Optional kubeconfig path.
        context: Optional kubeconfig context.
        use_sudo: Prefix the call with ``sudo`` (e.g. for k0s-managed configs).
        timeout: Seconds to wait for kubectl.
    """

    def __init__(
        self,
        kubeconfig: str | None = None,
        context: str | None = None,
        use_sudo: bool = False,
        timeout: int = 30,
    ):
        self.kubeconfig = kubeconfig
        self.context = context
        self.use_sudo = use_sudo
        self.timeout = timeout

    def build_cmd(self, *args: str) -> list[str]:
        cmd = ["kubectl"]
        if self.kubeconfig:
            cmd.extend(["--kubeconfig", self.kubeconfig])
        if self.context:
            cmd.extend(["--context", self.context])
        cmd.extend(args)
        if self.use_sudo:
            cmd.insert(0, "sudo")
        return cmd

    def get_worker_ips(self) -> list[str]:
        """Return the internal IPs of all non-control-plane nodes.

        Raises:
            ControlAPIError: kubectl failed or returned unparseable output.
            NoWorkersFound: No worker node carries an internal address.
        """
        logger.debug("Querying cluster API for worker node IPs")
        cmd = self.build_cmd("get", "nodes", "-o", "json")
        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True, timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise ControlAPIError("kubectl timed out after %ds" % self.timeout) from e
        except OSError as e:
            raise ControlAPIError("cannot run kubectl: %s" % e) from e

        if result.returncode != 0:
            raise ControlAPIError(
                "failed to get nodes: %s" % (result.stderr or result.stdout).strip(),
                context={"exit_code": result.returncode},
            )

        try:
            node_list = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise ControlAPIError("failed to parse node list JSON: %s" % e) from e

        return worker_ips_from_node_list(node_list)


def _is_control_plane(labels: dict) -> bool:
    return any(
        marker in label
        for label in labels
        for marker in CONTROL_PLANE_LABEL_MARKERS
    )


def worker_ips_from_node_list(node_list: dict) -> list[str]:
    """Extract worker internal IPs from a ``kubectl get nodes -o json`` document."""
    ips: list[str] = []
    for item in node_list.get("items") or []:
        metadata = item.get("metadata") or {}
        name = metadata.get("name", "?")
        if _is_control_plane(metadata.get("labels") or {}):
            logger.debug("Skipping control-plane node: %s", name)
            continue
        for addr in (item.get("status") or {}).get("addresses") or []:
            if addr.get("type") == INTERNAL_ADDRESS_TYPE:
                ips.append(addr["address"])
                logger.debug("Found worker node %s with IP %s", name, addr["address"])
                break

    if not ips:
        raise NoWorkersFound("no worker nodes found in cluster")
    logger.debug("Found %d worker nodes", len(ips))
    return ips


def resolve_nodes(
    policy: DistributorPolicy,
    provider: WorkerIPProvider | None = None,
) -> list[WorkerNode]:
    """Return the target nodes for a distribution session.

    An explicit node list in *policy* wins and no cluster query is made.
    Otherwise *provider* is asked for worker IPs.

    Raises:
        NoWorkersFound: Discovery returned no workers.
        ValueError: The explicit node list holds an empty address.
        ControlAPIError: Discovery failed or no provider was given.
    """
    if policy.explicit_nodes:
        logger.debug("Using explicit worker list: %s", ", ".join(policy.explicit_nodes))
        if any(not address.strip() for address in policy.explicit_nodes):
            raise ValueError("explicit worker list contains an empty address")
        return [
            WorkerNode(name="worker-%d" % i, ip=address.strip())
            for i, address in enumerate(policy.explicit_nodes, start=1)
        ]

    if provider is None:
        raise ControlAPIError("no explicit workers given and no cluster client available")

    logger.debug("Discovering workers from cluster API")
    try:
        ips = provider.get_worker_ips()
    except (ControlAPIError, NoWorkersFound):
        raise
    except Exception as e:
        raise ControlAPIError("failed to get worker IPs from cluster: %s" % e) from e

    if not ips:
        raise NoWorkersFound("no worker nodes found in cluster")
    return [WorkerNode(name="worker-%s" % ip, ip=ip) for ip in ips]

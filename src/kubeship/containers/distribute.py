"""Container image distribution to cluster worker nodes.

The :class:`Distributor` lands a locally exported image archive in the
containerd runtime of every worker node over SSH.  Each node runs the
same pipeline::

    Pending -> Transferring -> Importing -> Verifying -> Succeeded | Failed

Nodes are processed concurrently, bounded by ``policy.parallelism``, and
each node is retried up to ``policy.retry_count`` times.  A run succeeds
when at least ``policy.effective_min_workers(len(nodes))`` nodes end up
with the image; a run that meets the quorum with some failures is
reported as degraded rather than clean.
"""

from __future__ import annotations

import enum
import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from kubeship.cluster.nodes import WorkerNode
from kubeship.config import CONTAINERD_NAMESPACE, DistributorPolicy
from kubeship.containers import runtime
from kubeship.errors import (
    ConnectivityError,
    ImageNotRegistered,
    ImportFailed,
    KubeshipError,
    QuorumNotMet,
    StepFailed,
    TransferFailed,
    VerificationFailed,
)
from kubeship.orchestration.ssh import RemoteChannel
from kubeship.utils import format_mb

logger = logging.getLogger(__name__)


class NodeState(enum.Enum):
    PENDING = "pending"
    TRANSFERRING = "transferring"
    IMPORTING = "importing"
    VERIFYING = "verifying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class DistributionResult:
    """Outcome of distributing one component to one node."""

    node: WorkerNode
    component: str
    success: bool
    duration: float = 0.0
    error: Exception | None = None
    attempts: int = 1
    state: NodeState = NodeState.PENDING

    def describe(self) -> str:
        """One-line operator summary: name, address and innermost cause."""
        if self.success:
            return "%s: ok in %.1fs" % (self.node, self.duration)
        return "%s: %s" % (self.node, innermost_error(self.error))


def innermost_error(error: BaseException | None) -> BaseException | None:
    """Follow :class:`StepFailed` causes down to the originating exception."""
    while isinstance(error, StepFailed) and error.cause is not None:
        error = error.cause
    return error


def summarize(results: list[DistributionResult]) -> tuple[int, list[DistributionResult]]:
    """Return ``(success_count, failed_results)`` for a result list."""
    failed = [r for r in results if not r.success]
    return len(results) - len(failed), failed


class Distributor:
    """Distribute image archives to worker nodes.

    Args:
        channel: Remote channel used for every command and transfer.
        policy: Distribution policy for this session.
        namespace: containerd namespace images are imported into.
        use_sudo: Run ``ctr`` through sudo on the nodes.
        dry_run: If True, log what would be done without touching the nodes.
    """

    def __init__(
        self,
        channel: RemoteChannel,
        policy: DistributorPolicy | None = None,
        namespace: str = CONTAINERD_NAMESPACE,
        use_sudo: bool = True,
        dry_run: bool = False,
    ):
        self.channel = channel
        self.policy = policy or DistributorPolicy()
        self.namespace = namespace
        self.use_sudo = use_sudo
        self.dry_run = dry_run

    # ------------------------------------------------------------------
    # Connectivity
    # ------------------------------------------------------------------

    def test_connectivity(self, nodes: list[WorkerNode]) -> None:
        """Run ``hostname`` on every node and record reachability.

        Raises:
            ConnectivityError: At least one node is unreachable.  The
                message lists every failing node with its cause.
        """
        logger.debug("Testing SSH connectivity to %d workers", len(nodes))
        failures: list[tuple[WorkerNode, Exception]] = []

        for node in nodes:
            if self.dry_run:
                logger.info("[dry-run] Would test connectivity to %s", node)
                node.reachable = True
                continue
            try:
                self.channel.exec(node, "hostname")
            except KubeshipError as e:
                node.reachable = False
                node.last_error = e
                failures.append((node, e))
            else:
                node.reachable = True
                node.last_error = None
                logger.debug("  %s reachable", node)

        if failures:
            lines = "\n  ".join("%s: %s" % (node, err) for node, err in failures)
            raise ConnectivityError(
                "SSH connectivity failed:\n  %s\n\n"
                "To fix:\n"
                "  1. Copy SSH key: ssh-copy-id %s@<worker-ip>\n"
                "  2. Or specify a different key: --ssh-key ~/.ssh/other_key"
                % (lines, self.channel.settings.user),
                failures=failures,
            )

    # ------------------------------------------------------------------
    # Single node
    # ------------------------------------------------------------------

    def remote_archive_path(self, archive_path: str) -> str:
        return "%s/%s" % (self.channel.settings.temp_dir.rstrip("/"), os.path.basename(archive_path))

    def distribute_to_node(
        self,
        node: WorkerNode,
        archive_path: str,
        component: str,
        image_name: str,
    ) -> DistributionResult:
        """Transfer, import, verify and clean up one archive on one node.

        Never raises for remote failures; the returned result carries a
        :class:`TransferFailed`, :class:`ImportFailed` or
        :class:`VerificationFailed` error naming the failed step.
        """
        start = time.monotonic()
        state = NodeState.PENDING

        def _failed(error: StepFailed) -> DistributionResult:
            logger.debug("[%s] Failed while %s: %s", node.name, state.value, error)
            return DistributionResult(
                node=node, component=component, success=False,
                duration=time.monotonic() - start, error=error, state=NodeState.FAILED,
            )

        remote_archive = self.remote_archive_path(archive_path)

        state = NodeState.TRANSFERRING
        try:
            size = os.path.getsize(archive_path)
        except OSError as e:
            if not self.dry_run:
                return _failed(TransferFailed("cannot stat archive %s" % archive_path, cause=e))
            size = 0
        logger.info("  [%s] Copying archive (%s)...", node.name, format_mb(size))
        if self.dry_run:
            logger.info("[dry-run] Would copy %s to %s:%s", archive_path, node.ip, remote_archive)
        else:
            try:
                self.channel.transfer_file(node, archive_path, remote_archive)
            except (KubeshipError, OSError) as e:
                return _failed(TransferFailed("transfer failed", cause=e))

        state = NodeState.IMPORTING
        logger.info("  [%s] Importing into containerd...", node.name)
        command = runtime.import_command(
            remote_archive, image_name, namespace=self.namespace, use_sudo=self.use_sudo,
        )
        if self.dry_run:
            logger.info("[dry-run] Would run on %s: %s", node.ip, command)
        else:
            try:
                self.channel.exec(node, command)
            except KubeshipError as e:
                return _failed(ImportFailed("import failed", cause=e))

        state = NodeState.VERIFYING
        logger.info("  [%s] Verifying import...", node.name)
        if not self.dry_run:
            try:
                self.verify_import_on_node(node, image_name)
            except KubeshipError as e:
                return _failed(VerificationFailed("verification failed", cause=e))

        if not self.policy.keep_artifacts:
            self.cleanup_on_node(node, remote_archive)

        duration = time.monotonic() - start
        logger.info("  [%s] Completed in %.1fs", node.name, duration)
        return DistributionResult(
            node=node, component=component, success=True,
            duration=duration, state=NodeState.SUCCEEDED,
        )

    def verify_import_on_node(self, node: WorkerNode, image_name: str) -> None:
        """Assert that *image_name* is registered in the node's runtime.

        Raises:
            ImageNotRegistered: The listing does not contain the reference.
            RemoteError: The listing itself failed.
        """
        listing = self.channel.exec(
            node, runtime.list_images_command(self.namespace, use_sudo=self.use_sudo),
        )
        if not runtime.is_image_listed(listing, image_name):
            raise ImageNotRegistered(
                "image %s not found in containerd" % image_name, host=node.ip,
            )

    def cleanup_on_node(self, node: WorkerNode, remote_archive: str) -> bool:
        """Remove the temporary archive; failures are logged, not raised."""
        logger.debug("  [%s] Cleaning up %s...", node.name, remote_archive)
        if self.dry_run:
            return True
        try:
            self.channel.remove_file(node, remote_archive)
        except KubeshipError as e:
            logger.warning("Failed to clean up %s on %s: %s", remote_archive, node.name, e)
            return False
        return True

    # ------------------------------------------------------------------
    # Fleet
    # ------------------------------------------------------------------

    def _distribute_with_retries(
        self,
        node: WorkerNode,
        archive_path: str,
        component: str,
        image_name: str,
    ) -> DistributionResult:
        attempts = self.policy.retry_count
        result = None
        for attempt in range(1, attempts + 1):
            if attempt > 1:
                logger.info("  [%s] Retry %d/%d", node.name, attempt, attempts)
                time.sleep(self.policy.retry_delay)
            result = self.distribute_to_node(node, archive_path, component, image_name)
            if result.success:
                break

        result = DistributionResult(
            node=result.node, component=result.component, success=result.success,
            duration=result.duration, error=result.error, attempts=attempt, state=result.state,
        )
        if not result.success:
            logger.warning("  [%s] Failed after %d attempts: %s", node.name, attempt, result.error)
        return result

    def distribute_to_all_nodes(
        self,
        nodes: list[WorkerNode],
        archive_path: str,
        component: str,
        image_name: str,
    ) -> list[DistributionResult]:
        """Distribute one archive to every node and apply the quorum rule.

        Returns:
            One :class:`DistributionResult` per node, in node order.

        Raises:
            QuorumNotMet: Fewer than ``effective_min_workers`` nodes
                succeeded.  The per-node results are attached.
        """
        logger.info(
            "Distributing %s to %d workers (parallel: %d)",
            component, len(nodes), self.policy.parallelism,
        )
        results: list[DistributionResult | None] = [None] * len(nodes)

        def _task(idx: int, node: WorkerNode) -> None:
            results[idx] = self._distribute_with_retries(node, archive_path, component, image_name)

        with ThreadPoolExecutor(max_workers=self.policy.parallelism) as pool:
            futures = [pool.submit(_task, i, node) for i, node in enumerate(nodes)]
            for future in futures:
                future.result()

        success_count, failed = summarize(results)
        minimum = self.policy.effective_min_workers(len(nodes))

        if success_count < minimum:
            for r in failed:
                logger.error("  %s", r.describe())
            raise QuorumNotMet(
                "%d/%d workers received image, minimum %d" % (success_count, len(nodes), minimum),
                succeeded=success_count, total=len(nodes), minimum=minimum, results=results,
            )

        if failed:
            logger.warning(
                "Image %s distributed to %d/%d workers (degraded), failed: %s",
                image_name, success_count, len(nodes),
                "; ".join(r.describe() for r in failed),
            )
        else:
            logger.info("Image %s distributed to all %d workers", image_name, success_count)
        return results

    def audit_fleet(
        self,
        nodes: list[WorkerNode],
        image_names: list[str],
    ) -> dict[str, list[str]]:
        """Verify every image on every node after distribution.

        Returns:
            Mapping of image name to the names of nodes missing it.

        Raises:
            QuorumNotMet: An image is present on fewer nodes than the
                policy requires.
        """
        minimum = self.policy.effective_min_workers(len(nodes))
        missing: dict[str, list[str]] = {}
        for image_name in image_names:
            missing[image_name] = []
            for node in nodes:
                if self.dry_run:
                    continue
                try:
                    self.verify_import_on_node(node, image_name)
                except KubeshipError as e:
                    logger.warning("Verification failed on %s: %s", node, e)
                    missing[image_name].append(node.name)
                else:
                    logger.info("  %s has %s", node.name, image_name)

            present = len(nodes) - len(missing[image_name])
            if present < minimum:
                raise QuorumNotMet(
                    "image %s not available on enough workers (%d/%d, minimum %d)"
                    % (image_name, present, len(nodes), minimum),
                    succeeded=present, total=len(nodes), minimum=minimum,
                )
        return missing

"""Command-line interface for kubeship."""

from __future__ import annotations

import functools
import logging
import os

import click

from kubeship import __version__
from kubeship.cluster.nodes import KubectlClient, resolve_nodes
from kubeship.config import load_settings
from kubeship.containers.distribute import Distributor, summarize
from kubeship.containers.export import archive_path_for, export_image
from kubeship.errors import KubeshipError
from kubeship.orchestration.ssh import RemoteChannel
from kubeship.utils import parse_worker_list

logger = logging.getLogger(__name__)


def _common_options(f):
    """Options shared by every command that talks to worker nodes."""
    options = [
        click.option("--workers", default=None,
                     help="Comma-separated worker IPs (skips cluster discovery)"),
        click.option("--kubeconfig", default=None, type=click.Path(dir_okay=False),
                     help="kubeconfig used for worker discovery"),
        click.option("--kube-sudo", is_flag=True, default=False,
                     help="Run kubectl through sudo"),
        click.option("--ssh-user", default=None, help="SSH user on worker nodes"),
        click.option("--ssh-key", default=None, help="SSH private key path"),
        click.option("--ssh-port", default=None, type=int, help="SSH port"),
        click.option("--ssh-timeout", default=None, type=int,
                     help="Per-command timeout in seconds"),
        click.option("--min-workers", default=None, type=int,
                     help="Minimum workers that must succeed (0 = all)"),
        click.option("--dry-run", is_flag=True, default=False,
                     help="Show what would be done without executing"),
    ]
    for option in reversed(options):
        f = option(f)
    return f


def _handle_errors(f):
    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except (KubeshipError, FileNotFoundError, ValueError) as e:
            raise click.ClickException(str(e)) from e
    return wrapper


def _setup(ctx, opts: dict, policy_extra: dict | None = None):
    """Resolve settings, nodes and a distributor from CLI options."""
    ssh_settings, policy = load_settings(
        ctx.obj.get("config_path"),
        ssh_overrides={
            "user": opts.get("ssh_user"),
            "key_path": opts.get("ssh_key"),
            "port": opts.get("ssh_port"),
            "timeout": opts.get("ssh_timeout"),
            "temp_dir": opts.get("temp_dir"),
        },
        policy_overrides={
            "min_workers": opts.get("min_workers"),
            "explicit_nodes": tuple(parse_worker_list(opts.get("workers"))) or None,
            **(policy_extra or {}),
        },
    )
    provider = KubectlClient(kubeconfig=opts.get("kubeconfig"), use_sudo=opts.get("kube_sudo", False))
    nodes = resolve_nodes(policy, provider)
    distributor = Distributor(RemoteChannel(ssh_settings), policy, dry_run=opts.get("dry_run", False))
    return nodes, distributor


@click.group()
@click.version_option(__version__, prog_name="kubeship")
@click.option("-v", "--verbose", is_flag=True, default=False, help="Enable debug logging")
@click.option("--config", "config_path", default=None, type=click.Path(dir_okay=False),
              help="YAML config file")
@click.pass_context
def main(ctx, verbose, config_path):
    """kubeship - push locally built images to Kubernetes worker nodes over SSH."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s %(message)s" if verbose else "%(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@main.command()
@_common_options
@click.pass_context
@_handle_errors
def nodes(ctx, **opts):
    """List the worker nodes images would be distributed to."""
    worker_nodes, _ = _setup(ctx, opts)
    click.echo("Found %d worker nodes" % len(worker_nodes))
    for node in worker_nodes:
        click.echo("  - %s" % node)


@main.command()
@_common_options
@click.pass_context
@_handle_errors
def check(ctx, **opts):
    """Test SSH connectivity to all worker nodes."""
    worker_nodes, distributor = _setup(ctx, opts)
    distributor.test_connectivity(worker_nodes)
    click.echo("All %d workers reachable via SSH" % len(worker_nodes))


@main.command()
@click.argument("images", nargs=-1, required=True)
@click.option("--archive", "archives", multiple=True, type=click.Path(dir_okay=False),
              help="Existing archive for each IMAGE, in order (default: export with docker save)")
@click.option("--component", "components", multiple=True,
              help="Report label for each IMAGE, in order (default: image name)")
@click.option("--parallel", default=None, type=int, help="Maximum concurrent transfers")
@click.option("--retries", default=None, type=int, help="Attempts per worker")
@click.option("--keep-archives", is_flag=True, default=False,
              help="Leave the archive on workers after import")
@click.option("--temp-dir", default=None, help="Remote directory for archives")
@click.option("--docker-sudo", is_flag=True, default=False, help="Run docker save through sudo")
@_common_options
@click.pass_context
@_handle_errors
def distribute(ctx, images, archives, components, parallel, retries, keep_archives,
               docker_sudo, **opts):
    """Distribute IMAGES to all worker nodes and verify they are registered."""
    if archives and len(archives) != len(images):
        raise click.UsageError("--archive given %d times for %d images" % (len(archives), len(images)))
    if components and len(components) != len(images):
        raise click.UsageError("--component given %d times for %d images"
                               % (len(components), len(images)))

    worker_nodes, distributor = _setup(ctx, opts, policy_extra={
        "parallelism": parallel,
        "retry_count": retries,
        "keep_artifacts": keep_archives or None,
    })
    dry_run = opts.get("dry_run", False)

    click.echo("Found %d worker nodes" % len(worker_nodes))
    for node in worker_nodes:
        click.echo("  - %s" % node)

    # connectivity failures abort before any bytes move
    distributor.test_connectivity(worker_nodes)

    degraded = False
    for idx, image in enumerate(images):
        component = components[idx] if components else image.rpartition("/")[2].split(":")[0]
        archive = archives[idx] if archives else None

        exported = archive is None
        if exported:
            archive = export_image(image, archive_path_for(component), use_sudo=docker_sudo,
                                   dry_run=dry_run)
        try:
            results = distributor.distribute_to_all_nodes(worker_nodes, archive, component, image)
        finally:
            if exported and not dry_run and os.path.exists(archive):
                os.remove(archive)
                logger.debug("Removed local archive: %s", archive)

        success_count, failed = summarize(results)
        click.echo("Distributed %s to %d/%d workers" % (component, success_count, len(worker_nodes)))
        for r in failed:
            click.echo("  FAILED %s" % r.describe())
        degraded = degraded or bool(failed)

    distributor.audit_fleet(worker_nodes, list(images))
    if degraded:
        click.echo("Distribution completed with a degraded fleet")
    else:
        click.echo("All images successfully distributed to worker nodes")


@main.command()
@click.argument("images", nargs=-1, required=True)
@_common_options
@click.pass_context
@_handle_errors
def verify(ctx, images, **opts):
    """Check that IMAGES are registered on the worker nodes."""
    worker_nodes, distributor = _setup(ctx, opts)
    missing = distributor.audit_fleet(worker_nodes, list(images))
    for image, names in missing.items():
        if names:
            click.echo("%s missing on: %s" % (image, ", ".join(names)))
        else:
            click.echo("%s present on all %d workers" % (image, len(worker_nodes)))

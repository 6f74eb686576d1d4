"""Export locally built images to archive files with ``docker save``."""

from __future__ import annotations

import logging
import subprocess

from kubeship.config import ARCHIVE_PATH_TEMPLATE
from kubeship.errors import ImageExportError

logger = logging.getLogger(__name__)


def archive_path_for(component: str) -> str:
    """Default local archive path for *component*."""
    return ARCHIVE_PATH_TEMPLATE % component.replace("/", "_")


def export_image(
    image_name: str,
    output_path: str,
    use_sudo: bool = False,
    dry_run: bool = False,
) -> str:
    """Save *image_name* from the local Docker daemon to *output_path*.

    Args:
        image_name: Image reference to export.
        output_path: Destination archive path.
        use_sudo: Run docker through sudo.
        dry_run: If True, show what would be done without executing.

    Returns:
        The archive path.

    Raises:
        ImageExportError: docker is missing or ``docker save`` failed.
    """
    cmd = ["docker", "save", "-o", output_path, image_name]
    if use_sudo:
        cmd.insert(0, "sudo")

    if dry_run:
        logger.info("[dry-run] Would export %s to %s", image_name, output_path)
        return output_path

    logger.info("Exporting %s from Docker daemon...", image_name)
    try:
        result = subprocess.run(cmd, capture_output=True, text=True)
    except OSError as e:
        raise ImageExportError("cannot run docker: %s" % e) from e

    if result.returncode != 0:
        details = "; ".join(
            s.strip() for s in (result.stderr, result.stdout) if s and s.strip()
        )
        raise ImageExportError(
            "failed to save image %s: %s" % (image_name, details or "exit %d" % result.returncode),
        )
    logger.debug("Saved %s to %s", image_name, output_path)
    return output_path

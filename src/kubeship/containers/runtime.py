"""containerd (``ctr``) commands run on worker nodes."""

from __future__ import annotations

import shlex

from kubeship.config import CONTAINERD_NAMESPACE


def image_base_name(image_name: str) -> str:
    """Return everything before the final path segment of an image reference.

    ``ctr images import --base-name`` uses this prefix so the image is
    registered under the exact reference the manifests ask for.

    Examples::

        >>> image_base_name("crepo.example.io/team/v2/backend:latest")
        'crepo.example.io/team/v2'
        >>> image_base_name("backend:latest")
        ''
    """
    base, _, _ = image_name.rpartition("/")
    return base


def _ctr(namespace: str, use_sudo: bool) -> str:
    prefix = "sudo " if use_sudo else ""
    return "%sctr -n %s" % (prefix, shlex.quote(namespace))


def import_command(
    archive_path: str,
    image_name: str,
    namespace: str = CONTAINERD_NAMESPACE,
    use_sudo: bool = True,
) -> str:
    """Build the remote command importing *archive_path* for *image_name*."""
    parts = [_ctr(namespace, use_sudo), "images", "import"]
    base = image_base_name(image_name)
    if base:
        parts.extend(["--base-name", shlex.quote(base)])
    parts.append(shlex.quote(archive_path))
    return " ".join(parts)


def list_images_command(namespace: str = CONTAINERD_NAMESPACE, use_sudo: bool = True) -> str:
    return "%s images list" % _ctr(namespace, use_sudo)


def normalized_reference(image_name: str) -> str:
    """Return the fully qualified form ``ctr`` lists a short reference under.

    Examples::

        >>> normalized_reference("backend:latest")
        'docker.io/library/backend:latest'
        >>> normalized_reference("acme/frontend:1.0")
        'docker.io/acme/frontend:1.0'
        >>> normalized_reference("reg.io:5000/acme/frontend:1.0")
        'reg.io:5000/acme/frontend:1.0'
    """
    domain, sep, _ = image_name.partition("/")
    if not sep:
        return "docker.io/library/" + image_name
    if "." not in domain and ":" not in domain and domain != "localhost":
        return "docker.io/" + image_name
    return image_name


def is_image_listed(listing: str, image_name: str) -> bool:
    """Check whether *image_name* appears as a reference in ``ctr images list`` output.

    A row matches when its reference equals *image_name* or its normalized
    form, so ``backend:latest`` is found as ``docker.io/library/backend:latest``
    while ``app:latest-old`` never satisfies ``app:latest``.
    """
    wanted = {image_name, normalized_reference(image_name)}
    for line in listing.splitlines():
        fields = line.split()
        if fields and fields[0] in wanted:
            return True
    return False

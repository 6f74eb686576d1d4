"""kubeship - Distribute locally built container images to Kubernetes worker nodes over SSH."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("kubeship")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"

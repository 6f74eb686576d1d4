"""Error hierarchy for kubeship.

Every exception raised by the distribution subsystem derives from
:class:`KubeshipError`, which carries a machine-readable ``code`` and a
``context`` dict alongside the human-readable message.

Per-node failures never escape a distribution call; they are recorded in
the node's :class:`~kubeship.containers.distribute.DistributionResult`.
Only :class:`ConnectivityError` and :class:`QuorumNotMet` are meant to
abort a caller's deployment flow.
"""

from __future__ import annotations

from typing import Any

__all__ = [
    "AuthenticationFailed",
    "CommandTimeout",
    "ConnectivityError",
    "ControlAPIError",
    "DialFailed",
    "ImageExportError",
    "ImageNotRegistered",
    "ImportFailed",
    "KubeshipError",
    "NoWorkersFound",
    "QuorumNotMet",
    "RemoteCommandFailed",
    "RemoteError",
    "StepFailed",
    "TransferFailed",
    "TransferSizeMismatch",
    "VerificationFailed",
    "diagnose",
]


class KubeshipError(Exception):
    """Base exception for all kubeship errors.

    Attributes:
        code: Machine-readable error code for categorization
        message: Human-readable error description
        context: Additional context for debugging
    """
    code: str = "KUBESHIP_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"[{self.code}] {self.message} ({ctx})"
        return f"[{self.code}] {self.message}"


# =============================================================================
# Worker node registry
# =============================================================================


class ControlAPIError(KubeshipError):
    """The cluster control API could not be queried."""
    code: str = "CONTROL_API_ERROR"


class NoWorkersFound(KubeshipError):
    """The cluster reported no worker nodes after filtering."""
    code: str = "NO_WORKERS_FOUND"


# =============================================================================
# Remote channel
# =============================================================================


class RemoteError(KubeshipError):
    """Failure talking to a single remote host.

    Attributes:
        host: Address of the node the failure happened on
    """
    code: str = "REMOTE_ERROR"

    def __init__(
        self,
        message: str,
        host: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context=context)
        self.host = host
        if host:
            self.context["host"] = host


class DialFailed(RemoteError):
    """TCP/SSH connection to the node could not be established."""
    code: str = "DIAL_FAILED"


class AuthenticationFailed(RemoteError):
    """The node rejected our SSH credentials."""
    code: str = "AUTHENTICATION_FAILED"


class CommandTimeout(RemoteError):
    """A remote command did not finish within its deadline."""
    code: str = "COMMAND_TIMEOUT"

    def __init__(
        self,
        message: str,
        host: str | None = None,
        timeout: float | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, host=host, context=context)
        self.timeout = timeout
        if timeout is not None:
            self.context["timeout"] = timeout


class RemoteCommandFailed(RemoteError):
    """A remote command exited non-zero.

    Attributes:
        exit_code: Exit status reported by the ssh client
        output: Combined stdout/stderr of the remote command
    """
    code: str = "REMOTE_COMMAND_FAILED"

    def __init__(
        self,
        message: str,
        host: str | None = None,
        exit_code: int | None = None,
        output: str = "",
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, host=host, context=context)
        self.exit_code = exit_code
        self.output = output
        if exit_code is not None:
            self.context["exit_code"] = exit_code

    @property
    def hint(self) -> str | None:
        """Operator guidance derived from the remote output, if any."""
        return diagnose(self.output)

    def __str__(self) -> str:
        text = super().__str__()
        hint = self.hint
        if hint:
            text = f"{text}: {hint}"
        output = self.output.strip()
        if output:
            text = f"{text}\n{output}"
        return text


class TransferSizeMismatch(RemoteError):
    """The remote file size differs from the local archive size."""
    code: str = "TRANSFER_SIZE_MISMATCH"

    def __init__(
        self,
        message: str,
        host: str | None = None,
        local_size: int = 0,
        remote_size: int = 0,
    ):
        super().__init__(message, host=host)
        self.local_size = local_size
        self.remote_size = remote_size
        self.context["local"] = local_size
        self.context["remote"] = remote_size


# =============================================================================
# Per-node pipeline steps
# =============================================================================


class StepFailed(KubeshipError):
    """A step of the per-node pipeline failed.

    Attributes:
        step: Pipeline step name (``transfer``, ``import``, ``verify``)
        cause: The underlying exception
    """
    code: str = "STEP_FAILED"
    step: str = ""

    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.cause = cause
        self.__cause__ = cause

    def __str__(self) -> str:
        if self.cause is not None:
            return f"[{self.code}] {self.message}: {self.cause}"
        return super().__str__()


class TransferFailed(StepFailed):
    code: str = "TRANSFER_FAILED"
    step: str = "transfer"


class ImportFailed(StepFailed):
    code: str = "IMPORT_FAILED"
    step: str = "import"


class VerificationFailed(StepFailed):
    code: str = "VERIFICATION_FAILED"
    step: str = "verify"


class ImageNotRegistered(RemoteError):
    """The image reference is missing from the node's runtime listing."""
    code: str = "IMAGE_NOT_REGISTERED"


# =============================================================================
# Fleet-level errors
# =============================================================================


class ConnectivityError(KubeshipError):
    """One or more nodes failed the pre-flight connectivity test.

    Attributes:
        failures: List of ``(WorkerNode, exception)`` pairs
    """
    code: str = "CONNECTIVITY_FAILED"

    def __init__(self, message: str, failures: list | None = None):
        super().__init__(message)
        self.failures = failures or []

    def __str__(self) -> str:
        return self.message


class QuorumNotMet(KubeshipError):
    """Too few nodes hold the image for the run to count as successful."""
    code: str = "QUORUM_NOT_MET"

    def __init__(
        self,
        message: str,
        succeeded: int,
        total: int,
        minimum: int,
        results: list | None = None,
    ):
        super().__init__(message)
        self.succeeded = succeeded
        self.total = total
        self.minimum = minimum
        self.results = results or []


class ImageExportError(KubeshipError):
    """The local container engine could not export the image."""
    code: str = "IMAGE_EXPORT_FAILED"


# =============================================================================
# Remote output diagnosis
# =============================================================================

_DIAGNOSES = (
    ("no space left", "disk full on worker"),
    ("permission denied", "sudo access required for ctr command"),
    ("connection refused", "containerd not running on worker"),
)


def diagnose(output: str | None) -> str | None:
    """Map remote command output to actionable guidance.

    Substring matching is a heuristic; callers only see the result through
    :attr:`RemoteCommandFailed.hint`.
    """
    if not output:
        return None
    lowered = output.lower()
    for needle, guidance in _DIAGNOSES:
        if needle in lowered:
            return guidance
    return None

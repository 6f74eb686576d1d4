"""Remote command and file transfer over the OpenSSH client.

Every call spawns its own ``ssh`` process, so no connection is shared
between operations and nothing outlives the call that created it.

Commands are wrapped in ``timeout -s KILL`` on the remote side so a hung
command is killed there when its deadline passes; the local client is
killed shortly afterwards as a backstop.

File transfer speaks the sink side of the classic ``scp`` protocol
directly: a ``C<mode> <size> <name>`` header line, the raw bytes, then a
single NUL byte.  After the remote receiver exits, the remote file size is
queried independently and compared with the local size.  There is no
content hash; a stream that drops bytes and pads back to the right length
would not be detected.
"""

from __future__ import annotations

import logging
import math
import os
import shlex
import shutil
import subprocess
import threading
from typing import TYPE_CHECKING

from kubeship.config import SSHSettings
from kubeship.errors import (
    AuthenticationFailed,
    CommandTimeout,
    DialFailed,
    RemoteCommandFailed,
    TransferSizeMismatch,
)

if TYPE_CHECKING:
    from kubeship.cluster.nodes import WorkerNode

logger = logging.getLogger(__name__)

# Seconds the local client may outlive the remote deadline before we kill it.
KILL_GRACE = 5

# Exit statuses of coreutils ``timeout`` when the deadline fires.
REMOTE_TIMEOUT_CODES = (124, 137)

# ssh itself exits 255 on connection-level failures.
SSH_ERROR_CODE = 255

TRANSFER_CHUNK = 1024 * 1024

_AUTH_MARKERS = (
    "permission denied (",
    "too many authentication failures",
    "no supported authentication methods",
    "host key verification failed",
)
_DIAL_MARKERS = (
    "connection refused",
    "connection timed out",
    "operation timed out",
    "no route to host",
    "network is unreachable",
    "could not resolve hostname",
    "connection closed by",
    "connection reset by",
    "kex_exchange_identification",
)


def classify_ssh_failure(host: str, returncode: int, output: str, timeout: float):
    """Build the exception matching a failed ssh invocation.

    Args:
        host: Target host.
        returncode: Exit status of the local ``ssh`` process.
        output: Combined output of the invocation.
        timeout: Deadline that applied, for the timeout message.

    Returns:
        A :class:`~kubeship.errors.RemoteError` subclass instance.
    """
    lowered = output.lower()
    if returncode == SSH_ERROR_CODE:
        if any(m in lowered for m in _AUTH_MARKERS):
            return AuthenticationFailed(
                "SSH authentication failed: %s" % output.strip(), host=host,
            )
        if any(m in lowered for m in _DIAL_MARKERS):
            return DialFailed("SSH dial failed: %s" % output.strip(), host=host)
    if returncode in REMOTE_TIMEOUT_CODES:
        return CommandTimeout(
            "command timeout after %ds" % timeout, host=host, timeout=timeout,
        )
    return RemoteCommandFailed(
        "command failed with exit code %d" % returncode,
        host=host, exit_code=returncode, output=output,
    )


def _clean_output(raw: bytes) -> str:
    # scp acknowledgements are NUL / \x01 bytes interleaved with messages
    return raw.decode("utf-8", errors="replace").replace("\x00", "").replace("\x01", "")


class RemoteChannel:
    """Executes commands on and pushes files to worker nodes.

    Args:
        settings: SSH connection parameters.
    """

    def __init__(self, settings: SSHSettings | None = None):
        self.settings = settings or SSHSettings()

    def build_ssh_args(self, host: str) -> list[str]:
        """Return the ``ssh`` argv prefix for *host* (without the remote command)."""
        s = self.settings
        args = [
            "ssh",
            "-o", "BatchMode=yes",
            "-o", "ConnectTimeout=%d" % s.timeout,
            "-o", "StrictHostKeyChecking=no",
            "-o", "UserKnownHostsFile=/dev/null",
            "-o", "LogLevel=ERROR",
            "-p", str(s.port),
        ]
        if s.key_path:
            args.extend(["-i", s.key_path])
        for opt in s.options:
            args.extend(["-o", opt])
        target = "%s@%s" % (s.user, host) if s.user else host
        args.append(target)
        return args

    def exec(self, node: WorkerNode, command: str, timeout: float | None = None) -> str:
        """Run *command* on *node* and return its combined output.

        Raises:
            CommandTimeout: The command did not finish within *timeout*.
            AuthenticationFailed: The node rejected our credentials.
            DialFailed: The connection could not be established.
            RemoteCommandFailed: The command exited non-zero.
        """
        deadline = timeout if timeout is not None else self.settings.timeout
        # coreutils treats "timeout 0" as no limit
        remote_deadline = max(1, math.ceil(deadline))
        remote = "timeout -s KILL %d sh -c %s" % (remote_deadline, shlex.quote(command))
        args = self.build_ssh_args(node.ip) + [remote]
        logger.debug("[%s] $ %s", node.name, command)

        try:
            proc = subprocess.run(
                args,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                timeout=deadline + KILL_GRACE,
            )
        except subprocess.TimeoutExpired as e:
            raise CommandTimeout(
                "command timeout after %ds" % deadline, host=node.ip, timeout=deadline,
            ) from e
        except OSError as e:
            raise DialFailed("cannot start ssh client: %s" % e, host=node.ip) from e

        output = _clean_output(proc.stdout or b"")
        if proc.returncode != 0:
            raise classify_ssh_failure(node.ip, proc.returncode, output, deadline)
        return output

    def remote_file_size(self, node: WorkerNode, remote_path: str) -> int:
        """Return the byte size of *remote_path*, or ``-1`` if it cannot be parsed."""
        output = self.exec(node, "stat -c%%s %s" % shlex.quote(remote_path))
        lines = [line for line in output.strip().splitlines() if line.strip()]
        try:
            return int(lines[-1].strip())
        except (IndexError, ValueError):
            logger.debug("[%s] Unparseable stat output: %r", node.name, output)
            return -1

    def remove_file(self, node: WorkerNode, remote_path: str) -> None:
        """Delete *remote_path* on *node* (missing files are not an error)."""
        self.exec(node, "rm -f %s" % shlex.quote(remote_path))

    def transfer_file(self, node: WorkerNode, local_path: str, remote_path: str) -> int:
        """Push *local_path* to *remote_path* on *node* and verify its size.

        Returns:
            Number of bytes transferred.

        Raises:
            TransferSizeMismatch: The remote size differs from the local size.
            CommandTimeout: The transfer exceeded ``settings.transfer_timeout``.
            RemoteCommandFailed: The remote receiver rejected the stream.
            AuthenticationFailed, DialFailed: Connection-level failures.
            OSError: The local file cannot be read.
        """
        local_size = os.path.getsize(local_path)
        deadline = self.settings.transfer_timeout
        header = b"C0644 %d %s\n" % (local_size, os.path.basename(local_path).encode())
        args = self.build_ssh_args(node.ip) + ["scp -t %s" % shlex.quote(remote_path)]
        logger.debug("[%s] scp sink -> %s (%d bytes)", node.name, remote_path, local_size)

        with open(local_path, "rb") as src:
            try:
                proc = subprocess.Popen(
                    args,
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                )
            except OSError as e:
                raise DialFailed("cannot start ssh client: %s" % e, host=node.ip) from e

            expired = threading.Event()

            def _expire():
                expired.set()
                proc.kill()

            watchdog = threading.Timer(deadline, _expire)
            watchdog.daemon = True
            watchdog.start()
            try:
                try:
                    proc.stdin.write(header)
                    shutil.copyfileobj(src, proc.stdin, TRANSFER_CHUNK)
                    proc.stdin.write(b"\x00")
                except BrokenPipeError:
                    # receiver exited early; its output explains why
                    logger.debug("[%s] scp sink closed the stream early", node.name)
                raw, _ = proc.communicate()
            finally:
                watchdog.cancel()
                if proc.poll() is None:
                    proc.kill()
                    proc.wait()

        if expired.is_set():
            raise CommandTimeout(
                "transfer timeout after %ds" % deadline, host=node.ip, timeout=deadline,
            )
        output = _clean_output(raw or b"")
        if proc.returncode != 0:
            raise classify_ssh_failure(node.ip, proc.returncode, output, deadline)

        remote_size = self.remote_file_size(node, remote_path)
        if remote_size != local_size:
            raise TransferSizeMismatch(
                "size mismatch: local=%d remote=%d" % (local_size, remote_size),
                host=node.ip, local_size=local_size, remote_size=remote_size,
            )
        return local_size

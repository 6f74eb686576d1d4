"""Shared fixtures for kubeship tests."""

from __future__ import annotations

import os
import threading

import pytest

from kubeship.cluster.nodes import WorkerNode
from kubeship.config import DistributorPolicy, SSHSettings
from kubeship.errors import DialFailed, RemoteCommandFailed, TransferSizeMismatch


class FakeChannel:
    """In-memory stand-in for :class:`~kubeship.orchestration.ssh.RemoteChannel`.

    Tracks which images each node holds and records every call.  Failures
    are configured per node address.
    """

    def __init__(self, settings: SSHSettings | None = None):
        self.settings = settings or SSHSettings()
        self.calls: list[tuple[str, str, str]] = []
        self.images: dict[str, set[str]] = {}
        self.files: dict[str, set[str]] = {}
        self.unreachable: set[str] = set()
        self.fail_import: set[str] = set()
        self.fail_cleanup: set[str] = set()
        self.skip_register: set[str] = set()
        self.short_transfer: set[str] = set()
        self.import_failures_left: dict[str, int] = {}
        self.delays: dict[str, float] = {}
        self.archive_images: dict[str, str] = {}
        self._lock = threading.Lock()

    def _record(self, node, kind, detail):
        with self._lock:
            self.calls.append((node.ip, kind, detail))

    def calls_for(self, ip: str, kind: str | None = None):
        return [c for c in self.calls if c[0] == ip and (kind is None or c[1] == kind)]

    def exec(self, node, command, timeout=None):
        if node.ip in self.unreachable:
            self._record(node, "dial", command)
            raise DialFailed("SSH dial failed: connection refused", host=node.ip)

        if command == "hostname":
            self._record(node, "hostname", command)
            return node.name + "\n"

        if " images import " in command:
            self._record(node, "import", command)
            if node.ip in self.delays:
                threading.Event().wait(self.delays[node.ip])
            left = self.import_failures_left.get(node.ip, 0)
            if node.ip in self.fail_import or left > 0:
                if left > 0:
                    self.import_failures_left[node.ip] = left - 1
                raise RemoteCommandFailed(
                    "command failed with exit code 1", host=node.ip, exit_code=1,
                    output="ctr: failed to ingest: no space left on device",
                )
            image = self.archive_images.get(command.rsplit(" ", 1)[1], self.pending_image)
            if node.ip not in self.skip_register:
                self.images.setdefault(node.ip, set()).add(image)
            return "unpacking %s...done\n" % image

        if command.endswith(" images list"):
            self._record(node, "list", command)
            lines = ["REF TYPE DIGEST SIZE PLATFORMS LABELS"]
            for ref in sorted(self.images.get(node.ip, ())):
                lines.append("%s application/vnd.oci.image.index.v1+json sha256:abc 10.0 MiB linux/amd64 -" % ref)
            return "\n".join(lines) + "\n"

        raise AssertionError("unexpected command: %s" % command)

    def transfer_file(self, node, local_path, remote_path):
        self._record(node, "transfer", remote_path)
        if node.ip in self.unreachable:
            raise DialFailed("SSH dial failed: connection refused", host=node.ip)
        size = os.path.getsize(local_path)
        if node.ip in self.short_transfer:
            raise TransferSizeMismatch(
                "size mismatch: local=%d remote=%d" % (size, size - 1),
                host=node.ip, local_size=size, remote_size=size - 1,
            )
        self.files.setdefault(node.ip, set()).add(remote_path)
        return size

    def remove_file(self, node, remote_path):
        self._record(node, "remove", remote_path)
        if node.ip in self.fail_cleanup:
            raise RemoteCommandFailed("command failed with exit code 1", host=node.ip, exit_code=1,
                                      output="rm: cannot remove: Permission denied")
        self.files.get(node.ip, set()).discard(remote_path)

    # image reference an import registers unless archive_images maps its remote path
    pending_image = "registry.example.io/team/backend:latest"


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Keep tests away from the user's real config file."""
    monkeypatch.setattr("kubeship.config.DEFAULT_CONFIG_PATH", tmp_path / "no-config.yaml")
    monkeypatch.delenv("KUBESHIP_CONFIG", raising=False)


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def make_channel():
    """Factory matching the ``RemoteChannel(settings)`` constructor."""
    created: list[FakeChannel] = []

    def _make(settings=None):
        ch = FakeChannel(settings)
        created.append(ch)
        return ch

    _make.created = created
    return _make


@pytest.fixture
def nodes():
    return [WorkerNode(name="worker-%d" % i, ip="10.0.0.%d" % i) for i in range(1, 6)]


@pytest.fixture
def archive(tmp_path):
    path = tmp_path / "kubeship-backend.tar"
    path.write_bytes(b"x" * 4096)
    return str(path)


@pytest.fixture
def fast_policy():
    def _make(**kwargs):
        kwargs.setdefault("retry_delay", 0)
        return DistributorPolicy(**kwargs)
    return _make

"""CLI integration tests for kubeship.

Tests the CLI using Click's CliRunner. Remote access is replaced by the
in-memory channel from ``conftest.py``.
"""

from __future__ import annotations

from unittest import mock

import pytest
from click.testing import CliRunner

from kubeship import __version__
from kubeship.cli import main

IMAGE = "registry.example.io/team/backend:latest"
FRONTEND = "registry.example.io/team/frontend:latest"
WORKERS = "10.0.0.1,10.0.0.2,10.0.0.3"


@pytest.fixture
def runner():
    """Create a CliRunner instance."""
    return CliRunner()


@pytest.fixture
def fake_remote(make_channel):
    """Patch the CLI's RemoteChannel with the in-memory fake."""
    with mock.patch("kubeship.cli.RemoteChannel", side_effect=make_channel):
        yield make_channel


class TestVersionAndHelp:
    """Test version and help output."""

    def test_version(self, runner):
        """Test that kubeship --version shows the package version."""
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "kubeship, version %s" % __version__ in result.output

    def test_help(self, runner):
        """Test that kubeship --help lists every command."""
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        for command in ("nodes", "check", "distribute", "verify"):
            assert command in result.output

    def test_distribute_help(self, runner):
        """Test that distribute --help shows the worker and quorum options."""
        result = runner.invoke(main, ["distribute", "--help"])
        assert result.exit_code == 0
        assert "--workers" in result.output
        assert "--min-workers" in result.output
        assert "--keep-archives" in result.output


class TestNodesCommand:
    """Test the nodes command."""

    def test_explicit_workers(self, runner):
        """Test that --workers lists nodes named by position."""
        result = runner.invoke(main, ["nodes", "--workers", WORKERS])
        assert result.exit_code == 0
        assert "Found 3 worker nodes" in result.output
        assert "worker-2 (10.0.0.2)" in result.output

    @mock.patch("kubeship.cli.KubectlClient")
    def test_discovery(self, mock_client, runner):
        """Test that without --workers the cluster is asked for workers."""
        mock_client.return_value.get_worker_ips.return_value = ["10.1.0.5"]
        result = runner.invoke(main, ["nodes", "--kubeconfig", "/tmp/kc"])
        assert result.exit_code == 0
        assert "worker-10.1.0.5 (10.1.0.5)" in result.output
        mock_client.assert_called_once_with(kubeconfig="/tmp/kc", use_sudo=False)

    def test_config_file_workers(self, runner, tmp_path):
        """Test that workers listed in the config file are used."""
        cfg = tmp_path / "kubeship.yaml"
        cfg.write_text("distribution:\n  workers: [10.2.0.1, 10.2.0.2]\n")
        result = runner.invoke(main, ["--config", str(cfg), "nodes"])
        assert result.exit_code == 0
        assert "worker-1 (10.2.0.1)" in result.output


class TestCheckCommand:
    """Test the check command."""

    def test_all_reachable(self, runner, fake_remote):
        """Test that check reports success when every worker answers."""
        result = runner.invoke(main, ["check", "--workers", WORKERS])
        assert result.exit_code == 0
        assert "All 3 workers reachable" in result.output

    def test_unreachable_exits_nonzero(self, runner, make_channel):
        """Test that an unreachable worker is named with ssh-copy-id guidance."""
        def _factory(settings):
            ch = make_channel(settings)
            ch.unreachable.add("10.0.0.2")
            return ch

        with mock.patch("kubeship.cli.RemoteChannel", side_effect=_factory):
            result = runner.invoke(main, ["check", "--workers", WORKERS, "--ssh-user", "ops"])
        assert result.exit_code == 1
        assert "worker-2 (10.0.0.2)" in result.output
        assert "ssh-copy-id ops@<worker-ip>" in result.output


class TestDistributeCommand:
    """Test the distribute command."""

    @pytest.fixture
    def archive(self, tmp_path):
        path = tmp_path / "backend.tar"
        path.write_bytes(b"\x00" * 2048)
        return str(path)

    @pytest.fixture
    def frontend_archive(self, tmp_path):
        path = tmp_path / "frontend.tar"
        path.write_bytes(b"\x00" * 1024)
        return str(path)

    def test_distribute_with_archive(self, runner, fake_remote, archive):
        """Test a single image distributed from an existing archive."""
        result = runner.invoke(main, [
            "distribute", IMAGE, "--archive", archive, "--workers", WORKERS, "--retries", "1",
        ])
        assert result.exit_code == 0, result.output
        assert "Distributed backend to 3/3 workers" in result.output
        assert "All images successfully distributed" in result.output
        channel = fake_remote.created[0]
        assert channel.images == {ip: {IMAGE} for ip in WORKERS.split(",")}

    def test_distribute_several_images(self, runner, make_channel, archive, frontend_archive):
        """Test that several images share one connectivity check and one audit."""
        def _factory(settings):
            ch = make_channel(settings)
            ch.archive_images = {"/tmp/backend.tar": IMAGE, "/tmp/frontend.tar": FRONTEND}
            return ch

        with mock.patch("kubeship.cli.RemoteChannel", side_effect=_factory):
            result = runner.invoke(main, [
                "distribute", IMAGE, FRONTEND,
                "--archive", archive, "--archive", frontend_archive,
                "--workers", WORKERS,
            ])
        assert result.exit_code == 0, result.output
        assert "Distributed backend to 3/3 workers" in result.output
        assert "Distributed frontend to 3/3 workers" in result.output
        assert "All images successfully distributed" in result.output

        channel = make_channel.created[0]
        assert channel.images == {ip: {IMAGE, FRONTEND} for ip in WORKERS.split(",")}
        for ip in WORKERS.split(","):
            assert len(channel.calls_for(ip, "hostname")) == 1
            # one list per import plus one per image in the final audit
            assert len(channel.calls_for(ip, "list")) == 4

    def test_several_images_dry_run(self, runner, fake_remote):
        """Test that a dry run accepts several images and touches no worker."""
        result = runner.invoke(main, [
            "distribute", "--workers", "10.0.0.1", "--dry-run",
            "reg.io/t/backend:1", "reg.io/t/frontend:1",
        ])
        assert result.exit_code == 0, result.output
        assert "Distributed backend to 1/1 workers" in result.output
        assert "Distributed frontend to 1/1 workers" in result.output
        assert fake_remote.created[0].calls == []

    def test_components_label_each_image(self, runner, fake_remote, archive, frontend_archive):
        """Test that repeated --component values label images in order."""
        result = runner.invoke(main, [
            "distribute", IMAGE, FRONTEND, "--dry-run", "--workers", "10.0.0.1",
            "--archive", archive, "--archive", frontend_archive,
            "--component", "api", "--component", "web",
        ])
        assert result.exit_code == 0, result.output
        assert "Distributed api to 1/1 workers" in result.output
        assert "Distributed web to 1/1 workers" in result.output

    def test_archive_count_must_match_images(self, runner, fake_remote, archive):
        """Test that --archive must be given once per image or not at all."""
        result = runner.invoke(main, [
            "distribute", IMAGE, FRONTEND, "--archive", archive, "--workers", WORKERS,
        ])
        assert result.exit_code == 2
        assert "--archive given 1 times for 2 images" in result.output
        assert fake_remote.created == []

    def test_quorum_failure_exits_nonzero(self, runner, make_channel, archive):
        """Test that missing the quorum fails the command."""
        def _factory(settings):
            ch = make_channel(settings)
            ch.fail_import.add("10.0.0.3")
            return ch

        with mock.patch("kubeship.cli.RemoteChannel", side_effect=_factory), \
                mock.patch("kubeship.containers.distribute.time.sleep"):
            result = runner.invoke(main, [
                "distribute", IMAGE, "--archive", archive, "--workers", WORKERS,
            ])
        assert result.exit_code == 1
        assert "2/3 workers received image, minimum 3" in result.output

    def test_degraded_run_passes(self, runner, make_channel, archive):
        """Test that a degraded fleet above the quorum still succeeds."""
        def _factory(settings):
            ch = make_channel(settings)
            ch.fail_import.add("10.0.0.3")
            return ch

        with mock.patch("kubeship.cli.RemoteChannel", side_effect=_factory), \
                mock.patch("kubeship.containers.distribute.time.sleep"):
            result = runner.invoke(main, [
                "distribute", IMAGE, "--archive", archive, "--workers", WORKERS,
                "--min-workers", "2",
            ])
        assert result.exit_code == 0, result.output
        assert "FAILED worker-3 (10.0.0.3)" in result.output
        assert "degraded fleet" in result.output

    @mock.patch("kubeship.cli.export_image")
    def test_exports_when_no_archive(self, mock_export, runner, fake_remote, archive):
        """Test that an image without --archive is exported with docker save."""
        mock_export.return_value = archive
        result = runner.invoke(main, ["distribute", IMAGE, "--workers", "10.0.0.1"])
        assert result.exit_code == 0, result.output
        mock_export.assert_called_once_with(
            IMAGE, "/tmp/kubeship-backend.tar", use_sudo=False, dry_run=False,
        )


class TestVerifyCommand:
    """Test the verify command."""

    def test_reports_missing(self, runner, make_channel):
        """Test that verify names workers missing an image."""
        def _factory(settings):
            ch = make_channel(settings)
            ch.images = {"10.0.0.1": {IMAGE}, "10.0.0.2": {IMAGE}}
            return ch

        with mock.patch("kubeship.cli.RemoteChannel", side_effect=_factory):
            result = runner.invoke(main, ["verify", IMAGE, "--workers", WORKERS, "--min-workers", "2"])
        assert result.exit_code == 0, result.output
        assert "missing on: worker-3" in result.output

"""Tests for gpuhost.services module."""

from __future__ import annotations

import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from gpuhost.services import AptPackageManager, SystemdServiceManager


def _done(code=0, stdout=""):
    return subprocess.CompletedProcess([], code, stdout=stdout, stderr="")


class TestAptPackageManager:
    @patch("gpuhost.services.run")
    def test_is_installed(self, mock_run):
        mock_run.return_value = _done(stdout="install ok installed")
        assert AptPackageManager().is_installed("qemu-kvm") is True
        assert mock_run.call_args[0][0] == ["dpkg-query", "-W", "-f=${Status}", "qemu-kvm"]

    @patch("gpuhost.services.run")
    def test_removed_package_is_not_installed(self, mock_run):
        mock_run.return_value = _done(stdout="deinstall ok config-files")
        assert AptPackageManager().is_installed("qemu-kvm") is False

    @patch("gpuhost.services.run")
    def test_unknown_package(self, mock_run):
        mock_run.return_value = _done(code=1)
        assert AptPackageManager().is_installed("nope") is False

    @patch("gpuhost.services.run")
    def test_install_is_noninteractive(self, mock_run):
        AptPackageManager().install(["qemu-kvm", "ovmf"])
        cmd = mock_run.call_args[0][0]
        assert cmd == ["apt-get", "install", "-y", "-qq", "qemu-kvm", "ovmf"]
        assert mock_run.call_args.kwargs["env"]["DEBIAN_FRONTEND"] == "noninteractive"

    @patch("gpuhost.services.run")
    def test_install_nothing(self, mock_run):
        AptPackageManager().install([])
        mock_run.assert_not_called()

    @patch("gpuhost.services.run")
    def test_install_deb(self, mock_run):
        AptPackageManager().install_deb(Path("/tmp/cuda-keyring.deb"))
        assert mock_run.call_args[0][0] == ["dpkg", "-i", "/tmp/cuda-keyring.deb"]


class TestSystemdServiceManager:
    @patch("gpuhost.services.run")
    def test_is_active(self, mock_run):
        mock_run.return_value = _done()
        assert SystemdServiceManager().is_active("libvirtd") is True
        mock_run.return_value = _done(code=3)
        assert SystemdServiceManager().is_active("libvirtd") is False

    @patch("gpuhost.services.run")
    def test_enable_and_start(self, mock_run):
        SystemdServiceManager().enable_and_start("libvirtd")
        mock_run.assert_called_once_with(["systemctl", "enable", "--now", "libvirtd"])

    @patch("gpuhost.services.run", side_effect=subprocess.CalledProcessError(1, ["systemctl"]))
    def test_enable_failure_propagates(self, mock_run, capsys):
        with pytest.raises(subprocess.CalledProcessError):
            SystemdServiceManager().enable_and_start("libvirtd")
        assert "systemctl could not start libvirtd" in capsys.readouterr().out

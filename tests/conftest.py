"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from gpuhost import utils
from gpuhost.models import RunConfiguration
from gpuhost.phases import RunContext

from tests.fakes import make_host

_CONFIG_ENV = (
    "LOG_FILE",
    "CONFIG_DIR",
    "NETPLAN_DIR",
    "GRUB_DEFAULT_FILE",
    "MODULES_FILE",
    "MODPROBE_CONF",
    "OS_RELEASE_FILE",
    "NETPLAN_TRY_TIMEOUT",
    "GPU_MODE",
    "BRIDGE_NAME",
    "IOMMU_ISOLATION",
    "LOG_VERBOSE",
    "DRY_RUN",
    "SKIP_PHASES",
    "PASSTHROUGH_DRIVER",
    "SUDO_USER",
    "TMUX",
    "STY",
)

GRUB_DEFAULTS = """\
GRUB_DEFAULT=0
GRUB_TIMEOUT_STYLE=hidden
GRUB_TIMEOUT=0
GRUB_CMDLINE_LINUX_DEFAULT="quiet splash"
GRUB_CMDLINE_LINUX=""
"""


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep host environment and log state out of every test."""
    for name in _CONFIG_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("TERM", "xterm-256color")
    monkeypatch.setattr(utils, "_log_path", None)
    monkeypatch.setattr(utils, "_verbose", False)


@pytest.fixture
def host(tmp_path):
    return make_host(tmp_path)


@pytest.fixture
def run_config(tmp_path) -> RunConfiguration:
    """A configuration whose every file lives under ``tmp_path``."""
    grub = tmp_path / "grub"
    grub.write_text(GRUB_DEFAULTS)
    return RunConfiguration(
        netplan_dir=tmp_path / "netplan",
        grub_file=grub,
        modules_file=tmp_path / "modules",
        modprobe_conf=tmp_path / "modprobe.d" / "vfio.conf",
        os_release_file=tmp_path / "os-release",
        config_dir=tmp_path / "vmctl",
        log_file=tmp_path / "bootstrap.log",
    )


@pytest.fixture
def ctx(run_config, host) -> RunContext:
    return RunContext(cfg=run_config, host=host)


@pytest.fixture
def provision_paths(tmp_path, monkeypatch) -> Path:
    """Redirect the fixed system paths used by the provisioning phases."""
    root = tmp_path / "root"
    mapping = {
        "CUDA_KEYRING": root / "usr/share/keyrings/cuda-archive-keyring.gpg",
        "CUDA_SOURCES_LIST": root / "etc/apt/sources.list.d/cuda.list",
        "CUDA_NVCC": root / "usr/local/cuda/bin/nvcc",
        "CUDA_PROFILE": root / "etc/profile.d/cuda.sh",
        "CONTAINER_TOOLKIT_KEYRING": root / "usr/share/keyrings/nvidia-container-toolkit-keyring.gpg",
        "CONTAINER_TOOLKIT_SOURCES": root / "etc/apt/sources.list.d/nvidia-container-toolkit.list",
        "LIBVIRT_PROFILE": root / "etc/profile.d/libvirt.sh",
        "KVM_DEVICE": root / "dev/kvm",
        "VMCTL_LAUNCHER": root / "usr/local/bin/vmctl",
    }
    for name, path in mapping.items():
        monkeypatch.setattr(f"gpuhost.provision.{name}", path)
    return root

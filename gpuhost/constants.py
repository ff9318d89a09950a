"""Global constants and path configuration for gpu-vm-bootstrap."""

from __future__ import annotations

import os
import re
from pathlib import Path

PROGRAM_NAME = "gpu-vm-bootstrap"
VERSION = "0.1.0"

DEFAULT_LOG_FILE = Path(f"/var/log/{PROGRAM_NAME}.log")
DEFAULT_CONFIG_DIR = Path("/etc/vmctl")
BOOTSTRAP_CONFIG_NAME = "bootstrap.yaml"
VMCTL_CONFIG_NAME = "config.yaml"
DEFAULT_NETPLAN_DIR = Path("/etc/netplan")
DEFAULT_GRUB_FILE = Path("/etc/default/grub")
DEFAULT_MODULES_FILE = Path("/etc/modules")
DEFAULT_MODPROBE_CONF = Path("/etc/modprobe.d/vfio.conf")
DEFAULT_OS_RELEASE_FILE = Path("/etc/os-release")
RESOLV_CONF = Path("/etc/resolv.conf")
SYSFS_ROOT = Path("/sys")
VMCTL_LAUNCHER = Path("/usr/local/bin/vmctl")
CUDA_PROFILE = Path("/etc/profile.d/cuda.sh")
CUDA_NVCC = Path("/usr/local/cuda/bin/nvcc")
LIBVIRT_PROFILE = Path("/etc/profile.d/libvirt.sh")
KVM_DEVICE = Path("/dev/kvm")
LIBVIRT_URI = os.environ.get("LIBVIRT_URI", "qemu:///system")
TRUTHY = {"1", "true", "yes", "on"}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

# Process exit codes
EXIT_SUCCESS = 0
EXIT_GENERAL_ERROR = 1
EXIT_INVALID_ARGS = 2
EXIT_MISSING_DEPS = 3
EXIT_NOT_ROOT = 4
EXIT_UNSUPPORTED_OS = 5
EXIT_NO_NETWORK = 6
EXIT_STATE_INCONSISTENT = 7

GPU_MODE_EXCLUSIVE = "exclusive"
GPU_MODE_FLEXIBLE = "flexible"
GPU_MODES = (GPU_MODE_EXCLUSIVE, GPU_MODE_FLEXIBLE)

ISOLATION_WARN = "warn"
ISOLATION_STRICT = "strict"
ISOLATION_POLICIES = (ISOLATION_WARN, ISOLATION_STRICT)

DEFAULT_BRIDGE_NAME = "br0"
DEFAULT_TRY_TIMEOUT = 120
PASSTHROUGH_DRIVER = "vfio-pci"

# Phase runner states
PHASE_PENDING = "PENDING"
PHASE_SKIPPED = "SKIPPED"
PHASE_RUNNING = "RUNNING"
PHASE_COMPLETE = "COMPLETE"
PHASE_FAILED = "FAILED"

# Results of a single ensure() call
ACTION_SATISFIED = "satisfied"
ACTION_DRY_RUN = "dry-run"
ACTION_APPLIED = "applied"

# GPU binding states
HOST_BOUND = "HOST_BOUND"
PASSTHROUGH_BOUND = "PASSTHROUGH_BOUND"
UNBOUND = "UNBOUND"

# Interface addressing modes
ADDRESSING_DHCP = "dhcp"
ADDRESSING_STATIC_SUBNET = "static-subnet"
ADDRESSING_POINT_TO_POINT = "static-point-to-point"

TOPOLOGY_STANDARD = "standard"
TOPOLOGY_POINT_TO_POINT = "point-to-point"

NVIDIA_VENDOR_ID = "10de"
DISPLAY_CLASS_PREFIX = "0x03"
PCI_BRIDGE_CLASS_PREFIX = "0x0604"

SUPPORTED_OS_ID = "ubuntu"
SUPPORTED_OS_VERSION = "24.04"
CONNECTIVITY_HOSTS = ("archive.ubuntu.com", "github.com", "developer.download.nvidia.com")
PING_TIMEOUT_SECONDS = 3
MULTIPLEXER_SESSION = "bootstrap"

CUDA_KEYRING = Path("/usr/share/keyrings/cuda-archive-keyring.gpg")
CUDA_SOURCES_LIST = Path("/etc/apt/sources.list.d/cuda-ubuntu2404-x86_64.list")
CUDA_KEYRING_URL = (
    "https://developer.download.nvidia.com/compute/cuda/repos/ubuntu2404/x86_64/cuda-keyring_1.1-1_all.deb"
)
CONTAINER_TOOLKIT_KEYRING = Path("/usr/share/keyrings/nvidia-container-toolkit-keyring.gpg")
CONTAINER_TOOLKIT_SOURCES = Path("/etc/apt/sources.list.d/nvidia-container-toolkit.list")
CONTAINER_TOOLKIT_GPGKEY_URL = "https://nvidia.github.io/libnvidia-container/gpgkey"
CONTAINER_TOOLKIT_LIST_URL = (
    "https://nvidia.github.io/libnvidia-container/stable/deb/nvidia-container-toolkit.list"
)

KVM_PACKAGES = (
    "qemu-kvm",
    "qemu-utils",
    "libvirt-daemon-system",
    "libvirt-clients",
    "virtinst",
    "virt-manager",
    "ovmf",
    "cpu-checker",
    "bridge-utils",
)
KVM_GROUPS = ("libvirt", "kvm")
VFIO_MODULES = ("vfio", "vfio_iommu_type1", "vfio_pci")
IOMMU_VENDOR_PARAMS = {
    "GenuineIntel": "intel_iommu=on",
    "AuthenticAMD": "amd_iommu=on",
}
IOMMU_PASSTHROUGH_PARAM = "iommu=pt"

CUDA_PROFILE_CONTENT = """\
# CUDA toolkit environment configuration
# Added by gpu-vm-bootstrap
if [ -d /usr/local/cuda/bin ]; then
    export PATH="/usr/local/cuda/bin${PATH:+:${PATH}}"
fi
if [ -d /usr/local/cuda/lib64 ]; then
    export LD_LIBRARY_PATH="/usr/local/cuda/lib64${LD_LIBRARY_PATH:+:${LD_LIBRARY_PATH}}"
fi
"""

LIBVIRT_PROFILE_CONTENT = f"""\
# Default libvirt connection URI
# Added by gpu-vm-bootstrap
export LIBVIRT_DEFAULT_URI="{LIBVIRT_URI}"
"""

PCI_SLOT_RE = re.compile(r"^(?:[0-9a-fA-F]{4}:)?[0-9a-fA-F]{2}:[0-9a-fA-F]{2}\.[0-7]$")
BRIDGE_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]{1,15}$")
GRUB_CMDLINE_RE = re.compile(r'^GRUB_CMDLINE_LINUX_DEFAULT=(["\']?)(.*?)\1\s*$')
IPV4_RE = re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b")

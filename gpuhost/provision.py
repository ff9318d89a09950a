"""Provisioning phases 1-5 and the phase table for gpu-vm-bootstrap."""

from __future__ import annotations

import sys
import tempfile
from pathlib import Path
from typing import List, Optional

from gpuhost import probes
from gpuhost.actions import (
    apply_command,
    ensure,
    ensure_file_content,
    ensure_grub_params,
    ensure_line_in_file,
    ensure_packages,
    ensure_service_running,
    ensure_user_in_group,
)
from gpuhost.config import render_vmctl_config
from gpuhost.constants import (
    ACTION_APPLIED,
    ACTION_SATISFIED,
    CONTAINER_TOOLKIT_GPGKEY_URL,
    CONTAINER_TOOLKIT_KEYRING,
    CONTAINER_TOOLKIT_LIST_URL,
    CONTAINER_TOOLKIT_SOURCES,
    CUDA_KEYRING,
    CUDA_KEYRING_URL,
    CUDA_NVCC,
    CUDA_PROFILE,
    CUDA_PROFILE_CONTENT,
    CUDA_SOURCES_LIST,
    DISPLAY_CLASS_PREFIX,
    GPU_MODE_EXCLUSIVE,
    IOMMU_PASSTHROUGH_PARAM,
    IOMMU_VENDOR_PARAMS,
    KVM_DEVICE,
    KVM_GROUPS,
    KVM_PACKAGES,
    LIBVIRT_PROFILE,
    LIBVIRT_PROFILE_CONTENT,
    NVIDIA_VENDOR_ID,
    VFIO_MODULES,
    VMCTL_CONFIG_NAME,
    VMCTL_LAUNCHER,
)
from gpuhost.devices import SysfsDeviceRegistry, same_card
from gpuhost.exceptions import ActionError, MissingDependencyError, PreconditionError, StateInconsistentError
from gpuhost.models import Host, PciDevice, PhaseDescriptor, RunConfiguration
from gpuhost.netplan import NetplanConfigurator
from gpuhost.network import migrate_network
from gpuhost.phases import RunContext
from gpuhost.ports import DeviceRegistry, SystemPort
from gpuhost.preflight import preflight
from gpuhost.runtime import HostRuntime
from gpuhost.services import AptPackageManager, SystemdServiceManager
from gpuhost.utils import download_file, get_env, log, write_file_atomic

_KVM_VENDOR_MODULES = {"GenuineIntel": "kvm_intel", "AuthenticAMD": "kvm_amd"}


# -- shared device queries ---------------------------------------------------


def detect_nvidia_gpus(devices: DeviceRegistry) -> List[PciDevice]:
    return [d for d in devices.list_devices(NVIDIA_VENDOR_ID) if d.device_class.startswith(DISPLAY_CLASS_PREFIX)]


def primary_gpu(devices: DeviceRegistry) -> Optional[PciDevice]:
    gpus = detect_nvidia_gpus(devices)
    return gpus[0] if gpus else None


def card_functions(devices: DeviceRegistry, gpu: PciDevice) -> List[PciDevice]:
    """The GPU plus its companion functions (HDMI audio, USB-C) on the same card."""
    return [d for d in devices.list_devices(NVIDIA_VENDOR_ID) if same_card(d.slot, gpu.slot)]


def nvidia_driver_version(system: SystemPort) -> Optional[str]:
    output = system.capture(["nvidia-smi", "--query-gpu=driver_version", "--format=csv,noheader"])
    if not output or not output.strip():
        return None
    return output.strip().splitlines()[0].strip()


# -- Phase 1 -----------------------------------------------------------------


def _add_cuda_repo(ctx: RunContext) -> None:
    packages = ctx.host.packages
    with tempfile.TemporaryDirectory() as tmp:
        deb = Path(tmp) / "cuda-keyring.deb"
        download_file(CUDA_KEYRING_URL, deb, "Downloading CUDA keyring")
        packages.install_deb(deb)
    packages.update()


def _add_container_toolkit_repo(ctx: RunContext) -> None:
    with tempfile.TemporaryDirectory() as tmp:
        key = Path(tmp) / "gpgkey"
        listing = Path(tmp) / "nvidia-container-toolkit.list"
        download_file(CONTAINER_TOOLKIT_GPGKEY_URL, key, "Downloading container toolkit signing key")
        ctx.host.system.execute(["gpg", "--batch", "--yes", "--dearmor", "-o", str(CONTAINER_TOOLKIT_KEYRING), str(key)])
        download_file(CONTAINER_TOOLKIT_LIST_URL, listing, "Downloading container toolkit sources list")
        signed = listing.read_text().replace("deb https://", f"deb [signed-by={CONTAINER_TOOLKIT_KEYRING}] https://")
    write_file_atomic(CONTAINER_TOOLKIT_SOURCES, signed)
    ctx.host.packages.update()


def setup_nvidia(ctx: RunContext) -> None:
    host = ctx.host
    system = host.system
    packages = host.packages

    ctx.step("detect", "Detecting NVIDIA GPUs...")
    gpus = detect_nvidia_gpus(host.devices)
    if not gpus:
        raise MissingDependencyError(f"No NVIDIA GPU detected (vendor {NVIDIA_VENDOR_ID}, display class)")
    for gpu in gpus:
        log("INFO", f"Found NVIDIA GPU {gpu.slot} [{gpu.vendor_device}]")

    ctx.step("cuda-repo", "Adding NVIDIA CUDA repository...")
    ensure(
        ctx,
        "add the NVIDIA CUDA apt repository",
        lambda: probes.file_present(CUDA_KEYRING) and probes.file_present(CUDA_SOURCES_LIST),
        lambda: _add_cuda_repo(ctx),
    )

    ctx.step("headers", "Installing kernel headers...")
    ensure_packages(ctx, [f"linux-headers-{system.kernel_release()}"])

    ctx.step("driver", "Installing NVIDIA driver (cuda-drivers)...")
    result = ensure(
        ctx,
        "install cuda-drivers",
        lambda: nvidia_driver_version(system) is not None,
        lambda: packages.install(["cuda-drivers"]),
    )
    if result == ACTION_APPLIED:
        ctx.state.require_reboot("NVIDIA driver installed")

    ctx.step("toolkit", "Installing CUDA toolkit...")
    ensure(
        ctx,
        "install cuda-toolkit",
        lambda: probes.command_available(system, "nvcc") or probes.file_present(CUDA_NVCC),
        lambda: packages.install(["cuda-toolkit"]),
    )
    ensure_file_content(ctx, CUDA_PROFILE, CUDA_PROFILE_CONTENT, description=f"write CUDA environment to {CUDA_PROFILE}")

    ctx.step("container-toolkit", "Installing NVIDIA Container Toolkit...")
    ensure(
        ctx,
        "add the NVIDIA Container Toolkit apt repository",
        lambda: probes.file_present(CONTAINER_TOOLKIT_KEYRING) and probes.file_present(CONTAINER_TOOLKIT_SOURCES),
        lambda: _add_container_toolkit_repo(ctx),
    )
    ensure(
        ctx,
        "install nvidia-container-toolkit",
        lambda: probes.command_available(system, "nvidia-ctk"),
        lambda: packages.install(["nvidia-container-toolkit"]),
    )

    ctx.step("verify", "Verifying NVIDIA driver...")
    version = nvidia_driver_version(system)
    if version:
        log("SUCCESS", f"nvidia-smi reports driver {version}")
    else:
        log("WARN", "nvidia-smi is not working yet; the driver loads after a reboot")
        ctx.state.require_reboot("NVIDIA driver not loaded")


# -- Phase 2 -----------------------------------------------------------------


def verify_kvm(ctx: RunContext) -> List[str]:
    """Readiness checks for KVM and libvirt; problems are warnings only."""
    system = ctx.host.system
    warnings: List[str] = []
    if system.capture(["kvm-ok"]) is None:
        warnings.append("kvm-ok reports KVM acceleration is unavailable")
    if not probes.module_loaded(system, "kvm"):
        warnings.append("kvm kernel module is not loaded")
    vendor_module = _KVM_VENDOR_MODULES.get(system.cpu_vendor() or "")
    if vendor_module and not probes.module_loaded(system, vendor_module):
        warnings.append(f"{vendor_module} kernel module is not loaded")
    if not KVM_DEVICE.exists():
        warnings.append(f"{KVM_DEVICE} does not exist")
    if not probes.service_active(ctx.host.services, "libvirtd"):
        warnings.append("libvirtd is not active")
    if system.capture(["virsh", "version"]) is None:
        warnings.append("virsh cannot reach libvirtd")
    for warning in warnings:
        log("WARN", warning)
    if not warnings:
        log("SUCCESS", "KVM and libvirt are ready")
    return warnings


def setup_kvm(ctx: RunContext) -> None:
    ctx.step("packages", "Installing KVM/libvirt packages...")
    ensure_packages(ctx, KVM_PACKAGES, "install KVM/libvirt packages")

    ctx.step("libvirtd", "Enabling libvirtd...")
    ensure_service_running(ctx, "libvirtd")

    ctx.step("groups", "Adding user to libvirt groups...")
    user = get_env("SUDO_USER")
    if user and user != "root":
        changed = [ensure_user_in_group(ctx, user, group) == ACTION_APPLIED for group in KVM_GROUPS]
        if any(changed):
            log("WARN", f"User '{user}' must log out and back in for group changes to apply")
    else:
        log("INFO", "No SUDO_USER set; skipping group membership")

    ctx.step("profile", "Setting default libvirt URI...")
    ensure_file_content(
        ctx, LIBVIRT_PROFILE, LIBVIRT_PROFILE_CONTENT, description=f"write libvirt environment to {LIBVIRT_PROFILE}"
    )

    ctx.step("verify", "Verifying KVM/libvirt...")
    verify_kvm(ctx)


# -- Phase 3 -----------------------------------------------------------------


def render_vfio_conf(ids: List[str]) -> str:
    return (
        "# Bind the NVIDIA GPU to vfio-pci at boot (exclusive mode)\n"
        "# Added by gpu-vm-bootstrap\n"
        f"options vfio-pci ids={','.join(ids)}\n"
        "softdep nvidia pre: vfio-pci\n"
    )


def report_iommu_groups(ctx: RunContext) -> None:
    devices = ctx.host.devices
    group_ids = devices.iommu_group_ids()
    if not group_ids:
        if ctx.state.reboot_required:
            log("INFO", "IOMMU groups will appear after reboot")
        else:
            log("WARN", "No IOMMU groups found; enable VT-d / AMD-Vi in the firmware")
        return
    log("SUCCESS", f"IOMMU active: {len(group_ids)} group(s)")
    for gpu in detect_nvidia_gpus(devices):
        group = devices.iommu_group(gpu.slot)
        if group is None:
            log("WARN", f"GPU {gpu.slot} is not in an IOMMU group")
            continue
        log("INFO", f"GPU {gpu.slot} is in IOMMU group {group.id}: {', '.join(group.members)}")
        if len(group.members) > 2:
            log("WARN", f"IOMMU group {group.id} has {len(group.members)} devices; passthrough may need ACS override")


def setup_vfio(ctx: RunContext) -> None:
    cfg = ctx.cfg
    system = ctx.host.system

    ctx.step("cpu", "Detecting CPU vendor...")
    vendor = system.cpu_vendor()
    param = IOMMU_VENDOR_PARAMS.get(vendor or "")
    if param is None:
        raise PreconditionError(f"Unsupported CPU vendor: {vendor or 'unknown'} (need GenuineIntel or AuthenticAMD)")
    log("INFO", f"CPU vendor: {vendor}")

    results: List[str] = []
    ctx.step("grub", "Configuring kernel command line...")
    grub_result = ensure_grub_params(ctx, cfg.grub_file, [param, IOMMU_PASSTHROUGH_PARAM])
    results.append(grub_result)
    if grub_result != ACTION_SATISFIED:
        apply_command(ctx, "regenerate the GRUB configuration", ["update-grub"])

    ctx.step("modules", f"Adding VFIO modules to {cfg.modules_file}...")
    for module in VFIO_MODULES:
        results.append(ensure_line_in_file(ctx, cfg.modules_file, module))

    ctx.step("modprobe", "Configuring vfio-pci options...")
    if cfg.gpu_mode == GPU_MODE_EXCLUSIVE:
        gpu = primary_gpu(ctx.host.devices)
        if gpu is None:
            raise MissingDependencyError("Exclusive GPU mode needs an NVIDIA GPU, but none was detected")
        ids = sorted({d.vendor_device for d in card_functions(ctx.host.devices, gpu)})
        results.append(
            ensure_file_content(
                ctx,
                cfg.modprobe_conf,
                render_vfio_conf(ids),
                description=f"bind {','.join(ids)} to vfio-pci at boot in {cfg.modprobe_conf}",
            )
        )
    else:
        log("INFO", "Flexible mode: the GPU stays on the host driver until 'vmctl gpu attach'")

    if any(result != ACTION_SATISFIED for result in results):
        ctx.step("initramfs", "Updating initramfs...")
        try:
            apply_command(ctx, "update the initramfs", ["update-initramfs", "-u"])
        except ActionError as exc:
            log("WARN", f"{exc}; run 'update-initramfs -u' manually before rebooting")
        ctx.state.require_reboot("IOMMU/VFIO kernel configuration changed")

    ctx.step("iommu-groups", "Checking IOMMU groups...")
    report_iommu_groups(ctx)


# -- Phase 4 -----------------------------------------------------------------


def setup_bridge(ctx: RunContext) -> None:
    outcome = migrate_network(None, ctx.cfg.bridge_name, ctx)
    if outcome.ok:
        for warning in outcome.warnings:
            log("WARN", warning)
        return
    if outcome.rolled_back and not outcome.rollback_ok:
        raise StateInconsistentError(outcome.message)
    raise ActionError(outcome.message)


# -- Phase 5 -----------------------------------------------------------------


def render_launcher(interpreter: str = sys.executable) -> str:
    return (
        f"#!{interpreter}\n"
        "# vmctl launcher, installed by gpu-vm-bootstrap\n"
        "from gpuhost.vmctl import main\n"
        "\n"
        "raise SystemExit(main())\n"
    )


def install_vmctl(ctx: RunContext) -> None:
    cfg = ctx.cfg
    ctx.step("launcher", f"Installing {VMCTL_LAUNCHER}...")
    ensure_file_content(ctx, VMCTL_LAUNCHER, render_launcher(), mode=0o755, description=f"install {VMCTL_LAUNCHER}")

    ctx.step("config", "Writing vmctl configuration...")
    gpu = primary_gpu(ctx.host.devices)
    config_path = cfg.config_dir / VMCTL_CONFIG_NAME
    ensure_file_content(
        ctx,
        config_path,
        render_vmctl_config(cfg, gpu.slot if gpu else None),
        mode=0o644,
        description=f"write {config_path}",
    )


# -- phase table -------------------------------------------------------------

PHASES = (
    (1, "NVIDIA Driver & CUDA Setup", setup_nvidia),
    (2, "KVM/libvirt Setup", setup_kvm),
    (3, "IOMMU/VFIO Configuration", setup_vfio),
    (4, "Bridge Network Setup", setup_bridge),
    (5, "vmctl Installation", install_vmctl),
)


def build_phases(cfg: RunConfiguration) -> List[PhaseDescriptor]:
    descriptors = [PhaseDescriptor(0, "Pre-flight Checks", preflight)]
    for number, name, action in PHASES:
        descriptors.append(PhaseDescriptor(number, name, action, skip=cfg.skipped(number)))
    return descriptors


def default_host(cfg: RunConfiguration) -> Host:
    return Host(
        packages=AptPackageManager(),
        services=SystemdServiceManager(),
        system=HostRuntime(),
        devices=SysfsDeviceRegistry(passthrough_driver=cfg.passthrough_driver),
        network=NetplanConfigurator(),
    )

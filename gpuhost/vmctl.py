"""vmctl: day-2 GPU and network operations on a provisioned host."""

from __future__ import annotations

import argparse
import dataclasses
import sys
import traceback
from typing import Any, Dict, List, Optional, Tuple

from gpuhost.config import build_config, load_vmctl_config
from gpuhost.constants import (
    EXIT_GENERAL_ERROR,
    EXIT_NOT_ROOT,
    EXIT_STATE_INCONSISTENT,
    EXIT_SUCCESS,
    ISOLATION_POLICIES,
    UNBOUND,
    VERSION,
)
from gpuhost.exceptions import BootstrapError, InvalidInputError, PreconditionError
from gpuhost.gpu import GpuBinder, attach_gpu, detach_gpu
from gpuhost.models import BindingOutcome, Host, MigrationOutcome, RunConfiguration
from gpuhost.network import migrate_network
from gpuhost.phases import RunContext
from gpuhost.provision import default_host, detect_nvidia_gpus
from gpuhost.utils import configure_logging, log

_NO_MUTATION_STEPS = ("precondition", "iommu-group")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vmctl", description="Manage GPU passthrough and host networking")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show debug output")
    parser.add_argument("--config", metavar="PATH", default=None, help="YAML file with default settings")
    parser.add_argument("--version", action="version", version=f"vmctl {VERSION}")
    groups = parser.add_subparsers(dest="group", metavar="{gpu,network}")
    groups.required = True

    gpu = groups.add_parser("gpu", help="GPU binding operations")
    gpu_cmds = gpu.add_subparsers(dest="command", metavar="{status,attach,detach}")
    gpu_cmds.required = True
    status = gpu_cmds.add_parser("status", help="Show the binding state of a GPU")
    status.add_argument("slot", nargs="?", default=None, help="PCI address (default: configured GPU)")
    attach = gpu_cmds.add_parser("attach", help="Bind a GPU to vfio-pci and hot-plug it into a VM")
    attach.add_argument("slot", help="PCI address, e.g. 0000:01:00.0")
    attach.add_argument("vm", help="libvirt domain name")
    detach = gpu_cmds.add_parser("detach", help="Return a GPU to its host driver")
    detach.add_argument("slot", help="PCI address, e.g. 0000:01:00.0")

    network = groups.add_parser("network", help="Host network operations")
    net_cmds = network.add_subparsers(dest="command", metavar="{migrate}")
    net_cmds.required = True
    migrate = net_cmds.add_parser("migrate", help="Move the primary interface onto a bridge")
    migrate.add_argument("--interface", default=None, help="Interface to migrate (default: default-route NIC)")
    migrate.add_argument("--bridge-name", default=None, help="Bridge name (default: from config, else br0)")
    migrate.add_argument("--dry-run", action="store_true", help="Show what would be done without changing anything")
    return parser


def load_settings(args: argparse.Namespace) -> Tuple[RunConfiguration, Dict[str, Any]]:
    """Resolve the run configuration, letting the installed vmctl config fill gaps."""
    cfg = build_config(args)
    installed = load_vmctl_config(cfg.config_dir)
    overrides: Dict[str, Any] = {}
    if getattr(args, "bridge_name", None) is None and installed.get("bridge_name"):
        overrides["bridge_name"] = str(installed["bridge_name"])
    if installed.get("passthrough_driver"):
        overrides["passthrough_driver"] = str(installed["passthrough_driver"])
    if installed.get("iommu_isolation") in ISOLATION_POLICIES:
        overrides["iommu_isolation"] = installed["iommu_isolation"]
    if overrides:
        cfg = dataclasses.replace(cfg, **overrides)
    return cfg, installed


def binding_exit_code(outcome: BindingOutcome) -> int:
    if outcome.ok:
        return EXIT_SUCCESS
    if outcome.step in _NO_MUTATION_STEPS:
        return EXIT_GENERAL_ERROR
    if outcome.state == UNBOUND:
        return EXIT_STATE_INCONSISTENT
    return EXIT_GENERAL_ERROR


def migration_exit_code(outcome: MigrationOutcome) -> int:
    if outcome.ok:
        return EXIT_SUCCESS
    if outcome.rolled_back and not outcome.rollback_ok:
        return EXIT_STATE_INCONSISTENT
    return EXIT_GENERAL_ERROR


def _require_root(host: Host) -> None:
    if not host.system.is_root():
        raise PreconditionError("Must run as root (use sudo)", EXIT_NOT_ROOT)


def _with_hypervisor(host: Host) -> Host:
    from gpuhost.hypervisor import LibvirtHypervisor

    return dataclasses.replace(host, hypervisor=LibvirtHypervisor())


def _print_outcome(outcome: BindingOutcome) -> None:
    for slot, state in outcome.devices.items():
        print(f"  {slot}  {state}", flush=True)


def gpu_status(slot: Optional[str], host: Host, cfg: RunConfiguration, installed: Dict[str, Any]) -> int:
    binder = GpuBinder(host.devices, system=host.system, passthrough_driver=cfg.passthrough_driver)
    slots: List[str]
    if slot:
        slots = [slot]
    elif installed.get("gpu_slot"):
        slots = [str(installed["gpu_slot"])]
    else:
        slots = [gpu.slot for gpu in detect_nvidia_gpus(host.devices)]
    if not slots:
        log("WARN", "No NVIDIA GPU found")
        return EXIT_GENERAL_ERROR
    for item in slots:
        record = binder.status(item)
        print(f"{record.slot}  [{record.vendor_device}]", flush=True)
        print(f"  state:            {record.state}", flush=True)
        print(f"  driver:           {record.driver or '(none)'}", flush=True)
        print(f"  driver_override:  {record.driver_override or '(none)'}", flush=True)
        print(f"  iommu_group:      {record.iommu_group or '(none)'}", flush=True)
    return EXIT_SUCCESS


def run_command(args: argparse.Namespace, host: Optional[Host] = None) -> int:
    cfg, installed = load_settings(args)
    configure_logging(cfg.log_file, cfg.verbose)
    host = host or default_host(cfg)

    if args.group == "gpu":
        if args.command == "status":
            return gpu_status(args.slot, host, cfg, installed)
        _require_root(host)
        if host.hypervisor is None:
            host = _with_hypervisor(host)
        if args.command == "attach":
            outcome = attach_gpu(args.slot, args.vm, host, cfg)
        else:
            outcome = detach_gpu(args.slot, host, cfg)
        _print_outcome(outcome)
        return binding_exit_code(outcome)

    if args.group == "network" and args.command == "migrate":
        if not cfg.dry_run:
            _require_root(host)
        ctx = RunContext(cfg=cfg, host=host)
        outcome = migrate_network(args.interface, cfg.bridge_name, ctx)
        return migration_exit_code(outcome)

    raise InvalidInputError(f"Unknown command: {args.group} {args.command}")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(sys.argv[1:] if argv is None else argv)
    try:
        return run_command(args)
    except BootstrapError as exc:
        log("ERROR", str(exc))
        return exc.exit_code
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        traceback.print_exc()
        return EXIT_GENERAL_ERROR

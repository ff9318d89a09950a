"""CLI entry point for gpu-vm-bootstrap."""

from __future__ import annotations

import argparse
import dataclasses
import os
import subprocess
import sys
import traceback
from typing import List, Optional

from gpuhost.config import build_config
from gpuhost.constants import (
    EXIT_GENERAL_ERROR,
    EXIT_SUCCESS,
    GPU_MODES,
    ISOLATION_POLICIES,
    MULTIPLEXER_SESSION,
    PROGRAM_NAME,
    VERSION,
)
from gpuhost.exceptions import BootstrapError
from gpuhost.models import PhaseOutcome, RunConfiguration
from gpuhost.phases import RunContext, overall_code, run_phases
from gpuhost.preflight import BRIDGE_PHASE
from gpuhost.provision import build_phases, default_host
from gpuhost.utils import (
    configure_logging,
    has_controlling_tty,
    inside_multiplexer,
    log,
    print_banner,
    stdin_is_interactive,
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=PROGRAM_NAME,
        description="Turn a fresh Ubuntu 24.04 host into a GPU-passthrough virtualisation host",
    )
    parser.add_argument("--skip-nvidia", action="store_true", help="Skip Phase 1 (NVIDIA driver & CUDA)")
    parser.add_argument("--skip-kvm", action="store_true", help="Skip Phase 2 (KVM/libvirt)")
    parser.add_argument("--skip-vfio", action="store_true", help="Skip Phase 3 (IOMMU/VFIO)")
    parser.add_argument("--skip-bridge", action="store_true", help="Skip Phase 4 (bridge network)")
    parser.add_argument("--bridge-name", metavar="NAME", default=None, help="Bridge interface name (default: br0)")
    parser.add_argument("--gpu-mode", choices=GPU_MODES, default=None, help="GPU binding mode (default: flexible)")
    parser.add_argument(
        "--iommu-isolation",
        choices=ISOLATION_POLICIES,
        default=None,
        help="Refuse passthrough when the GPU shares its IOMMU group (strict) or only warn (warn)",
    )
    parser.add_argument("--dry-run", action="store_true", help="Show what would be done without changing anything")
    parser.add_argument("--yes", "-y", action="store_true", help="Assume yes to all prompts")
    parser.add_argument("--reboot", action="store_true", help="Reboot automatically when needed (with --yes)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show debug output")
    parser.add_argument("--config", metavar="PATH", default=None, help="YAML file with default settings")
    parser.add_argument("--version", action="version", version=f"{PROGRAM_NAME} {VERSION}")
    return parser


def relaunch_in_multiplexer(argv: List[str], ctx: RunContext) -> None:
    """Re-exec inside ``tmux new-session`` so a dropped SSH session survives Phase 4."""
    cfg = ctx.cfg
    system = ctx.host.system
    if cfg.dry_run or cfg.skipped(BRIDGE_PHASE) or inside_multiplexer():
        return
    if not has_controlling_tty() or not system.is_root():
        return
    if not system.command_available("tmux"):
        log("INFO", "Installing tmux to protect the run from SSH disconnects...")
        try:
            ctx.host.packages.install(["tmux"])
        except (OSError, subprocess.CalledProcessError) as exc:
            log("WARN", f"Could not install tmux: {exc}")
            return
    log("INFO", f"Relaunching inside tmux session '{MULTIPLEXER_SESSION}'...")
    os.execvp(
        "tmux",
        ["tmux", "new-session", "-s", MULTIPLEXER_SESSION, sys.executable, "-m", "gpuhost", *argv],
    )


def print_summary(ctx: RunContext, outcomes: List[PhaseOutcome]) -> None:
    cfg = ctx.cfg
    border = "=" * 62
    print(f"\n{border}\n  Summary\n{border}", flush=True)
    for outcome in outcomes:
        suffix = f" (step: {outcome.step})" if outcome.code and outcome.step else ""
        log("INFO", f"Phase {outcome.number}: {outcome.name}: {outcome.state}{suffix}")
    log("INFO", f"Log file: {cfg.log_file}")
    log("INFO", f"GPU mode: {cfg.gpu_mode}")
    log("INFO", f"Bridge: {'skipped' if cfg.skipped(BRIDGE_PHASE) else cfg.bridge_name}")
    if cfg.dry_run:
        log("DRY", f"No changes were made ({len(ctx.planned)} action(s) planned)")
    else:
        log("INFO", f"Actions applied: {len(ctx.applied)}")
    if ctx.state.reboot_required:
        log("WARN", f"Reboot required: {'; '.join(ctx.state.reboot_reasons)}")


def maybe_reboot(ctx: RunContext) -> None:
    cfg = ctx.cfg
    if not ctx.state.reboot_required or cfg.dry_run:
        return
    if cfg.assume_yes:
        if cfg.reboot_allowed:
            ctx.host.system.reboot()
        else:
            log("WARN", "Reboot required. Run 'sudo reboot' when ready")
        return
    if not stdin_is_interactive():
        log("WARN", "Reboot required. Run 'sudo reboot' when ready")
        return
    try:
        answer = input("Reboot now? [y/N] ")
    except EOFError:
        answer = ""
    if answer.strip().lower() in ("y", "yes"):
        ctx.host.system.reboot()
    else:
        log("WARN", "Reboot skipped. Run 'sudo reboot' when ready")


def _assume_yes_without_tty(cfg: RunConfiguration) -> RunConfiguration:
    if cfg.assume_yes or stdin_is_interactive():
        return cfg
    log("INFO", "stdin is not a terminal; assuming --yes")
    return dataclasses.replace(cfg, assume_yes=True)


def main(argv: Optional[List[str]] = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    args = build_parser().parse_args(argv)
    print_banner()

    try:
        cfg = build_config(args)
    except BootstrapError as exc:
        log("ERROR", str(exc))
        return exc.exit_code

    cfg = _assume_yes_without_tty(cfg)
    if not configure_logging(cfg.log_file, cfg.verbose):
        log("WARN", f"Cannot write {cfg.log_file}; logging to the console only")
    if cfg.dry_run:
        log("DRY", "Dry-run mode: no changes will be made")

    ctx = RunContext(cfg=cfg, host=default_host(cfg))
    try:
        relaunch_in_multiplexer(argv, ctx)
        outcomes = run_phases(build_phases(cfg), ctx)
        code = overall_code(outcomes)
        print_summary(ctx, outcomes)
        if code == EXIT_SUCCESS:
            log("SUCCESS", "Host provisioning complete")
            maybe_reboot(ctx)
        return code
    except BootstrapError as exc:
        log("ERROR", str(exc))
        return exc.exit_code
    except KeyboardInterrupt:
        log("WARN", "Interrupted")
        return EXIT_GENERAL_ERROR
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        traceback.print_exc()
        return EXIT_GENERAL_ERROR

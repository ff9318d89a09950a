"""Phase 0: pre-flight checks.

Every check is read-only except for installing ``mokutil`` when it is
missing. A failed check raises a :class:`PreconditionError` carrying the
exit code that describes it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from gpuhost.actions import ensure_packages
from gpuhost.constants import (
    CONNECTIVITY_HOSTS,
    EXIT_NO_NETWORK,
    EXIT_NOT_ROOT,
    EXIT_UNSUPPORTED_OS,
    MULTIPLEXER_SESSION,
    PING_TIMEOUT_SECONDS,
    SUPPORTED_OS_ID,
    SUPPORTED_OS_VERSION,
)
from gpuhost.exceptions import PreconditionError
from gpuhost.utils import inside_multiplexer, log

if TYPE_CHECKING:  # pragma: no cover
    from gpuhost.phases import RunContext

BRIDGE_PHASE = 4

_SECURE_BOOT_HELP = """\
Secure Boot is enabled. The NVIDIA and VFIO kernel modules cannot load with it on.
Disable it before running this tool:
  1. Reboot into the UEFI/BIOS setup
  2. Find the Secure Boot option (usually under Security or Boot)
  3. Set it to Disabled, save and reboot
  4. Re-run gpu-vm-bootstrap"""


def check_os(ctx: "RunContext") -> None:
    path = ctx.cfg.os_release_file
    values = ctx.host.system.os_release(path)
    if not values:
        raise PreconditionError(f"Cannot read {path}; unable to identify the OS", EXIT_UNSUPPORTED_OS)
    os_id = values.get("ID", "")
    version = values.get("VERSION_ID", "")
    if os_id != SUPPORTED_OS_ID or version != SUPPORTED_OS_VERSION:
        raise PreconditionError(
            f"Unsupported OS: {os_id or 'unknown'} {version}. Requires Ubuntu {SUPPORTED_OS_VERSION}",
            EXIT_UNSUPPORTED_OS,
        )
    log("SUCCESS", f"OS: Ubuntu {version}")


def check_root(ctx: "RunContext") -> None:
    if not ctx.host.system.is_root():
        raise PreconditionError("Must run as root (use sudo)", EXIT_NOT_ROOT)
    log("SUCCESS", "Running as root")


def check_network(ctx: "RunContext") -> None:
    system = ctx.host.system
    for host in CONNECTIVITY_HOSTS:
        if system.ping(host, PING_TIMEOUT_SECONDS):
            log("SUCCESS", f"Network connectivity OK ({host} reachable)")
            return
        log("DEBUG", f"{host} did not answer")
    raise PreconditionError(
        f"No network connectivity (none of {', '.join(CONNECTIVITY_HOSTS)} reachable)",
        EXIT_NO_NETWORK,
    )


def check_secure_boot(ctx: "RunContext") -> None:
    system = ctx.host.system
    if ctx.cfg.dry_run and not system.command_available("mokutil"):
        log("DRY", "Skipping Secure Boot check (mokutil not installed)")
        return
    ensure_packages(ctx, ["mokutil"], "install mokutil for the Secure Boot check")
    output = system.capture(["mokutil", "--sb-state"])
    if output is None:
        log("WARN", "Could not determine Secure Boot state; continuing")
        return
    if "SecureBoot enabled" in output:
        raise PreconditionError(_SECURE_BOOT_HELP)
    log("SUCCESS", "Secure Boot is disabled")


def check_multiplexer(ctx: "RunContext") -> None:
    """The bridge phase interrupts networking, so an SSH drop must not kill the run."""
    cfg = ctx.cfg
    if cfg.skipped(BRIDGE_PHASE):
        log("DEBUG", "Bridge phase skipped; terminal multiplexer not required")
        return
    if inside_multiplexer():
        log("SUCCESS", "Running inside a terminal multiplexer")
        return
    if cfg.assume_yes or cfg.dry_run:
        log("WARN", "Not running inside tmux or screen; a dropped SSH session during Phase 4 may abort the run")
        return
    raise PreconditionError(
        "Not running inside tmux or screen. Phase 4 briefly interrupts networking.\n"
        f"Start a session with 'tmux new-session -s {MULTIPLEXER_SESSION}' and re-run, or pass --yes"
    )


def preflight(ctx: "RunContext") -> None:
    ctx.step("os", "Checking operating system...")
    check_os(ctx)
    ctx.step("root", "Checking privileges...")
    check_root(ctx)
    ctx.step("network", "Checking network connectivity...")
    check_network(ctx)
    ctx.step("secure-boot", "Checking Secure Boot state...")
    check_secure_boot(ctx)
    ctx.step("multiplexer", "Checking for a terminal multiplexer...")
    check_multiplexer(ctx)

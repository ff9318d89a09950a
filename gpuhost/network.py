"""Bridge migration of the primary network interface.

The migration is one run of capture, displace, generate, trial-apply,
confirm and verify. Any failure after the first file is displaced is
compensated: displaced files come back, the bridge file goes away and the
old configuration is re-applied before the failure is reported.
"""

from __future__ import annotations

import shutil
import subprocess
import time
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from gpuhost import probes
from gpuhost.constants import (
    ADDRESSING_DHCP,
    ADDRESSING_POINT_TO_POINT,
    ADDRESSING_STATIC_SUBNET,
    BRIDGE_NAME_RE,
    TOPOLOGY_POINT_TO_POINT,
    TOPOLOGY_STANDARD,
)
from gpuhost.exceptions import ActionError, BootstrapError, InvalidInputError, PreconditionError
from gpuhost.models import ConfigBackup, MigrationOutcome, NetworkInterfaceState
from gpuhost.ports import NetworkConfigurator
from gpuhost.utils import log, timestamp

if TYPE_CHECKING:  # pragma: no cover
    from gpuhost.phases import RunContext

TRIAL_SETTLE_SECONDS = 30.0
TRIAL_POLL_INTERVAL = 1.0
TRIAL_GRACE_SECONDS = 15.0

_NETPLAN_SUFFIXES = (".yaml", ".yml")
_MIGRATION_ERRORS = (
    BootstrapError,
    OSError,
    subprocess.CalledProcessError,
    subprocess.TimeoutExpired,
    yaml.YAMLError,
)


def bridge_config_path(netplan_dir: Path, bridge_name: str) -> Path:
    return netplan_dir / f"60-bridge-{bridge_name}.yaml"


def validate_bridge_name(name: str) -> str:
    if not BRIDGE_NAME_RE.match(name):
        raise InvalidInputError(
            f"Invalid bridge name '{name}' (1-15 characters: letters, digits, '.', '_' or '-')"
        )
    return name


# -- capture -----------------------------------------------------------------


def primary_interface(network: NetworkConfigurator) -> str:
    """Return the interface carrying the default route."""
    for route in network.default_routes():
        if route.device:
            return route.device
    raise PreconditionError("Could not detect primary network interface: no default route found")


def classify_topology(prefix: Optional[int], on_link: bool) -> str:
    """Point-to-point needs both a /32 address and an on-link default route."""
    if prefix == 32 and on_link:
        return TOPOLOGY_POINT_TO_POINT
    return TOPOLOGY_STANDARD


def capture_interface_state(network: NetworkConfigurator, name: str) -> NetworkInterfaceState:
    link = network.link(name)
    if link is None:
        raise PreconditionError(f"Network interface {name} does not exist")
    addresses = network.addresses(name)
    ipv4 = [a for a in addresses if a.family == "inet"]
    ipv6 = tuple(f"{a.address}/{a.prefix}" for a in addresses if a.family == "inet6")
    route = next((r for r in network.default_routes() if r.device == name), None)

    primary = ipv4[0] if ipv4 else None
    on_link = bool(route and route.on_link)
    prefix = primary.prefix if primary else None
    if classify_topology(prefix, on_link) == TOPOLOGY_POINT_TO_POINT:
        addressing = ADDRESSING_POINT_TO_POINT
    elif primary is None or primary.dynamic:
        addressing = ADDRESSING_DHCP
    else:
        addressing = ADDRESSING_STATIC_SUBNET

    return NetworkInterfaceState(
        name=name,
        addressing=addressing,
        address=primary.address if primary else None,
        prefix=prefix,
        gateway=route.gateway if route else None,
        dns=tuple(network.dns_servers(name)),
        on_link=on_link,
        mac=link.mac,
        ipv6_addresses=ipv6,
    )


# -- generate ----------------------------------------------------------------


def render_bridge_config(state: NetworkInterfaceState, bridge_name: str) -> Dict:
    """Build the netplan document moving ``state`` onto ``bridge_name``."""
    bridge: Dict = {"interfaces": [state.name]}
    if state.mac:
        bridge["macaddress"] = state.mac

    if classify_topology(state.prefix, state.on_link) == TOPOLOGY_POINT_TO_POINT:
        bridge["addresses"] = [state.cidr]
        if state.gateway:
            bridge["routes"] = [{"to": "0.0.0.0/0", "via": state.gateway, "on-link": True}]
        parameters = {"stp": False, "forward-delay": 0}
    else:
        if state.uses_dhcp or state.cidr is None:
            bridge["dhcp4"] = True
        else:
            bridge["addresses"] = [state.cidr]
            if state.gateway:
                bridge["routes"] = [{"to": "default", "via": state.gateway}]
        parameters = {"stp": True, "forward-delay": 4}

    if state.dns:
        bridge["nameservers"] = {"addresses": list(state.dns)}
    bridge["parameters"] = parameters

    return {
        "network": {
            "version": 2,
            "renderer": "networkd",
            "ethernets": {state.name: {"dhcp4": False, "dhcp6": False}},
            "bridges": {bridge_name: bridge},
        }
    }


# -- displace ----------------------------------------------------------------


def references_interface(path: Path, interface: str, mac: Optional[str] = None) -> bool:
    """True when a netplan file could configure ``interface``.

    Files that cannot be parsed are assumed to reference it.
    """
    try:
        document = yaml.safe_load(path.read_text())
    except (yaml.YAMLError, UnicodeDecodeError):
        return True
    if not isinstance(document, dict) or not isinstance(document.get("network"), dict):
        return False
    network = document["network"]

    for name, entry in (network.get("ethernets") or {}).items():
        if name == interface:
            return True
        if not isinstance(entry, dict):
            continue
        if entry.get("set-name") == interface:
            return True
        match = entry.get("match") or {}
        if not isinstance(match, dict):
            return True
        if match.get("name") == interface:
            return True
        if mac and str(match.get("macaddress", "")).lower() == mac.lower():
            return True

    for section in ("bridges", "bonds", "vlans"):
        for entry in (network.get(section) or {}).values():
            if not isinstance(entry, dict):
                continue
            if interface in (entry.get("interfaces") or []) or entry.get("link") == interface:
                return True
    return False


def conflicting_configs(netplan_dir: Path, interface: str, mac: Optional[str], keep: Path) -> List[Path]:
    if not netplan_dir.is_dir():
        return []
    return [
        path
        for path in sorted(netplan_dir.iterdir())
        if path.is_file()
        and path.suffix in _NETPLAN_SUFFIXES
        and path != keep
        and references_interface(path, interface, mac)
    ]


def _backup_directory(netplan_dir: Path, stamp: str) -> Path:
    candidate = netplan_dir / f"backup-{stamp}"
    counter = 1
    while candidate.exists():
        candidate = netplan_dir / f"backup-{stamp}-{counter}"
        counter += 1
    return candidate


def displace_configs(netplan_dir: Path, files: List[Path]) -> ConfigBackup:
    """Move ``files`` into a fresh timestamped backup directory.

    If a move fails, the files already moved are put back before the error
    propagates.
    """
    stamp = timestamp()
    directory = _backup_directory(netplan_dir, stamp)
    directory.mkdir(parents=True)
    moved: List[Path] = []
    try:
        for path in files:
            shutil.move(str(path), str(directory / path.name))
            moved.append(path)
            log("INFO", f"Moved {path.name} to {directory}")
    except OSError:
        restore_backup(ConfigBackup(timestamp=stamp, directory=directory, files=tuple(moved)))
        raise
    return ConfigBackup(timestamp=stamp, directory=directory, files=tuple(moved))


def restore_backup(backup: ConfigBackup) -> bool:
    ok = True
    for original in backup.files:
        source = backup.backup_path(original)
        if not source.exists():
            continue
        try:
            shutil.move(str(source), str(original))
            log("INFO", f"Restored {original}")
        except OSError as exc:
            log("ERROR", f"Could not restore {original} from {source}: {exc}")
            ok = False
    return ok


# -- trial / confirm / verify ------------------------------------------------


def bridge_carries_address(network: NetworkConfigurator, state: NetworkInterfaceState, bridge_name: str) -> bool:
    ipv4 = [a for a in network.addresses(bridge_name) if a.family == "inet"]
    if state.uses_dhcp or state.address is None:
        return bool(ipv4)
    return any(a.address == state.address and a.prefix == state.prefix for a in ipv4)


def trial_apply(
    network: NetworkConfigurator,
    state: NetworkInterfaceState,
    bridge_name: str,
    timeout: int,
    settle: float,
    interval: float = TRIAL_POLL_INTERVAL,
) -> None:
    """Run ``netplan try`` and confirm it once the bridge holds the captured address.

    If the address never shows up within ``settle`` seconds the trial is left
    to time out, so netplan restores the previous configuration itself.
    """
    log("WARN", "Applying bridge config: brief network interruption expected")
    log("INFO", f"Using 'netplan try': automatic rollback after {timeout}s unless confirmed")
    trial = network.start_trial(timeout)
    deadline = time.monotonic() + settle
    while True:
        code = trial.poll()
        if code is not None:
            raise ActionError(f"netplan try exited early (code {code}); previous configuration restored")
        if bridge_carries_address(network, state, bridge_name):
            trial.confirm()
            break
        if time.monotonic() >= deadline:
            log("WARN", f"{bridge_name} has no expected address yet; letting netplan try revert")
            trial.wait(timeout + TRIAL_GRACE_SECONDS)
            raise ActionError(f"{bridge_name} did not come up with the captured address; netplan reverted the change")
        time.sleep(interval)

    code = trial.wait(TRIAL_GRACE_SECONDS)
    if code:
        raise ActionError(f"netplan try failed after confirmation (code {code})")


def verify_bridge(network: NetworkConfigurator, state: NetworkInterfaceState, bridge_name: str) -> List[str]:
    """Check the bridge; raises on hard failures and returns soft warnings."""
    warnings: List[str] = []
    link = network.link(bridge_name)
    if link is None:
        raise ActionError(f"Bridge interface {bridge_name} does not exist")
    if not bridge_carries_address(network, state, bridge_name):
        expected = "an IPv4 address" if state.uses_dhcp else state.cidr
        raise ActionError(f"Bridge {bridge_name} does not carry {expected}")
    routes = [r for r in network.default_routes() if r.device == bridge_name]
    if not routes:
        raise ActionError(f"Default route does not leave through {bridge_name}")
    if state.gateway and not any(r.gateway == state.gateway for r in routes):
        raise ActionError(f"Default route via {bridge_name} does not use gateway {state.gateway}")
    log("SUCCESS", f"Default route via {bridge_name}")

    if link.operstate.upper() != "UP":
        warnings.append(f"Bridge {bridge_name} is in state {link.operstate}")
    else:
        log("SUCCESS", f"Bridge {bridge_name} is UP")
    if state.dns:
        live_dns = network.dns_servers(bridge_name)
        missing = [server for server in state.dns if server not in live_dns]
        if missing:
            warnings.append(f"DNS servers not yet active on {bridge_name}: {', '.join(missing)}")
    if state.gateway:
        if network.ping(state.gateway):
            log("SUCCESS", f"Gateway {state.gateway} reachable")
        else:
            warnings.append(f"Cannot reach gateway {state.gateway}")
    for warning in warnings:
        log("WARN", warning)
    return warnings


def rollback(
    network: NetworkConfigurator,
    backup: Optional[ConfigBackup],
    bridge_file: Path,
    state: NetworkInterfaceState,
) -> bool:
    """Undo a migration attempt; returns True if the captured state is back."""
    log("WARN", "Rolling back network migration")
    ok = True
    try:
        bridge_file.unlink(missing_ok=True)
    except OSError as exc:
        log("ERROR", f"Could not remove {bridge_file}: {exc}")
        ok = False
    if backup is not None and not restore_backup(backup):
        ok = False
    try:
        network.apply()
    except (OSError, subprocess.CalledProcessError) as exc:
        log("ERROR", f"Re-applying the previous configuration failed: {exc}")
        ok = False
    try:
        restored = captured_state_restored(network, state)
    except (OSError, subprocess.CalledProcessError) as exc:
        log("ERROR", f"Could not re-read {state.name} after rollback: {exc}")
        restored = False
    return ok and restored


def captured_state_restored(network: NetworkConfigurator, state: NetworkInterfaceState) -> bool:
    """True when ``state.name`` carries the captured address, default route and DNS servers again."""
    restored = True
    if state.address and not state.uses_dhcp:
        live = [a.address for a in network.addresses(state.name) if a.family == "inet"]
        if state.address not in live:
            log("ERROR", f"{state.name} does not carry {state.cidr} after rollback")
            restored = False
    if state.gateway:
        routes = [r for r in network.default_routes() if r.device == state.name]
        if not any(r.gateway == state.gateway for r in routes):
            log("ERROR", f"No default route via {state.gateway} on {state.name} after rollback")
            restored = False
    if state.dns:
        live_dns = network.dns_servers(state.name)
        missing = [server for server in state.dns if server not in live_dns]
        if missing:
            log("ERROR", f"DNS servers missing on {state.name} after rollback: {', '.join(missing)}")
            restored = False
    return restored


# -- protocol ----------------------------------------------------------------


def _log_capture(state: NetworkInterfaceState, topology: str) -> None:
    log("INFO", f"Primary NIC: {state.name} ({state.mac or 'unknown MAC'})")
    log("INFO", f"Address: {state.cidr or 'none'} ({state.addressing})")
    log("INFO", f"Gateway: {state.gateway or 'none'}{' (on-link)' if state.on_link else ''}")
    if state.dns:
        log("INFO", f"DNS servers: {', '.join(state.dns)}")
    if topology == TOPOLOGY_POINT_TO_POINT:
        log("INFO", "Detected /32 direct-route mode (point-to-point)")
    if state.ipv6_addresses:
        log("WARN", f"IPv6 addresses on {state.name} are not carried to the bridge: {', '.join(state.ipv6_addresses)}")
    if state.address is None:
        log("WARN", f"No IPv4 address found on {state.name}; the bridge will use DHCP")


def migrate_network(interface: Optional[str], bridge_name: str, ctx: "RunContext") -> MigrationOutcome:
    """Move ``interface`` (default: the default-route NIC) onto ``bridge_name``."""
    cfg = ctx.cfg
    network = ctx.host.network
    validate_bridge_name(bridge_name)
    bridge_file = bridge_config_path(cfg.netplan_dir, bridge_name)

    if probes.bridge_config_present(bridge_file, bridge_name):
        log("SUCCESS", f"Bridge config already present: {bridge_file}")
        return MigrationOutcome(ok=True, bridge=bridge_name, interface=interface, message="already configured")

    ctx.step("capture", "Capturing primary network interface state...")
    try:
        name = interface or primary_interface(network)
        if name == bridge_name:
            raise PreconditionError(f"{name} already is the bridge; nothing to migrate")
        state = capture_interface_state(network, name)
    except BootstrapError as exc:
        log("ERROR", str(exc))
        return MigrationOutcome(ok=False, bridge=bridge_name, interface=interface, message=str(exc))
    topology = classify_topology(state.prefix, state.on_link)
    _log_capture(state, topology)
    document = render_bridge_config(state, bridge_name)
    conflicts = conflicting_configs(cfg.netplan_dir, state.name, state.mac, bridge_file)

    if cfg.dry_run:
        for path in conflicts:
            log("DRY", f"Would move {path} into {cfg.netplan_dir}/backup-<timestamp>/")
        log("DRY", f"Would write {bridge_file} bridging {state.name} into {bridge_name} ({topology})")
        log("DRY", f"Would run 'netplan try --timeout={cfg.try_timeout}' and confirm with 'netplan apply'")
        ctx.planned.append(f"migrate {state.name} onto {bridge_name}")
        return MigrationOutcome(
            ok=True, bridge=bridge_name, interface=state.name, topology=topology, message="dry run"
        )

    backup: Optional[ConfigBackup] = None
    try:
        ctx.step("displace", f"Moving {len(conflicts)} conflicting netplan file(s) aside...")
        backup = displace_configs(cfg.netplan_dir, conflicts)
        ctx.step("generate", f"Writing {bridge_file.name} ({topology})...")
        network.write_config(bridge_file, document)
        ctx.step("trial", "Trial-applying bridge configuration...")
        trial_apply(network, state, bridge_name, cfg.try_timeout, TRIAL_SETTLE_SECONDS)
        ctx.step("confirm", "Confirming with 'netplan apply'...")
        network.apply()
        ctx.step("verify", f"Verifying {bridge_name}...")
        warnings = verify_bridge(network, state, bridge_name)
    except _MIGRATION_ERRORS as exc:
        failed_step = ctx.current_step
        ok = rollback(network, backup, bridge_file, state)
        result = "succeeded" if ok else "FAILED; manual review required"
        message = f"Network migration failed at step '{failed_step}': {exc}. Rollback attempted and {result}"
        log("ERROR", message)
        return MigrationOutcome(
            ok=False,
            bridge=bridge_name,
            interface=state.name,
            topology=topology,
            backup=backup,
            rolled_back=True,
            rollback_ok=ok,
            message=message,
        )

    ctx.applied.append(f"migrate {state.name} onto {bridge_name}")
    if backup.files:
        log("INFO", f"Previous netplan files kept in {backup.directory}")
    log("SUCCESS", f"{state.name} migrated onto {bridge_name}")
    return MigrationOutcome(
        ok=True,
        bridge=bridge_name,
        interface=state.name,
        topology=topology,
        backup=backup,
        message=f"{state.name} migrated onto {bridge_name}",
        warnings=warnings,
    )

"""Netplan and iproute2 adapter for gpu-vm-bootstrap."""

from __future__ import annotations

import json
import os
import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from gpuhost.constants import IPV4_RE, PING_TIMEOUT_SECONDS, RESOLV_CONF
from gpuhost.models import AddressInfo, LinkInfo, RouteInfo
from gpuhost.utils import log, log_to_file, run


def _ip_json(args: List[str]) -> list:
    try:
        result = run(["ip", "-j", *args], check=True, capture_output=True)
    except (OSError, subprocess.CalledProcessError) as exc:
        log("DEBUG", f"ip {' '.join(args)} failed: {exc}")
        return []
    try:
        data = json.loads(result.stdout or "[]")
    except json.JSONDecodeError:
        return []
    return data if isinstance(data, list) else []


def parse_resolv_conf(text: str, limit: int = 3) -> List[str]:
    servers: List[str] = []
    for line in text.splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[0] == "nameserver" and IPV4_RE.fullmatch(parts[1]):
            servers.append(parts[1])
    return servers[:limit]


def parse_resolvectl(text: str) -> List[str]:
    """Extract IPv4 servers from ``resolvectl dns <iface>`` output."""
    servers: List[str] = []
    for line in text.splitlines():
        _, _, tail = line.partition(":")
        for candidate in (tail or line).split():
            if IPV4_RE.fullmatch(candidate) and candidate not in servers:
                servers.append(candidate)
    return servers


def dump_netplan(document: Dict) -> str:
    return yaml.safe_dump(document, default_flow_style=False, sort_keys=False)


class NetplanTrial:
    """A running ``netplan try``; confirm it or let it time out and revert."""

    def __init__(self, proc: subprocess.Popen) -> None:
        self.proc = proc

    def poll(self) -> Optional[int]:
        return self.proc.poll()

    def confirm(self) -> None:
        assert self.proc.stdin is not None
        self.proc.stdin.write("\n")
        self.proc.stdin.flush()
        log("INFO", "netplan try confirmed")

    def wait(self, timeout: float) -> Optional[int]:
        try:
            code = self.proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            log("WARN", "netplan try did not finish in time; terminating it")
            self.proc.terminate()
            code = self.proc.wait(timeout=10)
        output = self.proc.stdout.read() if self.proc.stdout else ""
        if output:
            log_to_file("CMD", output.rstrip())
        return code


class NetplanConfigurator:
    """Network configurator port backed by netplan, ``ip -j`` and resolvectl."""

    def __init__(self, resolv_conf: Path = RESOLV_CONF) -> None:
        self.resolv_conf = resolv_conf

    def write_config(self, path: Path, document: Dict) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            f.write("# Generated by gpu-vm-bootstrap\n")
            f.write(dump_netplan(document))
        # netplan warns about world-readable configs
        os.chmod(path, 0o600)
        log("INFO", f"Wrote netplan config to {path}")

    def start_trial(self, timeout: int) -> NetplanTrial:
        log("DEBUG", f"Running: netplan try --timeout={timeout}")
        proc = subprocess.Popen(
            ["netplan", "try", f"--timeout={timeout}"],
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
        )
        return NetplanTrial(proc)

    def apply(self) -> None:
        run(["netplan", "apply"])

    def addresses(self, name: str) -> List[AddressInfo]:
        found: List[AddressInfo] = []
        for entry in _ip_json(["addr", "show", "dev", name]):
            for info in entry.get("addr_info", []):
                family = info.get("family")
                if family not in ("inet", "inet6") or "local" not in info:
                    continue
                if family == "inet6" and info.get("scope") != "global":
                    continue
                found.append(
                    AddressInfo(
                        family=family,
                        address=info["local"],
                        prefix=int(info.get("prefixlen", 32)),
                        dynamic=bool(info.get("dynamic", False)),
                    )
                )
        return found

    def default_routes(self) -> List[RouteInfo]:
        routes: List[RouteInfo] = []
        for entry in _ip_json(["-4", "route", "show", "default"]):
            routes.append(
                RouteInfo(
                    device=entry.get("dev"),
                    gateway=entry.get("gateway"),
                    on_link="onlink" in entry.get("flags", []),
                )
            )
        return routes

    def link(self, name: str) -> Optional[LinkInfo]:
        entries = _ip_json(["link", "show", "dev", name])
        if not entries:
            return None
        entry = entries[0]
        return LinkInfo(name=name, operstate=entry.get("operstate", "UNKNOWN"), mac=entry.get("address"))

    def dns_servers(self, name: str) -> List[str]:
        if shutil.which("resolvectl"):
            try:
                result = run(["resolvectl", "dns", name], check=True, capture_output=True)
            except (OSError, subprocess.CalledProcessError):
                result = None
            if result is not None:
                servers = parse_resolvectl(result.stdout)
                if servers:
                    return servers
        try:
            return parse_resolv_conf(self.resolv_conf.read_text())
        except OSError:
            return []

    def ping(self, address: str, timeout: int = PING_TIMEOUT_SECONDS) -> bool:
        try:
            result = run(
                ["ping", "-c", "1", "-W", str(timeout), address],
                check=False,
                capture_output=True,
                timeout=timeout + 2,
            )
        except (OSError, subprocess.TimeoutExpired):
            return False
        return result.returncode == 0

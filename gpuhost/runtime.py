"""Host runtime detection and privileged system calls for gpu-vm-bootstrap."""

from __future__ import annotations

import grp
import os
import pwd
import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from gpuhost.constants import PING_TIMEOUT_SECONDS
from gpuhost.utils import log, run

_PROC_MODULES = Path("/proc/modules")
_PROC_CPUINFO = Path("/proc/cpuinfo")


def parse_os_release(text: str) -> Dict[str, str]:
    """Parse KEY=value lines of an os-release file, stripping quotes."""
    values: Dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        values[key.strip()] = value.strip().strip("'\"")
    return values


def _loaded_modules() -> List[str]:
    try:
        with open(_PROC_MODULES) as f:
            return [line.split(" ", 1)[0] for line in f if line.strip()]
    except OSError:
        return []


def _read_cpu_vendor() -> Optional[str]:
    try:
        with open(_PROC_CPUINFO) as f:
            for line in f:
                if line.startswith("vendor_id"):
                    return line.split(":", 1)[1].strip()
    except OSError:
        return None
    return None


class HostRuntime:
    """Real implementation of the system port, backed by /proc and host tools."""

    def command_available(self, name: str) -> bool:
        return shutil.which(name) is not None

    def module_loaded(self, name: str) -> bool:
        # /proc/modules always reports underscores
        return name.replace("-", "_") in _loaded_modules()

    def capture(self, cmd: Sequence[str]) -> Optional[str]:
        """Return stdout of ``cmd`` or None if it is missing or fails."""
        try:
            result = run(list(cmd), check=True, capture_output=True)
        except (OSError, subprocess.CalledProcessError) as exc:
            log("DEBUG", f"{cmd[0]} failed: {exc}")
            return None
        return result.stdout

    def execute(self, cmd: Sequence[str]) -> None:
        run(list(cmd))

    def os_release(self, path: Path) -> Dict[str, str]:
        try:
            return parse_os_release(path.read_text())
        except OSError:
            return {}

    def cpu_vendor(self) -> Optional[str]:
        return _read_cpu_vendor()

    def kernel_release(self) -> str:
        return os.uname().release

    def is_root(self) -> bool:
        return os.geteuid() == 0

    def ping(self, host: str, timeout: int = PING_TIMEOUT_SECONDS) -> bool:
        try:
            result = run(
                ["ping", "-c", "1", "-W", str(timeout), host],
                check=False,
                capture_output=True,
                timeout=timeout + 2,
            )
        except (OSError, subprocess.TimeoutExpired):
            return False
        return result.returncode == 0

    def user_groups(self, user: str) -> List[str]:
        try:
            entry = pwd.getpwnam(user)
        except KeyError:
            return []
        names = [g.gr_name for g in grp.getgrall() if user in g.gr_mem]
        try:
            names.append(grp.getgrgid(entry.pw_gid).gr_name)
        except KeyError:
            pass
        return names

    def add_user_to_group(self, user: str, group: str) -> None:
        run(["usermod", "-aG", group, user])

    def reboot(self) -> None:
        log("INFO", "Rebooting now...")
        run(["systemctl", "reboot"])

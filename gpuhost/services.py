"""Package and service management (apt, dpkg, systemd) for gpu-vm-bootstrap."""

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Dict, Sequence

from gpuhost.utils import log, run

_INSTALLED_STATUS = "install ok installed"


def _apt_env() -> Dict[str, str]:
    env = dict(os.environ)
    env["DEBIAN_FRONTEND"] = "noninteractive"
    return env


class AptPackageManager:
    """Package manager port backed by dpkg-query and apt-get."""

    def is_installed(self, name: str) -> bool:
        try:
            result = run(
                ["dpkg-query", "-W", "-f=${Status}", name],
                check=False,
                capture_output=True,
            )
        except OSError:
            return False
        return result.returncode == 0 and _INSTALLED_STATUS in result.stdout

    def install(self, names: Sequence[str]) -> None:
        if not names:
            return
        log("INFO", f"Installing package(s): {' '.join(names)}")
        run(["apt-get", "install", "-y", "-qq", *names], env=_apt_env())

    def update(self) -> None:
        log("INFO", "Updating package lists...")
        run(["apt-get", "update", "-qq"], env=_apt_env())

    def install_deb(self, path: Path) -> None:
        log("INFO", f"Installing {path.name}...")
        run(["dpkg", "-i", str(path)], env=_apt_env())


class SystemdServiceManager:
    """Service manager port backed by systemctl."""

    def is_active(self, name: str) -> bool:
        try:
            result = run(["systemctl", "is-active", "--quiet", name], check=False, capture_output=True)
        except OSError:
            return False
        return result.returncode == 0

    def enable_and_start(self, name: str) -> None:
        log("INFO", f"Enabling and starting service: {name}")
        try:
            run(["systemctl", "enable", "--now", name])
        except subprocess.CalledProcessError:
            log("ERROR", f"systemctl could not start {name}")
            raise

"""Side-effect-free state probes for gpu-vm-bootstrap.

Every probe answers "is this already true?" and fails closed: a missing file,
a missing tool or an unexpected error all read as "not satisfied", so the
matching action runs instead of being silently skipped.
"""

from __future__ import annotations

import functools
from pathlib import Path
from typing import Callable, Iterable

from gpuhost.constants import GRUB_CMDLINE_RE
from gpuhost.ports import DeviceRegistry, PackageManager, ServiceManager, SystemPort
from gpuhost.utils import log


def fail_closed(func: Callable[..., bool]) -> Callable[..., bool]:
    @functools.wraps(func)
    def wrapper(*args, **kwargs) -> bool:
        try:
            return bool(func(*args, **kwargs))
        except Exception as exc:  # noqa: BLE001
            log("DEBUG", f"Probe {func.__name__} treated as unsatisfied: {exc}")
            return False

    return wrapper


@fail_closed
def package_installed(packages: PackageManager, name: str) -> bool:
    return packages.is_installed(name)


@fail_closed
def packages_installed(packages: PackageManager, names: Iterable[str]) -> bool:
    return all(packages.is_installed(name) for name in names)


@fail_closed
def service_active(services: ServiceManager, name: str) -> bool:
    return services.is_active(name)


@fail_closed
def module_loaded(system: SystemPort, name: str) -> bool:
    return system.module_loaded(name)


@fail_closed
def command_available(system: SystemPort, name: str) -> bool:
    return system.command_available(name)


@fail_closed
def file_present(path: Path) -> bool:
    """The file exists and is non-empty."""
    return path.is_file() and path.stat().st_size > 0


@fail_closed
def file_has_content(path: Path, content: str) -> bool:
    return path.is_file() and path.read_text() == content


@fail_closed
def line_in_file(path: Path, line: str) -> bool:
    """Whole-line fixed-string match, so ``vfio`` is not satisfied by ``vfio_pci``."""
    return any(existing.strip() == line.strip() for existing in path.read_text().splitlines())


def grub_cmdline(path: Path) -> str:
    """Return the GRUB_CMDLINE_LINUX_DEFAULT value, or '' if unset."""
    for line in path.read_text().splitlines():
        match = GRUB_CMDLINE_RE.match(line.strip())
        if match:
            return match.group(2)
    return ""


@fail_closed
def grub_param_set(path: Path, param: str) -> bool:
    return param in grub_cmdline(path).split()


@fail_closed
def device_bound_to(devices: DeviceRegistry, slot: str, driver: str) -> bool:
    return devices.current_driver(slot) == driver


@fail_closed
def user_in_group(system: SystemPort, user: str, group: str) -> bool:
    return group in system.user_groups(user)


@fail_closed
def bridge_config_present(path: Path, bridge_name: str) -> bool:
    return path.is_file() and bridge_name in path.read_text()

"""Capability ports the provisioning engine talks to.

Each port has a real implementation elsewhere in the package and a
deterministic fake in the test suite. Implementations should be safe to call
repeatedly; queries must not change host state.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence

from gpuhost.models import (
    AddressInfo,
    DeviceBindingRecord,
    IommuGroup,
    LinkInfo,
    PciDevice,
    RouteInfo,
)


class PackageManager(Protocol):
    def is_installed(self, name: str) -> bool: ...

    def install(self, names: Sequence[str]) -> None: ...

    def update(self) -> None: ...

    def install_deb(self, path: Path) -> None: ...


class ServiceManager(Protocol):
    def is_active(self, name: str) -> bool: ...

    def enable_and_start(self, name: str) -> None: ...


class SystemPort(Protocol):
    """Process, kernel and account queries plus the privileged reboot call."""

    def command_available(self, name: str) -> bool: ...

    def module_loaded(self, name: str) -> bool: ...

    def capture(self, cmd: Sequence[str]) -> Optional[str]: ...

    def execute(self, cmd: Sequence[str]) -> None: ...

    def os_release(self, path: Path) -> Dict[str, str]: ...

    def cpu_vendor(self) -> Optional[str]: ...

    def kernel_release(self) -> str: ...

    def is_root(self) -> bool: ...

    def ping(self, host: str, timeout: int = 3) -> bool: ...

    def user_groups(self, user: str) -> List[str]: ...

    def add_user_to_group(self, user: str, group: str) -> None: ...

    def reboot(self) -> None: ...


class DeviceRegistry(Protocol):
    def list_devices(self, vendor: Optional[str] = None) -> List[PciDevice]: ...

    def read_record(self, slot: str) -> DeviceBindingRecord: ...

    def current_driver(self, slot: str) -> Optional[str]: ...

    def device_class(self, slot: str) -> Optional[str]: ...

    def iommu_group(self, slot: str) -> Optional[IommuGroup]: ...

    def iommu_group_ids(self) -> List[str]: ...

    def unbind(self, slot: str) -> None: ...

    def read_override(self, slot: str) -> Optional[str]: ...

    def set_override(self, slot: str, driver: str) -> None: ...

    def clear_override(self, slot: str) -> None: ...

    def probe(self, slot: str) -> None: ...


class NetplanTrial(Protocol):
    def poll(self) -> Optional[int]: ...

    def confirm(self) -> None: ...

    def wait(self, timeout: float) -> Optional[int]: ...


class NetworkConfigurator(Protocol):
    def write_config(self, path: Path, document: Dict) -> None: ...

    def start_trial(self, timeout: int) -> NetplanTrial: ...

    def apply(self) -> None: ...

    def addresses(self, name: str) -> List[AddressInfo]: ...

    def default_routes(self) -> List[RouteInfo]: ...

    def link(self, name: str) -> Optional[LinkInfo]: ...

    def dns_servers(self, name: str) -> List[str]: ...

    def ping(self, address: str, timeout: int = 3) -> bool: ...


class Hypervisor(Protocol):
    def attach_device(self, vm_name: str, slot: str) -> None: ...

    def detach_device(self, slot: str) -> Optional[str]: ...

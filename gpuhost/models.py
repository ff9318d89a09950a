"""Data models for gpu-vm-bootstrap."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, FrozenSet, List, NamedTuple, Optional, Tuple

from gpuhost.constants import (
    ADDRESSING_DHCP,
    DEFAULT_BRIDGE_NAME,
    DEFAULT_CONFIG_DIR,
    DEFAULT_GRUB_FILE,
    DEFAULT_LOG_FILE,
    DEFAULT_MODPROBE_CONF,
    DEFAULT_MODULES_FILE,
    DEFAULT_NETPLAN_DIR,
    DEFAULT_OS_RELEASE_FILE,
    DEFAULT_TRY_TIMEOUT,
    GPU_MODE_FLEXIBLE,
    ISOLATION_WARN,
    PASSTHROUGH_DRIVER,
    PHASE_COMPLETE,
    PHASE_SKIPPED,
)

if TYPE_CHECKING:  # pragma: no cover
    from gpuhost.phases import RunContext
    from gpuhost.ports import (
        DeviceRegistry,
        Hypervisor,
        NetworkConfigurator,
        PackageManager,
        ServiceManager,
        SystemPort,
    )


class AddressInfo(NamedTuple):
    family: str
    address: str
    prefix: int
    dynamic: bool = False


class RouteInfo(NamedTuple):
    device: Optional[str]
    gateway: Optional[str]
    on_link: bool = False


class LinkInfo(NamedTuple):
    name: str
    operstate: str
    mac: Optional[str] = None


@dataclass(frozen=True)
class RunConfiguration:
    dry_run: bool = False
    reboot_allowed: bool = False
    assume_yes: bool = False
    verbose: bool = False
    gpu_mode: str = GPU_MODE_FLEXIBLE
    bridge_name: str = DEFAULT_BRIDGE_NAME
    skip: FrozenSet[int] = frozenset()
    iommu_isolation: str = ISOLATION_WARN
    netplan_dir: Path = DEFAULT_NETPLAN_DIR
    grub_file: Path = DEFAULT_GRUB_FILE
    modules_file: Path = DEFAULT_MODULES_FILE
    modprobe_conf: Path = DEFAULT_MODPROBE_CONF
    os_release_file: Path = DEFAULT_OS_RELEASE_FILE
    config_dir: Path = DEFAULT_CONFIG_DIR
    log_file: Path = DEFAULT_LOG_FILE
    try_timeout: int = DEFAULT_TRY_TIMEOUT
    passthrough_driver: str = PASSTHROUGH_DRIVER

    def skipped(self, number: int) -> bool:
        return number in self.skip


@dataclass(frozen=True)
class PhaseDescriptor:
    number: int
    name: str
    action: Callable[["RunContext"], None]
    skip: bool = False


@dataclass
class PhaseOutcome:
    number: int
    name: str
    state: str
    code: int = 0
    step: Optional[str] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.state in (PHASE_COMPLETE, PHASE_SKIPPED)


@dataclass
class RunState:
    """The only run-scoped value phases may change."""

    reboot_required: bool = False
    reboot_reasons: List[str] = field(default_factory=list)

    def require_reboot(self, reason: str) -> None:
        self.reboot_required = True
        if reason not in self.reboot_reasons:
            self.reboot_reasons.append(reason)


@dataclass(frozen=True)
class PciDevice:
    slot: str
    vendor: str
    device: str
    device_class: str

    @property
    def vendor_device(self) -> str:
        return f"{self.vendor}:{self.device}"


@dataclass(frozen=True)
class IommuGroup:
    id: str
    members: Tuple[str, ...]


@dataclass(frozen=True)
class DeviceBindingRecord:
    slot: str
    vendor_device: str
    iommu_group: Optional[str]
    driver: Optional[str]
    driver_override: Optional[str]
    state: str


@dataclass
class BindingOutcome:
    ok: bool
    slot: str
    state: str
    step: Optional[str] = None
    message: str = ""
    devices: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class NetworkInterfaceState:
    name: str
    addressing: str
    address: Optional[str]
    prefix: Optional[int]
    gateway: Optional[str]
    dns: Tuple[str, ...] = ()
    on_link: bool = False
    mac: Optional[str] = None
    ipv6_addresses: Tuple[str, ...] = ()

    @property
    def cidr(self) -> Optional[str]:
        if self.address is None or self.prefix is None:
            return None
        return f"{self.address}/{self.prefix}"

    @property
    def uses_dhcp(self) -> bool:
        return self.addressing == ADDRESSING_DHCP


@dataclass(frozen=True)
class ConfigBackup:
    timestamp: str
    directory: Path
    files: Tuple[Path, ...]

    def backup_path(self, original: Path) -> Path:
        return self.directory / original.name


@dataclass
class MigrationOutcome:
    ok: bool
    bridge: str
    interface: Optional[str] = None
    topology: Optional[str] = None
    backup: Optional[ConfigBackup] = None
    rolled_back: bool = False
    rollback_ok: Optional[bool] = None
    message: str = ""
    warnings: List[str] = field(default_factory=list)


@dataclass
class Host:
    """Bundle of capability ports a run talks to."""

    packages: "PackageManager"
    services: "ServiceManager"
    system: "SystemPort"
    devices: "DeviceRegistry"
    network: "NetworkConfigurator"
    hypervisor: Optional["Hypervisor"] = None

"""PCI device registry backed by sysfs."""

from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional

from gpuhost.constants import (
    HOST_BOUND,
    PASSTHROUGH_BOUND,
    PASSTHROUGH_DRIVER,
    PCI_SLOT_RE,
    SYSFS_ROOT,
    UNBOUND,
)
from gpuhost.exceptions import InvalidInputError, MissingDependencyError
from gpuhost.models import DeviceBindingRecord, IommuGroup, PciDevice
from gpuhost.utils import log


def normalize_slot(slot: str) -> str:
    """Return the full ``dddd:bb:dd.f`` form of a PCI address."""
    slot = slot.strip().lower()
    if not PCI_SLOT_RE.match(slot):
        raise InvalidInputError(f"Invalid PCI slot '{slot}' (expected e.g. 0000:01:00.0 or 01:00.0)")
    if slot.count(":") == 1:
        slot = f"0000:{slot}"
    return slot


def same_card(slot_a: str, slot_b: str) -> bool:
    """True when both addresses are functions of one physical card."""
    return slot_a.rsplit(".", 1)[0] == slot_b.rsplit(".", 1)[0]


def binding_state(driver: Optional[str], passthrough_driver: str = PASSTHROUGH_DRIVER) -> str:
    if not driver:
        return UNBOUND
    if driver == passthrough_driver:
        return PASSTHROUGH_BOUND
    return HOST_BOUND


def _read_attr(path: Path) -> Optional[str]:
    try:
        return path.read_text().strip()
    except OSError:
        return None


def _link_name(path: Path) -> Optional[str]:
    try:
        return Path(os.readlink(path)).name
    except OSError:
        return None


def _strip_hex(value: Optional[str]) -> str:
    if not value:
        return ""
    return value.lower().removeprefix("0x")


class SysfsDeviceRegistry:
    """Device registry port reading and writing ``/sys/bus/pci``.

    Nothing is cached: every call re-reads sysfs, because the owning driver
    can change outside this program.
    """

    def __init__(self, sysfs_root: Path = SYSFS_ROOT, passthrough_driver: str = PASSTHROUGH_DRIVER) -> None:
        self.sysfs_root = sysfs_root
        self.passthrough_driver = passthrough_driver
        self.devices_dir = sysfs_root / "bus" / "pci" / "devices"
        self.drivers_dir = sysfs_root / "bus" / "pci" / "drivers"
        self.groups_dir = sysfs_root / "kernel" / "iommu_groups"

    def _device_dir(self, slot: str) -> Path:
        path = self.devices_dir / normalize_slot(slot)
        if not path.exists():
            raise MissingDependencyError(f"PCI device {slot} not found under {self.devices_dir}")
        return path

    def _write(self, path: Path, value: str) -> None:
        log("DEBUG", f"sysfs write {path} <- {value.strip() or '(empty)'}")
        with open(path, "w") as handle:
            handle.write(value)

    def list_devices(self, vendor: Optional[str] = None) -> List[PciDevice]:
        wanted = _strip_hex(vendor)
        found: List[PciDevice] = []
        if not self.devices_dir.is_dir():
            return found
        for entry in sorted(self.devices_dir.iterdir()):
            dev_vendor = _strip_hex(_read_attr(entry / "vendor"))
            if wanted and dev_vendor != wanted:
                continue
            found.append(
                PciDevice(
                    slot=entry.name,
                    vendor=dev_vendor,
                    device=_strip_hex(_read_attr(entry / "device")),
                    device_class=(_read_attr(entry / "class") or "").lower(),
                )
            )
        return found

    def current_driver(self, slot: str) -> Optional[str]:
        return _link_name(self._device_dir(slot) / "driver")

    def device_class(self, slot: str) -> Optional[str]:
        value = _read_attr(self._device_dir(slot) / "class")
        return value.lower() if value else None

    def iommu_group(self, slot: str) -> Optional[IommuGroup]:
        group_id = _link_name(self._device_dir(slot) / "iommu_group")
        if group_id is None:
            return None
        members_dir = self.groups_dir / group_id / "devices"
        try:
            members = tuple(sorted(entry.name for entry in members_dir.iterdir()))
        except OSError:
            members = (normalize_slot(slot),)
        return IommuGroup(id=group_id, members=members)

    def iommu_group_ids(self) -> List[str]:
        try:
            return sorted((p.name for p in self.groups_dir.iterdir() if p.is_dir()), key=_group_sort_key)
        except OSError:
            return []

    def read_override(self, slot: str) -> Optional[str]:
        value = _read_attr(self._device_dir(slot) / "driver_override")
        if not value or value == "(null)":
            return None
        return value

    def read_record(self, slot: str) -> DeviceBindingRecord:
        device_dir = self._device_dir(slot)
        driver = _link_name(device_dir / "driver")
        vendor = _strip_hex(_read_attr(device_dir / "vendor"))
        device = _strip_hex(_read_attr(device_dir / "device"))
        return DeviceBindingRecord(
            slot=device_dir.name,
            vendor_device=f"{vendor}:{device}",
            iommu_group=_link_name(device_dir / "iommu_group"),
            driver=driver,
            driver_override=self.read_override(slot),
            state=binding_state(driver, self.passthrough_driver),
        )

    def unbind(self, slot: str) -> None:
        driver = self.current_driver(slot)
        if driver is None:
            return
        self._write(self.drivers_dir / driver / "unbind", normalize_slot(slot))

    def set_override(self, slot: str, driver: str) -> None:
        self._write(self._device_dir(slot) / "driver_override", driver)

    def clear_override(self, slot: str) -> None:
        # An empty write resets driver_override to (null)
        self._write(self._device_dir(slot) / "driver_override", "\n")

    def probe(self, slot: str) -> None:
        self._write(self.sysfs_root / "bus" / "pci" / "drivers_probe", normalize_slot(slot))


def _group_sort_key(name: str):
    return (0, int(name)) if name.isdigit() else (1, name)

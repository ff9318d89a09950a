"""Tests for gpuhost.devices module."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from gpuhost.devices import SysfsDeviceRegistry, binding_state, normalize_slot, same_card
from gpuhost.exceptions import InvalidInputError, MissingDependencyError


def _device(sysfs: Path, slot: str, vendor: str, device: str, cls: str, driver, group: str) -> None:
    dev = sysfs / "bus/pci/devices" / slot
    dev.mkdir(parents=True)
    (dev / "vendor").write_text(f"0x{vendor}\n")
    (dev / "device").write_text(f"0x{device}\n")
    (dev / "class").write_text(f"{cls}\n")
    (dev / "driver_override").write_text("(null)\n")
    if driver:
        drv = sysfs / "bus/pci/drivers" / driver
        drv.mkdir(parents=True, exist_ok=True)
        (drv / "unbind").touch()
        os.symlink(drv, dev / "driver")
    members = sysfs / "kernel/iommu_groups" / group / "devices"
    members.mkdir(parents=True, exist_ok=True)
    os.symlink(dev, members / slot)
    os.symlink(sysfs / "kernel/iommu_groups" / group, dev / "iommu_group")


@pytest.fixture
def sysfs(tmp_path) -> Path:
    root = tmp_path / "sys"
    _device(root, "0000:01:00.0", "10de", "2204", "0x030000", "nvidia", "12")
    _device(root, "0000:01:00.1", "10de", "1aef", "0x040300", "snd_hda_intel", "12")
    _device(root, "0000:00:1f.3", "8086", "a348", "0x040300", None, "2")
    (root / "bus/pci/drivers_probe").touch()
    return root


class TestHelpers:
    def test_normalize_adds_domain(self):
        assert normalize_slot("01:00.0") == "0000:01:00.0"
        assert normalize_slot("0000:0A:00.1") == "0000:0a:00.1"

    @pytest.mark.parametrize("slot", ["01:00", "1:00.0", "0000:01:00.8", "gpu0"])
    def test_normalize_rejects(self, slot):
        with pytest.raises(InvalidInputError):
            normalize_slot(slot)

    def test_same_card(self):
        assert same_card("0000:01:00.0", "0000:01:00.1")
        assert not same_card("0000:01:00.0", "0000:02:00.0")

    def test_binding_state(self):
        assert binding_state("nvidia") == "HOST_BOUND"
        assert binding_state("vfio-pci") == "PASSTHROUGH_BOUND"
        assert binding_state(None) == "UNBOUND"


class TestSysfsReads:
    def test_list_devices_by_vendor(self, sysfs):
        registry = SysfsDeviceRegistry(sysfs)
        found = registry.list_devices("0x10de")
        assert [d.slot for d in found] == ["0000:01:00.0", "0000:01:00.1"]
        assert found[0].vendor_device == "10de:2204"
        assert found[0].device_class == "0x030000"

    def test_record(self, sysfs):
        record = SysfsDeviceRegistry(sysfs).read_record("01:00.0")
        assert record.slot == "0000:01:00.0"
        assert record.driver == "nvidia"
        assert record.driver_override is None
        assert record.iommu_group == "12"
        assert record.state == "HOST_BOUND"

    def test_unbound_device(self, sysfs):
        assert SysfsDeviceRegistry(sysfs).read_record("0000:00:1f.3").state == "UNBOUND"

    def test_iommu_group_members(self, sysfs):
        group = SysfsDeviceRegistry(sysfs).iommu_group("0000:01:00.0")
        assert group.id == "12"
        assert group.members == ("0000:01:00.0", "0000:01:00.1")

    def test_group_ids_sorted_numerically(self, sysfs):
        assert SysfsDeviceRegistry(sysfs).iommu_group_ids() == ["2", "12"]

    def test_missing_device(self, sysfs):
        with pytest.raises(MissingDependencyError, match="not found"):
            SysfsDeviceRegistry(sysfs).current_driver("0000:05:00.0")

    def test_state_rederived_each_call(self, sysfs):
        registry = SysfsDeviceRegistry(sysfs)
        link = sysfs / "bus/pci/devices/0000:01:00.0/driver"
        assert registry.read_record("0000:01:00.0").state == "HOST_BOUND"
        link.unlink()
        vfio = sysfs / "bus/pci/drivers/vfio-pci"
        vfio.mkdir()
        os.symlink(vfio, link)
        assert registry.read_record("0000:01:00.0").state == "PASSTHROUGH_BOUND"


class TestSysfsWrites:
    def test_unbind_writes_to_current_driver(self, sysfs):
        SysfsDeviceRegistry(sysfs).unbind("0000:01:00.0")
        assert (sysfs / "bus/pci/drivers/nvidia/unbind").read_text() == "0000:01:00.0"

    def test_unbind_without_driver_is_noop(self, sysfs):
        SysfsDeviceRegistry(sysfs).unbind("0000:00:1f.3")

    def test_override_roundtrip(self, sysfs):
        registry = SysfsDeviceRegistry(sysfs)
        registry.set_override("0000:01:00.0", "vfio-pci")
        assert registry.read_override("0000:01:00.0") == "vfio-pci"
        registry.clear_override("0000:01:00.0")
        assert registry.read_override("0000:01:00.0") is None

    def test_triggers_driver_rescan(self, sysfs):
        SysfsDeviceRegistry(sysfs).probe("01:00.0")
        assert (sysfs / "bus/pci/drivers_probe").read_text() == "0000:01:00.0"

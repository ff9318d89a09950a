"""GPU binding state machine for gpu-vm-bootstrap.

A PCI function is always in exactly one of three states, derived from its
``driver`` symlink on every call:

* ``HOST_BOUND``: claimed by its vendor driver (``nvidia``, ``snd_hda_intel``)
* ``PASSTHROUGH_BOUND``: claimed by ``vfio-pci`` and ready for a guest
* ``UNBOUND``: claimed by nothing

``attach`` and ``detach`` move the GPU, together with the other functions of
the same card in its IOMMU group, between host and passthrough ownership.
Failures are reported, with the step and the state left behind; they are
never retried or reversed automatically.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Tuple

from gpuhost.constants import (
    HOST_BOUND,
    ISOLATION_STRICT,
    ISOLATION_WARN,
    PASSTHROUGH_BOUND,
    PASSTHROUGH_DRIVER,
    PCI_BRIDGE_CLASS_PREFIX,
    UNBOUND,
)
from gpuhost.devices import binding_state, normalize_slot, same_card
from gpuhost.exceptions import BootstrapError
from gpuhost.models import BindingOutcome, DeviceBindingRecord, Host, IommuGroup, RunConfiguration
from gpuhost.ports import DeviceRegistry, Hypervisor, SystemPort
from gpuhost.utils import log

_STEP_ERRORS = (OSError, BootstrapError)


class GpuBinder:
    def __init__(
        self,
        registry: DeviceRegistry,
        hypervisor: Optional[Hypervisor] = None,
        system: Optional[SystemPort] = None,
        passthrough_driver: str = PASSTHROUGH_DRIVER,
        isolation: str = ISOLATION_WARN,
    ) -> None:
        self.registry = registry
        self.hypervisor = hypervisor
        self.system = system
        self.passthrough_driver = passthrough_driver
        self.isolation = isolation

    # -- queries -----------------------------------------------------------

    def status(self, slot: str) -> DeviceBindingRecord:
        return self.registry.read_record(normalize_slot(slot))

    def _state_of(self, slot: str) -> str:
        try:
            return binding_state(self.registry.current_driver(slot), self.passthrough_driver)
        except _STEP_ERRORS:
            return UNBOUND

    def _is_pci_bridge(self, slot: str) -> bool:
        try:
            device_class = self.registry.device_class(slot) or ""
        except _STEP_ERRORS:
            return False
        return device_class.startswith(PCI_BRIDGE_CLASS_PREFIX)

    def resolve_group(self, slot: str) -> Tuple[Optional[IommuGroup], List[str], List[str]]:
        """Return the group, the functions that move with ``slot``, and the other peers."""
        group = self.registry.iommu_group(slot)
        if group is None:
            return None, [slot], []
        targets = [slot] + [m for m in group.members if m != slot and same_card(m, slot)]
        peers = [m for m in group.members if m not in targets and not self._is_pci_bridge(m)]
        return group, targets, peers

    def host_driver_healthy(self, slot: str) -> bool:
        driver = self.registry.current_driver(slot)
        if not driver or driver == self.passthrough_driver:
            return False
        if driver != "nvidia" or self.system is None:
            return True
        output = self.system.capture(["nvidia-smi", "--query-gpu=pci.bus_id", "--format=csv,noheader"])
        if not output:
            return False
        bus_id = slot.split(":", 1)[1]
        return any(line.strip().lower().endswith(bus_id) for line in output.splitlines())

    # -- outcomes ----------------------------------------------------------

    def _outcome(self, ok: bool, slot: str, targets: List[str], step: Optional[str], message: str) -> BindingOutcome:
        devices: Dict[str, str] = {target: self._state_of(target) for target in targets}
        outcome = BindingOutcome(
            ok=ok,
            slot=slot,
            state=devices.get(slot, self._state_of(slot)),
            step=step,
            message=message,
            devices=devices,
        )
        if ok:
            log("SUCCESS", message)
        else:
            log("ERROR", f"{message} (step: {step}, state: {outcome.state})")
        return outcome

    def _clear_overrides(self, targets: List[str]) -> List[str]:
        """Clear driver_override on every target; returns the ones that could not be cleared."""
        stuck: List[str] = []
        for target in targets:
            try:
                self.registry.clear_override(target)
            except _STEP_ERRORS as exc:
                log("ERROR", f"Could not clear driver_override on {target}: {exc}")
                stuck.append(target)
        return stuck

    # -- transitions -------------------------------------------------------

    def attach(self, slot: str, vm_name: Optional[str]) -> BindingOutcome:
        """Move ``slot`` from its host driver to the passthrough driver and into ``vm_name``."""
        slot = normalize_slot(slot)
        try:
            record = self.registry.read_record(slot)
        except _STEP_ERRORS as exc:
            return self._outcome(False, slot, [slot], "precondition", str(exc))
        if record.state != HOST_BOUND:
            return self._outcome(
                False,
                slot,
                [slot],
                "precondition",
                f"{slot} is {record.state}; attach requires {HOST_BOUND}",
            )

        group, targets, peers = self.resolve_group(slot)
        if group is None:
            return self._outcome(
                False,
                slot,
                targets,
                "iommu-group",
                f"{slot} has no IOMMU group; enable IOMMU and reboot before passthrough",
            )
        log("INFO", f"{slot} is in IOMMU group {group.id} ({len(group.members)} device(s))")
        if peers:
            detail = f"IOMMU group {group.id} also contains {', '.join(peers)}"
            if self.isolation == ISOLATION_STRICT:
                return self._outcome(False, slot, targets, "iommu-group", f"{detail}; refusing in strict isolation mode")
            log("WARN", f"{detail}; passthrough isolation is not guaranteed")

        # Companion functions already on vfio-pci stay where they are
        movable = [t for t in targets if self._state_of(t) != PASSTHROUGH_BOUND]

        for target in movable:
            try:
                self.registry.unbind(target)
            except _STEP_ERRORS as exc:
                return self._outcome(False, slot, targets, "unbind", f"Failed to unbind {target}: {exc}")

        failure: Optional[Tuple[str, str]] = None
        for target in movable:
            try:
                self.registry.clear_override(target)
            except _STEP_ERRORS as exc:
                failure = ("clear-override", f"Failed to clear driver_override on {target}: {exc}")
                break
            try:
                self.registry.set_override(target, self.passthrough_driver)
                self.registry.probe(target)
            except _STEP_ERRORS as exc:
                failure = ("bind", f"Failed to bind {target} to {self.passthrough_driver}: {exc}")
                break
            driver = self.registry.current_driver(target)
            if driver != self.passthrough_driver:
                failure = ("bind", f"{target} was claimed by {driver or 'no driver'} instead of {self.passthrough_driver}")
                break
        if failure is not None:
            step, message = failure
            stuck = self._clear_overrides(movable)
            if stuck:
                message += f"; driver_override still set on {', '.join(stuck)}"
            return self._outcome(False, slot, targets, step, message)

        if vm_name is None:
            return self._outcome(True, slot, targets, None, f"{slot} bound to {self.passthrough_driver}")
        if self.hypervisor is None:
            return self._outcome(False, slot, targets, "hotplug", "No hypervisor connection available for hot-plug")
        for target in targets:
            try:
                self.hypervisor.attach_device(vm_name, target)
            except _STEP_ERRORS as exc:
                return self._outcome(False, slot, targets, "hotplug", f"Hot-plug of {target} into '{vm_name}' failed: {exc}")
        return self._outcome(True, slot, targets, None, f"{slot} attached to VM '{vm_name}'")

    def detach(self, slot: str) -> BindingOutcome:
        """Return ``slot`` from the passthrough driver (or from UNBOUND) to its host driver."""
        slot = normalize_slot(slot)
        try:
            record = self.registry.read_record(slot)
        except _STEP_ERRORS as exc:
            return self._outcome(False, slot, [slot], "precondition", str(exc))
        if record.state == HOST_BOUND:
            if record.driver_override:
                log("WARN", f"Clearing stale driver_override '{record.driver_override}' on {slot}")
                stuck = self._clear_overrides([slot])
                if stuck:
                    return self._outcome(False, slot, [slot], "clear-override", f"Stale driver_override left on {slot}")
            return self._outcome(True, slot, [slot], None, f"{slot} already bound to host driver {record.driver}")

        _, targets, _ = self.resolve_group(slot)
        targets = [t for t in targets if t == slot or self._state_of(t) != HOST_BOUND]

        if self.hypervisor is not None:
            for target in targets:
                try:
                    holder = self.hypervisor.detach_device(target)
                except _STEP_ERRORS as exc:
                    return self._outcome(False, slot, targets, "guest-detach", f"Failed to remove {target} from its guest: {exc}")
                if holder:
                    log("INFO", f"Removed {target} from VM '{holder}'")

        for target in targets:
            try:
                if self._state_of(target) == PASSTHROUGH_BOUND:
                    self.registry.unbind(target)
            except _STEP_ERRORS as exc:
                return self._outcome(False, slot, targets, "unbind", f"Failed to unbind {target} from {self.passthrough_driver}: {exc}")

        stuck = self._clear_overrides(targets)
        if stuck:
            return self._outcome(False, slot, targets, "clear-override", f"driver_override still set on {', '.join(stuck)}")

        for target in targets:
            try:
                self.registry.probe(target)
            except _STEP_ERRORS as exc:
                return self._outcome(False, slot, targets, "rebind", f"Failed to probe host driver for {target}: {exc}")

        if self._state_of(slot) != HOST_BOUND:
            return self._outcome(False, slot, targets, "rebind", f"No host driver claimed {slot}")
        if not self.host_driver_healthy(slot):
            driver = self.registry.current_driver(slot)
            return self._outcome(False, slot, targets, "verify", f"Host driver {driver} does not report {slot} healthy")
        return self._outcome(True, slot, targets, None, f"{slot} returned to host driver {self.registry.current_driver(slot)}")


def binder_for(host: Host, cfg: RunConfiguration) -> GpuBinder:
    return GpuBinder(
        registry=host.devices,
        hypervisor=host.hypervisor,
        system=host.system,
        passthrough_driver=cfg.passthrough_driver,
        isolation=cfg.iommu_isolation,
    )


def attach_gpu(slot: str, vm_name: Optional[str], host: Host, cfg: RunConfiguration) -> BindingOutcome:
    return binder_for(host, cfg).attach(slot, vm_name)


def detach_gpu(slot: str, host: Host, cfg: RunConfiguration) -> BindingOutcome:
    return binder_for(host, cfg).detach(slot)

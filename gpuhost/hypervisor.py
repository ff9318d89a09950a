"""libvirt hot-plug adapter for gpu-vm-bootstrap."""

from __future__ import annotations

from typing import Optional

try:
    import libvirt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit(f"libvirt python bindings not available: {exc}")

from gpuhost.constants import LIBVIRT_URI
from gpuhost.exceptions import ActionError
from gpuhost.hostdev import domain_has_hostdev, render_hostdev_xml
from gpuhost.utils import log


def _affect_flags(domain) -> int:
    if domain.isActive():
        return libvirt.VIR_DOMAIN_AFFECT_LIVE
    return libvirt.VIR_DOMAIN_AFFECT_CONFIG


class LibvirtHypervisor:
    """Hypervisor port handing VFIO-bound devices to guests."""

    def __init__(self, uri: str = LIBVIRT_URI) -> None:
        self.uri = uri

    def _open(self):
        conn = libvirt.open(self.uri)
        if conn is None:
            raise ActionError(f"Failed to open libvirt connection at {self.uri}")
        return conn

    def attach_device(self, vm_name: str, slot: str) -> None:
        conn = None
        try:
            conn = self._open()
            domain = conn.lookupByName(vm_name)
            domain.attachDeviceFlags(render_hostdev_xml(slot), _affect_flags(domain))
            log("INFO", f"Attached {slot} to VM '{vm_name}'")
        except libvirt.libvirtError as exc:
            raise ActionError(f"libvirt refused to attach {slot} to '{vm_name}': {exc}") from exc
        finally:
            if conn is not None:
                conn.close()

    def detach_device(self, slot: str) -> Optional[str]:
        """Remove ``slot`` from whichever guest holds it; returns that guest's name."""
        conn = None
        try:
            conn = self._open()
            for domain in conn.listAllDomains(0):
                if not domain_has_hostdev(domain.XMLDesc(0), slot):
                    continue
                domain.detachDeviceFlags(render_hostdev_xml(slot), _affect_flags(domain))
                name = domain.name()
                log("INFO", f"Detached {slot} from VM '{name}'")
                return name
            return None
        except libvirt.libvirtError as exc:
            raise ActionError(f"libvirt refused to detach {slot}: {exc}") from exc
        finally:
            if conn is not None:
                conn.close()

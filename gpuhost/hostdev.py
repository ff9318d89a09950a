"""libvirt hostdev XML helpers for gpu-vm-bootstrap."""

from __future__ import annotations

from typing import Tuple
from xml.etree.ElementTree import Element, ParseError, SubElement, fromstring, tostring

from gpuhost.devices import normalize_slot


def _element_to_str(root: Element) -> str:
    """Serialize an ElementTree element to a pretty-printed XML string without declaration."""
    from xml.dom.minidom import parseString

    raw = tostring(root, encoding="unicode")
    return parseString(raw).documentElement.toprettyxml(indent="  ").strip()


def split_slot(slot: str) -> Tuple[int, int, int, int]:
    """Return (domain, bus, slot, function) of a PCI address as integers."""
    full = normalize_slot(slot)
    domain, bus, rest = full.split(":")
    device, function = rest.split(".")
    return int(domain, 16), int(bus, 16), int(device, 16), int(function, 16)


def render_hostdev_xml(slot: str) -> str:
    """Render an unmanaged VFIO hostdev for ``slot``.

    ``managed='no'`` keeps libvirt from rebinding drivers on its own; the
    binding state machine owns that.
    """
    domain, bus, device, function = split_slot(slot)
    hostdev = Element("hostdev", mode="subsystem", type="pci", managed="no")
    SubElement(hostdev, "driver", name="vfio")
    source = SubElement(hostdev, "source")
    SubElement(
        source,
        "address",
        domain=f"0x{domain:04x}",
        bus=f"0x{bus:02x}",
        slot=f"0x{device:02x}",
        function=f"0x{function:x}",
    )
    return _element_to_str(hostdev)


def domain_has_hostdev(domain_xml: str, slot: str) -> bool:
    """True when a domain definition carries a PCI hostdev for ``slot``."""
    wanted = split_slot(slot)
    try:
        root = fromstring(domain_xml)
    except ParseError:
        return False
    for address in root.findall("./devices/hostdev[@type='pci']/source/address"):
        try:
            found = tuple(
                int(address.get(attr, "0"), 16) for attr in ("domain", "bus", "slot", "function")
            )
        except ValueError:
            continue
        if found == wanted:
            return True
    return False

"""libvirt domain and interface XML generation for vps-manager."""

from __future__ import annotations

from typing import Optional
from xml.etree.ElementTree import Element, SubElement, tostring

from vps_manager.constants import DEFAULT_NETWORK
from vps_manager.models import VMSpec
from vps_manager.utils import deterministic_mac


def _element_to_str(root: Element) -> str:
    """Serialize an ElementTree element to a pretty-printed XML string without declaration."""
    from xml.dom.minidom import parseString

    raw = tostring(root, encoding="unicode")
    return parseString(raw).documentElement.toprettyxml(indent="  ").strip()


def _add_interface(
    devices: Element,
    mac: str,
    bridge: Optional[str] = None,
    network: str = DEFAULT_NETWORK,
    model: str = "virtio",
) -> Element:
    """NAT through a libvirt network unless a host bridge is named."""
    if bridge:
        iface = SubElement(devices, "interface", type="bridge")
        SubElement(iface, "mac", address=mac)
        SubElement(iface, "source", bridge=bridge)
        if model == "virtio":
            SubElement(iface, "driver", name="vhost")
    else:
        iface = SubElement(devices, "interface", type="network")
        SubElement(iface, "mac", address=mac)
        SubElement(iface, "source", network=network or DEFAULT_NETWORK)
    SubElement(iface, "model", type=model)
    return iface


def render_domain_xml(
    spec: VMSpec,
    seed_iso: str,
    network: str = DEFAULT_NETWORK,
    domain_type: str = "kvm",
) -> str:
    domain = Element("domain", type=domain_type)
    SubElement(domain, "name").text = spec.name
    SubElement(domain, "memory", unit="MiB").text = str(spec.memory_mb)
    SubElement(domain, "vcpu").text = str(spec.cpus)

    os_el = SubElement(domain, "os")
    SubElement(os_el, "type", arch="x86_64", machine="q35").text = "hvm"
    SubElement(os_el, "boot", dev="hd")

    features = SubElement(domain, "features")
    SubElement(features, "acpi")
    SubElement(features, "apic")
    SubElement(domain, "cpu", mode="host-passthrough")

    devices = SubElement(domain, "devices")
    disk = SubElement(devices, "disk", type="file", device="disk")
    SubElement(disk, "driver", name="qemu", type="qcow2")
    SubElement(disk, "source", file=str(spec.disk_path))
    SubElement(disk, "target", dev="vda", bus="virtio")

    cdrom = SubElement(devices, "disk", type="file", device="cdrom")
    SubElement(cdrom, "driver", name="qemu", type="raw")
    SubElement(cdrom, "source", file=seed_iso)
    SubElement(cdrom, "target", dev="sda", bus="sata")
    SubElement(cdrom, "readonly")

    _add_interface(devices, deterministic_mac(spec.name), spec.bridge, network)

    serial = SubElement(devices, "serial", type="pty")
    SubElement(serial, "target", port="0")
    console = SubElement(devices, "console", type="pty")
    SubElement(console, "target", type="serial", port="0")
    channel = SubElement(devices, "channel", type="unix")
    SubElement(channel, "target", type="virtio", name="org.qemu.guest_agent.0")
    SubElement(devices, "graphics", type="vnc", port="-1", autoport="yes", listen="0.0.0.0")
    return _element_to_str(domain)

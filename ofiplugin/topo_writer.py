"""Writing a grouped topology as a collective-library topology XML file."""

from __future__ import annotations

import logging
import string
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, TextIO

from .topology import ObjType, PciAddress, TopologyError, TopoNode, Topology

log = logging.getLogger(__name__)

MAX_DEV_PROPERTY_LENGTH = 16
"""Maximum number of characters read from a device property file."""

SPEED_NAME = "max_link_speed"
WIDTH_NAME = "max_link_width"

PCIE_GEN = ("2.5", "5", "8", "16", "32", "64")
"""Lane speed in GT/s of PCIe generation i + 1."""

_OVERRIDE_WIDTH = "255"
_OVERRIDE_SPEED = "Unknown"
_FALLBACK_WIDTH = 8
_FALLBACK_SPEED_IDX = 3

_INDENT_OFFSET = 2
_LONG_MAX = 2 ** 63 - 1
_LONG_MIN = -(2 ** 63)


@dataclass(frozen=True)
class LinkSpeed:
    """PCIe link speed, as an index into PCIE_GEN, and link width."""

    speed_idx: int
    width: int

    @property
    def gen(self) -> str:
        """Lane speed in GT/s as written to the topology file."""
        return PCIE_GEN[self.speed_idx]


def _parse_c_long(text: str) -> int:
    """Parse the leading integer of text with automatic base detection.

    Accepts a hexadecimal 0x prefix and octal leading zero; returns 0 when
    no digits are found.
    """
    s = text.lstrip(" \t\n\r\f\v")
    sign = 1
    if s[:1] in ("+", "-"):
        sign = -1 if s[0] == "-" else 1
        s = s[1:]
    if s[:2].lower() == "0x" and s[2:3] and s[2] in string.hexdigits:
        base, s, allowed = 16, s[2:], string.hexdigits
    elif s[:1] == "0":
        base, allowed = 8, "01234567"
    else:
        base, allowed = 10, string.digits
    digits = ""
    for char in s:
        if char not in allowed:
            break
        digits += char
    if not digits:
        return 0
    value = sign * int(digits, base)
    if value > _LONG_MAX or value < _LONG_MIN:
        raise TopologyError(f"value {text!r} is out of range")
    return value


def _property_path(address: PciAddress, name: str, sysfs_root: str) -> Path:
    return Path(sysfs_root) / "bus" / "pci" / "devices" / str(address) / name


def read_device_property(address: PciAddress, name: str, sysfs_root: str = "/sys") -> str:
    """Read the start of a PCI device property file.

    At most MAX_DEV_PROPERTY_LENGTH characters are read, stopping after a
    newline.  An empty file yields the empty string.
    """
    path = _property_path(address, name, sysfs_root)
    try:
        with path.open("r") as handle:
            return handle.readline(MAX_DEV_PROPERTY_LENGTH)
    except OSError as exc:
        raise TopologyError(f"failed to read device property file {path}: {exc}") from exc


def _node_address(node: TopoNode) -> PciAddress:
    if node.type not in (ObjType.BRIDGE, ObjType.PCI_DEVICE):
        raise TopologyError("expected topology node to be a PCI device or bridge")
    if node.pci is None:
        raise TopologyError("PCI node is missing its PCI attributes")
    return node.pci


def pci_device_speed(node: TopoNode, is_nic: bool, sysfs_root: str = "/sys") -> LinkSpeed:
    """Read the link speed and width of a PCI device or bridge.

    Unknown speeds and the width 255 reported by NICs are replaced with
    fallback values.
    """
    address = _node_address(node)

    speed_str = read_device_property(address, SPEED_NAME, sysfs_root)
    speed_idx = next((idx for idx, gen in enumerate(PCIE_GEN) if speed_str.startswith(gen)),
                     len(PCIE_GEN))
    if is_nic and speed_str.startswith(_OVERRIDE_SPEED):
        speed_idx = _FALLBACK_SPEED_IDX
        log.info('Override link speed "%s" of NIC %s with speed "%s"',
                 speed_str, address, PCIE_GEN[speed_idx])
    if speed_idx == len(PCIE_GEN):
        raise TopologyError(f'unknown link speed "{speed_str}" of device {address}')

    width_str = read_device_property(address, WIDTH_NAME, sysfs_root)
    if is_nic and width_str.startswith(_OVERRIDE_WIDTH):
        width = _FALLBACK_WIDTH
        log.info('Override link width "%s" of NIC %s with width "%d"',
                 width_str, address, width)
    else:
        width = _parse_c_long(width_str)
    if width == 0:
        raise TopologyError(f'unknown link width "{width_str}" of device {address}')

    return LinkSpeed(speed_idx, width)


def pci_device_min_speed(node: TopoNode, is_nic: bool, sysfs_root: str = "/sys") -> LinkSpeed:
    """Minimum speed and width of a device and the bridge port above it."""
    if node.parent is None:
        raise TopologyError("PCI node has no parent bridge")
    device = pci_device_speed(node, is_nic, sysfs_root)
    port = pci_device_speed(node.parent, is_nic, sysfs_root)
    return LinkSpeed(min(device.speed_idx, port.speed_idx), min(device.width, port.width))


def _numa_mem_child(node: TopoNode) -> Optional[TopoNode]:
    return next((child for child in node.memory_children
                 if child.type == ObjType.NUMANODE and child.userdata is None), None)


class _Writer:
    def __init__(self, stream: TextIO, sysfs_root: str) -> None:
        self.stream = stream
        self.sysfs_root = sysfs_root

    def line(self, indent: int, text: str) -> None:
        self.stream.write(f"{' ' * indent}{text}\n")

    def nic(self, node: TopoNode, indent: int) -> None:
        userdata = node.userdata
        assert userdata is not None
        group_size = userdata.info_list_len
        link = pci_device_min_speed(node, True, self.sysfs_root)
        speed_idx, width = link.speed_idx, link.width

        if group_size > 1:
            gpu = userdata.gpu_group_node
            if gpu is None:
                raise TopologyError("NIC group has no accelerator attached")
            gpu_link = pci_device_min_speed(gpu, False, self.sysfs_root)
            # Scale the grouped NICs up towards the accelerator's link.
            while group_size > 1 and speed_idx < gpu_link.speed_idx:
                speed_idx += 1
                group_size //= 2
            while group_size > 1 and 2 * width <= gpu_link.width:
                width *= 2
                group_size //= 2

        self.line(indent, f'<pci busid="{node.pci}" '
                          f'link_speed="{PCIE_GEN[speed_idx]} GT/s PCIe/s" '
                          f'link_width="{width}"/>')

    def node(self, node: TopoNode, indent: int, bridge_depth: int) -> None:
        data = node.userdata
        # Only nodes with NICs or accelerators below them carry data.
        if data is None:
            return

        close_numanode = False
        close_bridge = False

        if node.type == ObjType.BRIDGE:
            if node.pci is None:
                raise TopologyError("bridge is missing its PCI attributes")
            # The host switch is the two bridges at depth 0 and 1; other
            # switches appear as two bridges each.
            if bridge_depth >= 2 and bridge_depth % 2 == 0:
                self.line(indent, f'<pci busid="{node.pci}">')
                close_bridge = True
                indent += _INDENT_OFFSET
            bridge_depth += 1
        elif node.type == ObjType.PCI_DEVICE and data.info_list:
            self.nic(node, indent)
            indent += _INDENT_OFFSET
        elif node.type == ObjType.NUMANODE:
            self.line(indent, f'<cpu numaid="{node.os_index}">')
            close_numanode = True
            indent += _INDENT_OFFSET
        else:
            numa = _numa_mem_child(node)
            if numa is not None:
                self.line(indent, f'<cpu numaid="{numa.os_index}">')
                close_numanode = True
                indent += _INDENT_OFFSET

        for child in (*node.children, *node.memory_children):
            self.node(child, indent, bridge_depth)

        if close_numanode:
            self.line(indent - _INDENT_OFFSET, "</cpu>")
        elif close_bridge:
            self.line(indent - _INDENT_OFFSET, "</pci>")


def write_topology(topology: Topology, stream: TextIO, sysfs_root: str = "/sys") -> None:
    """Write the parts of topology that hold NICs or accelerators as XML."""
    stream.write('<system version="1">\n')
    _Writer(stream, sysfs_root).node(topology.root, 2, 0)
    stream.write("</system>")
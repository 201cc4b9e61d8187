import io
from pathlib import Path

import pytest

from ofiplugin.topo_writer import (
    PCIE_GEN,
    LinkSpeed,
    pci_device_min_speed,
    pci_device_speed,
    read_device_property,
    write_topology,
)
from ofiplugin.topology import (
    NicInfo,
    ObjType,
    PciAddress,
    TopologyError,
    Topology,
    TopoNode,
)

GPU_CLASS = 0x0302
GPU_VENDOR = 0x10DE
NIC_CLASS = 0x0200
NIC_VENDOR = 0x1D0F


def addr(bus):
    return PciAddress(0, bus, 0, 0)


def put(root, address, name, text):
    directory = Path(root) / "bus" / "pci" / "devices" / str(address)
    directory.mkdir(parents=True, exist_ok=True)
    (directory / name).write_text(text)


def put_link(root, address, speed, width):
    put(root, address, "max_link_speed", speed)
    put(root, address, "max_link_width", width)


def bridge(bus):
    return TopoNode(ObjType.BRIDGE, pci=addr(bus))


def pci(bus, class_id, vendor):
    return TopoNode(ObjType.PCI_DEVICE, pci=addr(bus), class_id=class_id, vendor_id=vendor)


def build_tree(num_nics):
    root = TopoNode(ObjType.MACHINE)
    package = root.add_child(TopoNode(ObjType.PACKAGE))
    package.add_memory_child(TopoNode(ObjType.NUMANODE, os_index=0))
    b0 = package.add_child(bridge(0x01))
    b1 = b0.add_child(bridge(0x02))
    b2 = b1.add_child(bridge(0x03))
    b3 = b2.add_child(bridge(0x04))
    gpu = b3.add_child(pci(0x05, GPU_CLASS, GPU_VENDOR))
    nics = [b3.add_child(pci(0x06 + i, NIC_CLASS, NIC_VENDOR)) for i in range(num_nics)]
    infos = [NicInfo(f"nic{i}", pci=nic.pci) for i, nic in enumerate(nics)]
    return root, gpu, nics, infos


def test_read_device_property_reads_line(tmp_path):
    put(tmp_path, addr(1), "max_link_speed", "16.0 GT/s PCIe\nextra\n")
    assert read_device_property(addr(1), "max_link_speed", str(tmp_path)) == "16.0 GT/s PCIe\n"


def test_read_device_property_truncates(tmp_path):
    put(tmp_path, addr(1), "prop", "a" * 40)
    value = read_device_property(addr(1), "prop", str(tmp_path))
    assert value == "a" * 16


def test_read_device_property_empty(tmp_path):
    put(tmp_path, addr(1), "prop", "")
    assert read_device_property(addr(1), "prop", str(tmp_path)) == ""


def test_read_device_property_missing(tmp_path):
    with pytest.raises(TopologyError):
        read_device_property(addr(9), "prop", str(tmp_path))


def test_speed_of_device(tmp_path):
    node = pci(1, NIC_CLASS, NIC_VENDOR)
    put_link(tmp_path, node.pci, "8.0 GT/s PCIe\n", "16\n")
    link = pci_device_speed(node, False, str(tmp_path))
    assert link == LinkSpeed(PCIE_GEN.index("8"), 16)
    assert link.gen == "8"


def test_width_hex_prefix(tmp_path):
    node = pci(1, NIC_CLASS, NIC_VENDOR)
    put_link(tmp_path, node.pci, "32.0 GT/s PCIe\n", "0x10\n")
    assert pci_device_speed(node, False, str(tmp_path)).width == 16


def test_nic_overrides(tmp_path):
    node = pci(1, NIC_CLASS, NIC_VENDOR)
    put_link(tmp_path, node.pci, "Unknown\n", "255\n")
    link = pci_device_speed(node, True, str(tmp_path))
    assert link == LinkSpeed(3, 8)


def test_unknown_speed_for_non_nic(tmp_path):
    node = pci(1, GPU_CLASS, GPU_VENDOR)
    put_link(tmp_path, node.pci, "Unknown\n", "16\n")
    with pytest.raises(TopologyError):
        pci_device_speed(node, False, str(tmp_path))


def test_zero_width_is_error(tmp_path):
    node = pci(1, GPU_CLASS, GPU_VENDOR)
    put_link(tmp_path, node.pci, "16.0 GT/s PCIe\n", "0\n")
    with pytest.raises(TopologyError):
        pci_device_speed(node, False, str(tmp_path))


def test_wrong_node_type(tmp_path):
    with pytest.raises(TopologyError):
        pci_device_speed(TopoNode(ObjType.PACKAGE), False, str(tmp_path))


def test_min_speed_takes_minimum(tmp_path):
    parent = bridge(1)
    child = parent.add_child(pci(2, NIC_CLASS, NIC_VENDOR))
    put_link(tmp_path, parent.pci, "32.0 GT/s PCIe\n", "8\n")
    put_link(tmp_path, child.pci, "16.0 GT/s PCIe\n", "16\n")
    link = pci_device_min_speed(child, False, str(tmp_path))
    assert link.speed_idx == min(PCIE_GEN.index("32"), PCIE_GEN.index("16"))
    assert link.width == 8


def test_write_topology_single_nic(tmp_path):
    root, gpu, nics, infos = build_tree(1)
    put_link(tmp_path, nics[0].pci, "16.0 GT/s PCIe\n", "16\n")
    put_link(tmp_path, addr(0x04), "32.0 GT/s PCIe\n", "16\n")
    topo = Topology(root, infos)
    topo.group()
    out = io.StringIO()
    write_topology(topo, out, str(tmp_path))
    expected = (
        '<system version="1">\n'
        '  <cpu numaid="0">\n'
        '    <pci busid="0000:03:00.0">\n'
        '      <pci busid="0000:06:00.0" link_speed="16 GT/s PCIe/s" link_width="16"/>\n'
        '    </pci>\n'
        '  </cpu>\n'
        '</system>'
    )
    assert out.getvalue() == expected


def test_write_topology_scales_group_to_gpu(tmp_path):
    root, gpu, nics, infos = build_tree(2)
    for nic in nics:
        put_link(tmp_path, nic.pci, "16.0 GT/s PCIe\n", "16\n")
    put_link(tmp_path, gpu.pci, "32.0 GT/s PCIe\n", "16\n")
    put_link(tmp_path, addr(0x04), "32.0 GT/s PCIe\n", "16\n")
    topo = Topology(root, infos)
    topo.group()
    out = io.StringIO()
    write_topology(topo, out, str(tmp_path))
    text = out.getvalue()
    assert text.startswith('<system version="1">\n')
    assert text.endswith("</system>")
    assert text.count('link_speed="32 GT/s PCIe/s"') == 1
    assert text.count("<cpu ") == text.count("</cpu>")


def test_write_topology_missing_property(tmp_path):
    root, gpu, nics, infos = build_tree(1)
    topo = Topology(root, infos)
    topo.group()
    with pytest.raises(TopologyError):
        write_topology(topo, io.StringIO(), str(tmp_path))
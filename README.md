# ofiplugin

Helpers for configuring multi-node GPU communication over libfabric network
interfaces on cloud instances:

- **Platform defaults** (`ofiplugin.platform`): a table of per-instance-type
  settings and a lookup that finds the entry for an instance type.
- **Environment set-up** (`ofiplugin.platform_init`): works out which
  environment variables to set for a platform and which connection, latency
  and protocol defaults to use.
- **Rail ordering** (`ofiplugin.rails`): parses NIC node GUIDs and reorders
  NICs so that their virtual function indices alternate.
- **Topology grouping** (`ofiplugin.topology`): groups NICs with the
  accelerators closest to them in a PCI tree.
- **Topology XML** (`ofiplugin.topo_writer`): writes a grouped topology as a
  topology XML file, with PCIe link speeds and widths read from sysfs.

The package has no third-party dependencies.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Platform defaults

```python
from ofiplugin.platform import platform_map, get_platform_entry, default_domain_per_thread

entry = get_platform_entry("p5.48xlarge", platform_map())
print(entry.name, entry.default_protocol, entry.latency)   # p-series RDMA 75.0
print(default_domain_per_thread(entry))                    # False
```

`platform_map()` returns the table of `PlatformData` entries in order. An
entry whose `regex` is `None` matches only its exact `name`; otherwise its
regular expression is searched in the instance type. The first match wins,
and `None` is returned when nothing matches. A regular expression that does
not compile raises `PlatformError`.

## Environment set-up

```python
from ofiplugin.platform import platform_map, get_platform_entry
from ofiplugin.platform_init import PlatformOptions, platform_init

entry = get_platform_entry("p4d.24xlarge", platform_map())
env = {}
settings = platform_init(entry, env, PlatformOptions(have_cuda=True, nccl_version=21903))
print(settings.provider_filter)     # efa
print(settings.selected_protocol)   # SENDRECV
print(env["NCCL_TOPO_FILE"])        # /usr/local/share/ofiplugin/xml/p4d-24xl-topo.xml
```

`platform_init(platform_data, environ, options)` changes `environ` in place
(by default `os.environ`) and returns a `PlatformSettings` with
`provider_filter`, `nic_dup_conns`, `net_latency` and `selected_protocol`.

- Unless `FI_PROVIDER` is set, the provider filter is `"efa"`.
- With `options.have_cuda`, it sets `FI_EFA_FORK_SAFE=1` (or
  `RDMAV_FORK_SAFE=1` for libfabric older than 1.13), sets
  `NCCL_NVLS_ENABLE=0` when `nccl_version` is known and older than 21805,
  sets `NCCL_NET_FORCE_FLUSH=0` on platforms that need no network flush, and
  sets `NCCL_NVLSTREE_MAX_CHUNKSIZE` and `NCCL_NVLS_CHUNKSIZE` to 524288.
  Variables already present are left alone.
- If the platform has a topology file and `NCCL_TOPO_FILE` is unset, it is
  set to `options.xml_dir` joined with the file name. A path of 4096
  characters or more raises `PlatformError`.
- A zero `nic_dup_conns` takes the platform default; a negative
  `net_latency` takes the platform latency, or 75.0 without a platform.
- When EFA is selected and no protocol was given, the platform's default
  protocol is chosen.

## Rail ordering

```python
from ofiplugin.rails import parse_node_guid, device_guid, sort_rails

fields = parse_node_guid("0000:0000:0012:3401")
print(fields.func_idx, fields.per_card_pci_bus, fields.per_card_pci_domain)  # 1 52 18

guid = device_guid(node_id=7, dev_id=0, device_id="0xefa3", fields=fields)

nics = ["a", "b", "c", "d"]
vf = {"a": 0, "b": 0, "c": 1, "d": 1}
print(sort_rails(nics, 4, 2, vf.__getitem__))   # ['a', 'c', 'b', 'd']
```

- `parse_node_guid(text)` reads a `XXXX:XXXX:XXXX:XXXX` GUID into a
  `NodeGuid`; other text raises `PlatformError`.
- `read_node_guid(device_name, sysfs_root)` reads
  `class/infiniband/<device>/node_guid` under `sysfs_root` and caches the
  result per path.
- `device_guid(node_id, dev_id, device_id, fields)` combines the node id with
  either the device index (no fields, or device ids `0xefa0`–`0xefa2`) or the
  per-card PCI domain and bus.
- `sort_rails(infos, num_rails, num_groups, vf_index)` returns a new list. It
  leaves the order unchanged when there is at most one NIC per group, all
  indices are zero, an index is negative, the count does not match, or the
  alternation cannot be completed.

## Topology grouping

Build the PCI tree from `TopoNode` objects (`add_child` for ordinary
children, `add_memory_child` for NUMA nodes) and describe the NICs with
`NicInfo`:

```python
from ofiplugin.topology import NicInfo, ObjType, PciAddress, TopoNode, Topology

root = TopoNode(ObjType.MACHINE)
bridge = root.add_child(TopoNode(ObjType.BRIDGE, pci=PciAddress(0, 0, 1, 0)))
bridge.add_child(TopoNode(ObjType.PCI_DEVICE, pci=PciAddress(0, 0x10, 0, 0),
                          class_id=0x0302, vendor_id=0x10DE))
bridge.add_child(TopoNode(ObjType.PCI_DEVICE, pci=PciAddress(0, 0x11, 0, 0),
                          class_id=0x0200))
nic = NicInfo("efa0", pci=PciAddress(0, 0x11, 0, 0))

topo = Topology(root, [nic])
topo.group()
print(topo.num_info_lists())     # 1
print(list(topo.info_lists()))   # [[NicInfo(name='efa0', ...)]]
```

Accelerators are PCI devices of class `0x03` and vendor `0x10de`
(`is_accelerator`). Each group of NICs ends up on the node of its first NIC.
NICs with no accelerator near them are each exposed as a group of their own.
An optional `sort_rails` callable `(infos, num_infos, group_size) -> list`
reorders NICs before they are split into groups. To use
`ofiplugin.rails.sort_rails`, bind its `vf_index` argument first. Inconsistent
trees raise `TopologyError`.

## Writing the topology XML

```python
from ofiplugin.topo_writer import write_topology

with open("topo.xml", "w") as out:
    write_topology(topo, out, sysfs_root="/sys")
```

Only nodes with a NIC or accelerator below them are written. NIC links are
read with `pci_device_min_speed`, which takes the minimum of the device and
its parent bridge as read by `pci_device_speed` from
`bus/pci/devices/<busid>/max_link_speed` and `max_link_width` under
`sysfs_root`. A NIC group's link is scaled up towards the speed and width of
its accelerator. Unreadable or unknown values raise `TopologyError`.

## What this package does not do

- It does not probe hardware. The PCI tree and the NIC list must be built by
  the caller; only link speeds, link widths and node GUIDs are read from
  sysfs.
- It does not choose collective algorithms or protocols. There is no tuner
  and no cost model.
- It has no command-line program; it is used as a library.
"""Hardware topology model and the grouping of NICs around accelerators."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterator, List, Optional, Sequence, Tuple

log = logging.getLogger(__name__)

ACCELERATOR_CLASS = 0x03
"""PCI class code of display controllers."""

ACCELERATOR_VENDOR = 0x10DE
"""PCI vendor id of the accelerators that NICs are grouped around."""

SortRails = Callable[[List["NicInfo"], int, int], List["NicInfo"]]


class TopologyError(Exception):
    """Raised when the topology is inconsistent or cannot be grouped."""


class ObjType(Enum):
    """Kinds of topology nodes."""

    MACHINE = "machine"
    PACKAGE = "package"
    NUMANODE = "numanode"
    GROUP = "group"
    BRIDGE = "bridge"
    PCI_DEVICE = "pci_device"
    OS_DEVICE = "os_device"
    OTHER = "other"


@dataclass(frozen=True)
class PciAddress:
    """A PCI bus id: domain, bus, device and function."""

    domain: int
    bus: int
    dev: int
    func: int

    def __str__(self) -> str:
        return f"{self.domain:04x}:{self.bus:02x}:{self.dev:02x}.{self.func:01x}"


@dataclass(frozen=True, eq=False)
class NicInfo:
    """A network interface reported by the fabric library.

    pci is None when the interface does not sit on a PCI bus.
    """

    name: str
    pci: Optional[PciAddress] = None
    device_name: Optional[str] = None
    device_id: Optional[str] = None


@dataclass(eq=False)
class TopoNode:
    """One node of the hardware topology tree.

    For a bridge, pci holds the address of its upstream side.
    """

    type: ObjType
    pci: Optional[PciAddress] = None
    class_id: int = 0
    vendor_id: int = 0
    os_index: int = 0
    parent: Optional["TopoNode"] = field(default=None, repr=False)
    children: List["TopoNode"] = field(default_factory=list, repr=False)
    memory_children: List["TopoNode"] = field(default_factory=list, repr=False)
    userdata: Optional["TopoData"] = field(default=None, repr=False)

    def add_child(self, child: TopoNode) -> TopoNode:
        """Attach child below this node and return it."""
        child.parent = self
        self.children.append(child)
        return child

    def add_memory_child(self, child: TopoNode) -> TopoNode:
        """Attach child to this node's memory children and return it."""
        child.parent = self
        self.memory_children.append(child)
        return child

    def path_to_root(self) -> Iterator[TopoNode]:
        """Yield this node and then each of its ancestors."""
        node: Optional[TopoNode] = self
        while node is not None:
            yield node
            node = node.parent


@dataclass(eq=False)
class TopoData:
    """Grouping state attached to a node with a NIC or accelerator below it."""

    node: TopoNode
    info_list: Optional[List[NicInfo]] = None
    num_groups: int = 0
    is_nic_subtree: bool = False
    contributed_gpu: bool = False
    gpu_group_node: Optional[TopoNode] = None

    @property
    def info_list_len(self) -> int:
        return len(self.info_list) if self.info_list else 0


def is_accelerator(node: TopoNode) -> bool:
    """Whether node is a PCI device of the accelerator class and vendor."""
    if node.type != ObjType.PCI_DEVICE:
        return False
    if node.pci is None:
        raise TopologyError("PCI device node has no PCI attributes")
    return (node.class_id >> 8) == ACCELERATOR_CLASS and node.vendor_id == ACCELERATOR_VENDOR


def iter_pci_devices(root: TopoNode) -> Iterator[TopoNode]:
    """Yield every PCI device below root, depth first in child order."""
    stack = [root]
    while stack:
        node = stack.pop()
        if node.type == ObjType.PCI_DEVICE:
            yield node
        stack.extend(reversed(node.children))


class Topology:
    """Hardware topology decorated with NIC information, and NIC grouping."""

    def __init__(self, root: TopoNode, nic_infos: Sequence[NicInfo],
                 sort_rails: Optional[SortRails] = None) -> None:
        self.root = root
        self.nic_infos: Tuple[NicInfo, ...] = tuple(nic_infos)
        self.sort_rails = sort_rails
        self.max_group_size = 0
        self.data: List[TopoData] = []
        self._decorate()

    def _info_for_node(self, node: TopoNode) -> Optional[NicInfo]:
        if not self.nic_infos:
            raise TopologyError("no NIC info list provided")
        if node.type != ObjType.PCI_DEVICE:
            return None
        for info in self.nic_infos:
            if info.pci is None:
                raise TopologyError(f"failed to retrieve PCI attributes from NIC {info.name}")
            if info.pci == node.pci:
                return info
        return None

    def _decorate(self) -> None:
        for obj in iter_pci_devices(self.root):
            accel = is_accelerator(obj)
            info = self._info_for_node(obj)
            if accel or info is not None:
                for node in obj.path_to_root():
                    if node.userdata is None:
                        data = TopoData(node=node)
                        node.userdata = data
                        self.data.append(data)
            if info is not None:
                assert obj.userdata is not None
                obj.userdata.info_list = [info]
                self.max_group_size = 1

    def _find_pci_device(self, info: NicInfo) -> TopoNode:
        if info.pci is None:
            raise TopologyError(f"failed to retrieve PCI attributes from NIC {info.name}")
        for node in iter_pci_devices(self.root):
            if node.pci == info.pci:
                return node
        raise TopologyError(f"no PCI device detected for NIC {info.name} at {info.pci}")

    def _mark_nic_subtrees(self) -> None:
        for data in self.data:
            if not data.info_list:
                continue
            for node in data.node.path_to_root():
                if node.userdata is None:
                    raise TopologyError("invalid user data on path to root")
                node.userdata.is_nic_subtree = True

    def _propagate_accel_counts(self) -> None:
        for obj in iter_pci_devices(self.root):
            if not is_accelerator(obj):
                continue
            userdata = obj.userdata
            if userdata is None:
                log.warning("Accelerator node without user data")
                continue
            if userdata.contributed_gpu:
                continue
            userdata.contributed_gpu = True
            for node in obj.path_to_root():
                data = node.userdata
                if data is None:
                    log.warning("Invalid user data pointer")
                    break
                if data.is_nic_subtree:
                    data.num_groups += 1
                    data.gpu_group_node = obj
                    break

    def _lift_up_infos(self) -> None:
        for source in list(self.data):
            if not source.info_list:
                continue
            target_data = source.node.userdata
            if target_data is not None and target_data.num_groups > 0:
                continue
            target: Optional[TopoNode] = source.node
            while target is not None:
                target_data = target.userdata
                if target_data is None:
                    raise TopologyError("invalid user data on path to root")
                if target_data.num_groups > 0:
                    target_data.info_list = source.info_list + (target_data.info_list or [])
                    if target_data is not source:
                        source.info_list = None
                    break
                target = target.parent
                if target is None:
                    # No accelerator claims these NICs: expose each one as a group.
                    source.num_groups = source.info_list_len

    def _create_groups(self, data: TopoData, infos: List[NicInfo], num_groups: int) -> None:
        num_infos = len(infos)
        num_groups = min(num_groups, num_infos)
        num_large_groups = num_infos % num_groups
        group_size = num_infos // num_groups + 1

        if self.sort_rails is not None:
            infos = list(self.sort_rails(infos, num_infos, group_size))

        try:
            for group_idx in range(num_groups):
                if group_idx == num_large_groups:
                    group_size -= 1
                if group_size == 0:
                    break
                leader = self._find_pci_device(infos[0])
                user_data = leader.userdata
                if user_data is None:
                    raise TopologyError("invalid user data on NIC node")
                if user_data.info_list and user_data.info_list[0] is infos[0]:
                    if group_idx + 1 == num_groups:
                        break
                    raise TopologyError("invalid state of topology")
                user_data.info_list = infos[:group_size]
                user_data.gpu_group_node = data.gpu_group_node
                self.max_group_size = max(self.max_group_size, group_size)
                infos = infos[group_size:]
        except TopologyError:
            data.info_list = infos or None
            raise

    def _create_all_groups(self) -> None:
        for data in list(self.data):
            if not data.info_list or data.num_groups == 0:
                continue
            infos = data.info_list
            num_groups = data.num_groups
            data.info_list = None
            data.num_groups = 0
            self._create_groups(data, infos, num_groups)

    def _log_groups(self) -> None:
        for group_idx, infos in enumerate(self.info_lists()):
            for info_idx, info in enumerate(infos):
                if info.pci is not None:
                    log.info("NIC group %d device #%d %s", group_idx, info_idx, info.pci)

    def group(self) -> None:
        """Group NICs by their closeness to accelerators."""
        self._mark_nic_subtrees()
        self._propagate_accel_counts()
        self._lift_up_infos()
        self._create_all_groups()
        self._log_groups()

    def info_lists(self) -> Iterator[List[NicInfo]]:
        """Yield each NIC list in topology data order."""
        for data in self.data:
            if data.info_list:
                yield list(data.info_list)

    def num_info_lists(self) -> int:
        """Number of nodes that hold a NIC list."""
        return sum(1 for data in self.data if data.info_list)
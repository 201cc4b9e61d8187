"""Node GUID parsing and rail ordering for multi-NIC platforms."""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, TypeVar

from .platform import PlatformError

log = logging.getLogger(__name__)

T = TypeVar("T")

_GUID_RE = re.compile(
    r"\s*([0-9A-Fa-f]{1,4}):\s*([0-9A-Fa-f]{1,4}):\s*([0-9A-Fa-f]{1,4}):\s*([0-9A-Fa-f]{1,4})")

_LEGACY_DEVICE_IDS = frozenset({"0xefa0", "0xefa1", "0xefa2"})

_guid_cache: Dict[Path, "NodeGuid"] = {}
_cache_lock = threading.Lock()


@dataclass(frozen=True)
class NodeGuid:
    """Fields of a NIC's 64-bit node GUID.

    Layout: bits 63-32 func_mac_low_bytes, 31-16 per-card PCI domain,
    15-8 per-card PCI bus, 7-0 function index.
    """

    func_idx: int
    per_card_pci_bus: int
    per_card_pci_domain: int
    func_mac_low_bytes: int

    @classmethod
    def from_raw(cls, raw: int) -> NodeGuid:
        return cls(
            func_idx=raw & 0xFF,
            per_card_pci_bus=(raw >> 8) & 0xFF,
            per_card_pci_domain=(raw >> 16) & 0xFF,
            func_mac_low_bytes=raw >> 32,
        )


def parse_node_guid(text: str) -> NodeGuid:
    """Parse a GUID in XXXX:XXXX:XXXX:XXXX form."""
    match = _GUID_RE.match(text)
    if match is None:
        raise PlatformError(f"invalid GUID format: {text!r}")
    a, b, c, d = (int(group, 16) for group in match.groups())
    raw = (a << 48) | (b << 32) | (c << 16) | d
    return NodeGuid.from_raw(raw)


def read_node_guid(device_name: str, sysfs_root: str = "/sys") -> NodeGuid:
    """Read and cache the node GUID of an RDMA device from sysfs."""
    path = Path(sysfs_root) / "class" / "infiniband" / device_name / "node_guid"
    with _cache_lock:
        cached = _guid_cache.get(path)
    if cached is not None:
        return cached

    with path.open("r") as handle:
        line = handle.readline()
    if not line:
        raise PlatformError(f"failed to read data from {path}")
    try:
        fields = parse_node_guid(line)
    except PlatformError as exc:
        raise PlatformError(f"invalid GUID format in {path}") from exc

    log.info("GUID of %s: %s", device_name, line.strip())
    with _cache_lock:
        return _guid_cache.setdefault(path, fields)


def device_guid(node_id: int, dev_id: int, device_id: str,
                fields: Optional[NodeGuid]) -> int:
    """Build the 64-bit GUID a device is exposed with."""
    if fields is None or device_id in _LEGACY_DEVICE_IDS:
        guid = (node_id << 32) | dev_id
    else:
        guid = ((node_id << 32) | (fields.per_card_pci_domain << 8)
                | fields.per_card_pci_bus)
    log.info("GUID for dev[%d]: %032x", dev_id, guid)
    return guid


def sort_rails(infos: Sequence[T], num_rails: int, num_groups: int,
               vf_index: Callable[[T], int]) -> List[T]:
    """Reorder NICs so that function indices alternate 0, 1, ..., 0, 1, ...

    Keeps the input order otherwise.  The input is returned unchanged when
    there is at most one NIC per group, all indices are zero, an index is
    negative, or the alternation cannot be completed.
    """
    unchanged = list(infos)
    if num_groups <= 0 or num_rails // num_groups <= 1:
        return unchanged

    candidates = unchanged[:num_rails]
    if len(candidates) != num_rails:
        log.warning("Info count (%d) and num_rails (%d) do not match. Aborting reorder.",
                    len(candidates), num_rails)
        return unchanged

    vfs = []
    for position, info in enumerate(candidates):
        vf = vf_index(info)
        if vf < 0:
            log.warning("lookup of rail for index %d failed", position)
            return unchanged
        vfs.append(vf)

    highest = max(vfs)
    if highest == 0:
        return unchanged

    remaining: List[Optional[int]] = list(range(num_rails))
    output: List[T] = []
    next_vf = 0
    for _ in range(num_rails):
        found = next((slot for slot, idx in enumerate(remaining)
                      if idx is not None and vfs[idx] == next_vf), None)
        if found is None:
            log.warning("Did not find a device with expected index %d", next_vf)
            return unchanged
        output.append(candidates[found])
        remaining[found] = None
        next_vf = (next_vf + 1) % (highest + 1)
    return output
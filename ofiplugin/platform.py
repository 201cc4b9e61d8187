"""Per-instance-type platform settings and their lookup."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

log = logging.getLogger(__name__)


class PlatformError(Exception):
    """Raised when platform configuration cannot be evaluated."""


@dataclass(frozen=True)
class PlatformData:
    """Settings for one instance type or family of instance types.

    When regex is None, name must equal the instance type exactly;
    otherwise regex is matched against it.
    """

    name: str
    regex: Optional[str]
    topology: Optional[str]
    default_dup_conns: int
    latency: float
    gdr_required: bool
    net_flush_required: bool
    default_protocol: str
    domain_per_thread: int


_PLATFORM_MAP: Tuple[PlatformData, ...] = (
    PlatformData("p4d.24xlarge", None, "p4d-24xl-topo.xml", 0, 75.0,
                 True, True, "SENDRECV", 0),
    PlatformData("p4de.24xlarge", None, "p4de-24xl-topo.xml", 0, 75.0,
                 True, True, "SENDRECV", 0),
    PlatformData("p3dn.24xlarge", None, None, 4, 150.0,
                 False, True, "SENDRECV", 0),
    # P5 and later only; earlier platforms are ignored or special-cased.
    PlatformData("p-series", r"^p([5-9]|[0-9]{2,}).*", None, 0, 75.0,
                 True, False, "RDMA", 0),
    PlatformData("g5.48xlarge", None, "g5.48xl-topo.xml", 0, 75.0,
                 False, True, "SENDRECV", 0),
    PlatformData("trn1", r"^trn1.*", None, 0, 75.0,
                 True, True, "SENDRECV", 1),
    PlatformData("trn2", r"^trn2.*", None, 0, 75.0,
                 True, True, "RDMA", 1),
    PlatformData("inf", r"^inf.*", None, 0, 75.0,
                 True, True, "SENDRECV", 1),
)


def platform_map() -> Tuple[PlatformData, ...]:
    """The ordered platform table; the first matching entry wins."""
    return _PLATFORM_MAP


def get_platform_entry(platform_type: str,
                       platform_list: Iterable[PlatformData]) -> Optional[PlatformData]:
    """Return the first entry matching platform_type, or None."""
    response: Optional[PlatformData] = None
    for entry in platform_list:
        if entry.regex is None:
            if platform_type == entry.name:
                response = entry
                break
            continue
        try:
            pattern = re.compile(entry.regex)
        except re.error as exc:
            raise PlatformError(
                f"could not compile platform_type regex for {entry.regex}") from exc
        if pattern.search(platform_type):
            response = entry
            break
    log.debug("Using platform block %s for instance type %s",
              "none" if response is None else response.name, platform_type)
    return response


def default_domain_per_thread(platform_data: Optional[PlatformData]) -> bool:
    """Whether the platform wants one domain per thread by default."""
    return platform_data is not None and platform_data.domain_per_thread != 0
"""Environment set-up performed when the plugin starts on a known platform."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import MutableMapping, Optional, Tuple

from .platform import PlatformData, PlatformError

log = logging.getLogger(__name__)

PATH_MAX = 4096
DEFAULT_LATENCY = 75.0
NVLS_MIN_NCCL_VERSION = 21805
CHUNK_SIZE = "524288"


@dataclass(frozen=True)
class PlatformOptions:
    """Inputs to platform initialisation that do not come from the environment.

    net_latency below zero means the user did not set a latency; protocol
    None means the user did not choose a protocol.  nccl_version None means
    the collective library's version could not be determined.
    """

    have_cuda: bool = False
    libfabric_version: Tuple[int, int] = (1, 13)
    nccl_version: Optional[int] = None
    xml_dir: str = "/usr/local/share/ofiplugin/xml"
    product_name: Optional[str] = None
    nic_dup_conns: int = 0
    net_latency: float = -1.0
    protocol: Optional[str] = None


@dataclass(frozen=True)
class PlatformSettings:
    """Settings decided by platform initialisation."""

    provider_filter: Optional[str]
    nic_dup_conns: int
    net_latency: float
    selected_protocol: Optional[str]


def _fork_safe_variable(libfabric_version: Tuple[int, int]) -> str:
    major, minor = libfabric_version
    if major > 1 or (major == 1 and minor >= 13):
        return "FI_EFA_FORK_SAFE"
    return "RDMAV_FORK_SAFE"


def _configure_nvls(environ: MutableMapping[str, str], nccl_version: Optional[int]) -> None:
    # Older collective library versions misbehave with NVLS on EFA.
    if "NCCL_NVLS_ENABLE" in environ:
        return
    if nccl_version is None:
        log.debug("Collective library version unknown; skipping NVLS version check")
        return
    if nccl_version < NVLS_MIN_NCCL_VERSION:
        log.info("Disabling NVLS support due to NCCL version %d", nccl_version)
        environ["NCCL_NVLS_ENABLE"] = "0"
    else:
        log.debug("Not disabling NVLS support due to NCCL version %d", nccl_version)


def _configure_cuda(platform_data: Optional[PlatformData],
                    environ: MutableMapping[str, str],
                    options: PlatformOptions) -> None:
    fork_safe = _fork_safe_variable(options.libfabric_version)
    if fork_safe not in environ:
        log.info("Setting %s environment variable to 1", fork_safe)
        environ[fork_safe] = "1"

    _configure_nvls(environ, options.nccl_version)

    if platform_data is not None and not platform_data.net_flush_required:
        if "NCCL_NET_FORCE_FLUSH" not in environ:
            log.info("Setting NCCL_NET_FORCE_FLUSH=0 for Hopper GPUs")
            environ["NCCL_NET_FORCE_FLUSH"] = "0"

    log.info("Setting NCCL_NVLSTREE_MAX_CHUNKSIZE to 512KiB")
    environ.setdefault("NCCL_NVLSTREE_MAX_CHUNKSIZE", CHUNK_SIZE)
    log.info("Setting NCCL_NVLS_CHUNKSIZE to 512KiB")
    environ.setdefault("NCCL_NVLS_CHUNKSIZE", CHUNK_SIZE)


def _configure_topology(platform_data: Optional[PlatformData],
                        environ: MutableMapping[str, str],
                        options: PlatformOptions) -> None:
    if "NCCL_TOPO_FILE" in environ:
        log.info("Running on %s platform, NCCL_TOPO_FILE environment variable is "
                 "already set to %s", options.product_name, environ["NCCL_TOPO_FILE"])
        return
    if platform_data is None or not platform_data.topology:
        return
    topology_path = f"{options.xml_dir}/{platform_data.topology}"
    if len(topology_path) >= PATH_MAX:
        raise PlatformError(
            f"topology XML file path is too long: dir {options.xml_dir}, "
            f"file {platform_data.topology}")
    log.info("Running on %s platform, Setting NCCL_TOPO_FILE environment variable to %s",
             options.product_name, topology_path)
    environ["NCCL_TOPO_FILE"] = topology_path


def platform_init(platform_data: Optional[PlatformData],
                  environ: Optional[MutableMapping[str, str]] = None,
                  options: Optional[PlatformOptions] = None) -> PlatformSettings:
    """Adjust environ for the platform and return the settings chosen.

    The EFA provider is forced unless FI_PROVIDER is already set.  Variables
    already present in environ are left untouched.
    """
    if environ is None:
        environ = os.environ
    if options is None:
        options = PlatformOptions()

    log.info("Configuring AWS-specific options")

    provider_filter: Optional[str] = None
    fi_provider = environ.get("FI_PROVIDER")
    if fi_provider is None:
        log.info("Setting provider_filter to efa")
        provider_filter = "efa"
        select_efa = True
    else:
        select_efa = fi_provider == "efa"

    if options.have_cuda:
        _configure_cuda(platform_data, environ, options)

    _configure_topology(platform_data, environ, options)

    nic_dup_conns = options.nic_dup_conns
    if nic_dup_conns == 0 and platform_data is not None:
        nic_dup_conns = platform_data.default_dup_conns

    net_latency = options.net_latency
    if net_latency < 0:
        if platform_data is not None and platform_data.latency >= 0.0:
            net_latency = platform_data.latency
        else:
            net_latency = DEFAULT_LATENCY
        log.info("Internode latency set at %.1f us", net_latency)

    selected_protocol = options.protocol
    if select_efa and options.protocol is None and platform_data is not None:
        selected_protocol = platform_data.default_protocol

    return PlatformSettings(
        provider_filter=provider_filter,
        nic_dup_conns=nic_dup_conns,
        net_latency=net_latency,
        selected_protocol=selected_protocol,
    )
"""Platform configuration, NIC rail ordering and PCI topology grouping."""

__version__ = "0.1.0"
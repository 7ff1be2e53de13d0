"""Multi-NIC container networking: IP allocation, NIC selection, L3 routing and interface discovery."""

__version__ = "1.2.6"
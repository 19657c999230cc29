"""Per-pod lab automation for Cisco Multicloud Defense on AWS."""

__version__ = "0.1.0"

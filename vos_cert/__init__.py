"""Certificate lifecycle automation for Cisco VOS appliances."""

__version__ = "0.1.0"

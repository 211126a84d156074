"""CareBook booking & escrow engine"""

__version__ = "1.0.0"

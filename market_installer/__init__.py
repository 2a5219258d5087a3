"""
market-installer: downloads, verifies and atomically commits marketplace
applications into a shared on-disk registry.
"""

__version__ = "1.0.0"

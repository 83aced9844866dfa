"""Cross-chain entropy backend for the casino contracts."""

__version__ = "1.0.0"

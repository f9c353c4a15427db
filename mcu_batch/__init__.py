"""MCU batch engine: encounter and lab measurement reconciliation with compensation."""

__version__ = "1.0.0"

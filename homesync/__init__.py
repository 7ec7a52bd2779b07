"""homesync — receive file batches from identified clients and track when each last synced."""

__version__ = "1.0.0"

from .timescale import TimescaleStore

__all__ = ["TimescaleStore"]

"""Scheduled AI trade finder for futures symbols."""

__version__ = "0.1.0"

__all__ = [
    "settings",
    "trade_finder",
    "workflow",
]

from jukebox.economy.points import PointsLedger

__all__ = [
    "PointsLedger",
]

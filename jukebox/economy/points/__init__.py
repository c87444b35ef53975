from jukebox.economy.points.service import PointsLedger

__all__ = ["PointsLedger"]

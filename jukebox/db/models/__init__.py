from jukebox.db.models.base import Base
from jukebox.db.models.points_balances import PointsBalance
from jukebox.db.models.points_transactions import PointsTransaction

__all__ = [
    "Base",
    "PointsBalance",
    "PointsTransaction",
]

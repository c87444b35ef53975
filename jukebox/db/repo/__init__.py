from jukebox.db.repo.balances_repo import BalancesRepo
from jukebox.db.repo.points_transactions_repo import PointsTransactionsRepo

__all__ = [
    "BalancesRepo",
    "PointsTransactionsRepo",
]

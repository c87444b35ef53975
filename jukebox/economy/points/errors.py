class PointsError(Exception):
    pass


class InsufficientBalanceError(PointsError):
    def __init__(self, *, user_id: str, venue_id: str, requested: int, available: int) -> None:
        super().__init__(
            f"insufficient points balance: requested={requested} available={available}"
        )
        self.user_id = user_id
        self.venue_id = venue_id
        self.requested = requested
        self.available = available


class LedgerUnavailableError(PointsError):
    pass

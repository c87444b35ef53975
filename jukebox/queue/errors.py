class QueueStoreError(Exception):
    """Raw failure talking to the queue store."""


class QueueError(Exception):
    code = "queue_error"


class DuplicateTrackError(QueueError):
    code = "duplicate_track"


class QuotaExceededError(QueueError):
    code = "quota_exceeded"

    def __init__(self, *, user_cap: int, active_count: int) -> None:
        super().__init__(f"queue limit reached: {active_count}/{user_cap}")
        self.user_cap = user_cap
        self.active_count = active_count


class InsufficientBalanceError(QueueError):
    code = "insufficient_balance"


class PointsServiceUnavailableError(QueueError):
    code = "points_service_unavailable"


class QueueStoreUnavailableError(QueueError):
    code = "queue_store_unavailable"

    def __init__(self, message: str = "", *, compensation_complete: bool = True) -> None:
        super().__init__(message or self.code)
        self.compensation_complete = compensation_complete


class NoTrackAvailableError(QueueError):
    code = "no_track_available"


class TrackNotQueuedError(QueueError):
    code = "track_not_queued"


class RequestVoidedError(QueueError):
    """The request id was already charged and refunded; retry with a new one."""

    code = "request_voided"

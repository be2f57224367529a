class SchedulingError(Exception):
    """Base for every business error raised by the scheduling services.

    ``status_code`` is the HTTP status the routers answer with.
    """

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(SchedulingError):
    status_code = 404


class StoreFailure(SchedulingError):
    status_code = 503


class BookingConflict(SchedulingError):
    status_code = 409


class NoAvailability(SchedulingError):
    status_code = 409


class ValidationGap(SchedulingError):
    status_code = 422


class InvalidTransition(SchedulingError):
    status_code = 409


class BulkApprovalFailed(SchedulingError):
    status_code = 409

    def __init__(self, approved_ids: list[int], failures: dict[int, str]):
        super().__init__(f"{len(failures)} shift request(s) could not be approved")
        self.approved_ids = approved_ids
        self.failures = failures

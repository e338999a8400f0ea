from fastapi import status


class ServiceError(Exception):
    """Base exception for service layer errors."""

    def __init__(self, message: str, status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class MissingFeePlansError(ServiceError):
    """Raised when target classes of a promotion have no fee structure in the target year."""

    def __init__(self, missing: list) -> None:
        super().__init__("MISSING_FEE_PLANS", status.HTTP_409_CONFLICT)
        self.missing = missing

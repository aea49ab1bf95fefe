"""Domain errors raised by the ledger, fee model and settlement engine.

Each error carries the HTTP status it maps to; ``giftpool.main`` turns them
into JSON responses.
"""

from fastapi import status


class GiftPoolError(Exception):
    status_code: int = status.HTTP_400_BAD_REQUEST
    default_detail: str = "Request failed"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class InvalidAmount(GiftPoolError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Valid contribution amount is required"


class Unauthorized(GiftPoolError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_detail = "Unauthorized"


class NotGiftOrganizer(GiftPoolError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Only the gift organizer can do this"


class GiftNotFound(GiftPoolError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Gift not found"


class SettlementNotFound(GiftPoolError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Settlement not found"


class AlreadySettled(GiftPoolError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Gift has already been settled"


class GiftClosed(GiftPoolError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Gift is no longer accepting contributions"


class SettlementMethodUnavailable(GiftPoolError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Settlement method is not available for this gift"


class InvalidContributionState(GiftPoolError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Contribution is not pending"


class UpstreamUnavailable(GiftPoolError):
    status_code = status.HTTP_502_BAD_GATEWAY
    default_detail = "Gift card float balance is unavailable"

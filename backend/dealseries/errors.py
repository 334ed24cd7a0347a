"""
Error taxonomy for recurring deal series.

Validation and not-found errors surface to the caller of the store. Generation
errors are raised by the instance generator and caught per series by the
orchestrator, which records them as failures instead of re-raising.
"""

from typing import Optional


class RecurringValidationError(ValueError):
    """Inconsistent cadence or end-condition fields. Nothing is persisted."""


class RecurringNotFoundError(LookupError):
    """No recurring series for the given id/team pair."""

    def __init__(self, recurring_id: Optional[str], team_id: Optional[str] = None, message: Optional[str] = None):
        self.recurring_id = recurring_id
        self.team_id = team_id
        super().__init__(message or f"Recurring deal series {recurring_id} not found")


class MerchantNotFoundError(RecurringNotFoundError):
    """The merchant a series should bill does not exist in the team."""

    def __init__(self, merchant_id: str, team_id: Optional[str] = None):
        self.merchant_id = merchant_id
        super().__init__(None, team_id, "Merchant not found")


class DealNotFoundError(RecurringNotFoundError):
    """The deal to start a series from does not exist in the team."""

    def __init__(self, deal_id: str, team_id: Optional[str] = None):
        self.deal_id = deal_id
        super().__init__(None, team_id, "Deal not found or does not belong to this team")


class RecurringDealError(Exception):
    """A due series could not be turned into a deal."""

    MERCHANT_DELETED = "MERCHANT_DELETED"
    MERCHANT_NOT_FOUND = "MERCHANT_NOT_FOUND"
    MERCHANT_NO_EMAIL = "MERCHANT_NO_EMAIL"
    TEMPLATE_INVALID = "TEMPLATE_INVALID"

    def __init__(
        self,
        code: str,
        message: str,
        recurring_id: str,
        team_id: Optional[str] = None,
        requires_user_action: bool = True,
        user_message: Optional[str] = None,
    ):
        super().__init__(message)
        self.code = code
        self.recurring_id = recurring_id
        self.team_id = team_id
        self.requires_user_action = requires_user_action
        self._user_message = user_message

    def get_user_message(self) -> str:
        return self._user_message or str(self)

    @classmethod
    def merchant_deleted(cls, recurring_id: str, merchant_name: Optional[str], team_id: str):
        name = merchant_name or "Unknown merchant"
        return cls(
            cls.MERCHANT_DELETED,
            f"Merchant for recurring series {recurring_id} was deleted",
            recurring_id,
            team_id,
            user_message=f"The merchant \"{name}\" was deleted. Link a merchant to resume this series.",
        )

    @classmethod
    def merchant_not_found(cls, recurring_id: str, merchant_id: str, team_id: str):
        return cls(
            cls.MERCHANT_NOT_FOUND,
            f"Merchant {merchant_id} for recurring series {recurring_id} not found",
            recurring_id,
            team_id,
            user_message="The merchant linked to this series no longer exists.",
        )

    @classmethod
    def merchant_no_email(cls, recurring_id: str, merchant_name: Optional[str], team_id: str):
        name = merchant_name or "Unknown merchant"
        return cls(
            cls.MERCHANT_NO_EMAIL,
            f"Merchant for recurring series {recurring_id} has no email address",
            recurring_id,
            team_id,
            user_message=f"Add an email address for \"{name}\" so deals can be sent.",
        )

    @classmethod
    def template_invalid(cls, recurring_id: str, reason: str, team_id: str):
        return cls(
            cls.TEMPLATE_INVALID,
            f"Recurring series {recurring_id} has an invalid template: {reason}",
            recurring_id,
            team_id,
            user_message=f"The deal template for this series is invalid: {reason}",
        )

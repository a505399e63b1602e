from __future__ import annotations


class WagerError(Exception):
    """Base class for every failure surfaced by the ticket core."""

    user_message: str = "Something went wrong while handling this ticket."

    def __init__(self, message: str | None = None, *, ticket_id: str | None = None):
        super().__init__(message or self.user_message)
        self.ticket_id = ticket_id


class InvalidTransition(WagerError):
    """The requested operation is not valid in the ticket's current state."""

    user_message = "This action is not available for the ticket right now."


class AlreadyAccepted(InvalidTransition):
    user_message = "This ticket has already been accepted."


class AlreadyClaimed(InvalidTransition):
    user_message = "This ticket has already been claimed by another staff member."


class ClaimedByOther(InvalidTransition):
    user_message = "Only the staff member who claimed this ticket can resolve it."


class CapacityExceeded(WagerError):
    user_message = "No room is available for a new ticket channel."


class AllCategoriesFull(CapacityExceeded):
    user_message = (
        "All ticket categories are full (50 channels each). "
        "Please ask a staff member to close old tickets."
    )


class ServerChannelLimit(CapacityExceeded):
    user_message = (
        "The server has reached the maximum of 500 channels. "
        "Please ask a staff member to delete unused channels."
    )


class CategoryNotConfigured(CapacityExceeded):
    user_message = "No ticket category is configured for this challenge type."


class OpenTicketLimitReached(CapacityExceeded):
    user_message = "A participant already has the maximum number of open wager tickets."

    def __init__(self, user_id: int, limit: int):
        super().__init__(
            f"<@{user_id}> has reached the maximum of **{limit}** open wager tickets."
        )
        self.user_id = user_id
        self.limit = limit


class NotFound(WagerError):
    user_message = "That ticket or channel no longer exists."


class TicketNotFound(NotFound):
    user_message = "Ticket not found."


class ExternalServiceUnavailable(WagerError):
    user_message = "The database is temporarily unavailable. Try again shortly."


class InvalidParticipants(WagerError, ValueError):
    user_message = "The selected participants are not valid for this challenge."


__all__ = [
    "AllCategoriesFull",
    "AlreadyAccepted",
    "AlreadyClaimed",
    "CapacityExceeded",
    "CategoryNotConfigured",
    "ClaimedByOther",
    "ExternalServiceUnavailable",
    "InvalidParticipants",
    "InvalidTransition",
    "NotFound",
    "OpenTicketLimitReached",
    "ServerChannelLimit",
    "TicketNotFound",
    "WagerError",
]

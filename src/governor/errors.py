"""
Governor error types.

Policy rejections are ordinary results, not exceptions. These classes cover
the failures around them: bad tool input, collaborator outages, and invalid
approval transitions.
"""


class GovernorError(Exception):
    """Base error for all Governor operations."""
    pass


class ConfigError(GovernorError):
    """Configuration is missing or invalid."""
    pass


# Storage errors
class StorageError(GovernorError):
    """The storage backend failed to read or write."""
    pass


class NotFoundError(StorageError):
    """A referenced record does not exist."""
    def __init__(self, kind: str, record_id: str):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} not found: {record_id}")


# Payment errors
class PaymentError(GovernorError):
    """Base error for card issuer failures."""
    pass


class CardIssuanceError(PaymentError):
    """The card issuer refused or failed to create a card."""
    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        if status_code is not None:
            message = f"Card issuance failed ({status_code}): {message}"
        super().__init__(message)


# Request errors
class ToolArgumentError(GovernorError):
    """Tool arguments are missing, unknown, or of the wrong type."""
    pass


class ApprovalError(GovernorError):
    """An approval cannot move to the requested state."""
    pass

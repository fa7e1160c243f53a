"""Error taxonomy for the campaign simulation core.

Invalid transitions and validation problems are raised before any state is
touched. Running short of money is not an error; see ``models.SpendResult``.
"""


class CampaignError(Exception):
    """Base exception for all campaign simulation errors."""


class InvalidStateTransition(CampaignError, RuntimeError):
    """Raised when an operation is not legal from the current state."""


class ValidationError(CampaignError, ValueError):
    """Raised for out-of-range amounts, unknown tiers or malformed enums."""


class RecordNotFound(CampaignError, LookupError):
    """Raised when a record does not exist or belongs to another player."""


class StaleRecordError(CampaignError, RuntimeError):
    """Raised when a concurrent writer updated a record first."""

    def __init__(self, record: str, expected_version: int) -> None:
        super().__init__(
            f"{record} changed since version {expected_version} was read"
        )
        self.record = record
        self.expected_version = expected_version


__all__ = [
    "CampaignError",
    "InvalidStateTransition",
    "ValidationError",
    "RecordNotFound",
    "StaleRecordError",
]

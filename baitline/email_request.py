"""Requests to send a single test e-mail through a sending profile."""

from __future__ import annotations

from dataclasses import dataclass, field
from queue import Queue

from .recipients import EMAIL_NOT_SPECIFIED, BaseRecipient, ValidationError

PREVIEW_PREFIX = "preview-"

FROM_ADDRESS_NOT_SPECIFIED = "No From Address specified"


@dataclass
class EmailRequest(BaseRecipient):
    """A test e-mail to one recipient.

    Sending is expected to be synchronous, so the outcome of each attempt is
    put on ``outcomes``: None for success, otherwise the error.
    """

    url: str = ""
    rid: str = ""
    from_address: str = ""
    smtp_from_address: str = ""
    template_id: int = 0
    page_id: int = 0
    user_id: int = 0
    id: int = 0
    outcomes: Queue = field(default_factory=Queue, repr=False, compare=False)

    def validate(self) -> None:
        """Raise ValidationError without a recipient or a sender address."""
        if not self.email:
            raise ValidationError(EMAIL_NOT_SPECIFIED)
        if not self.from_address and not self.smtp_from_address:
            raise ValidationError(FROM_ADDRESS_NOT_SPECIFIED)

    def backoff(self, reason: BaseException) -> None:
        """Report a temporary failure, which counts as final for a test e-mail."""
        self.outcomes.put(reason)

    def error(self, err: BaseException) -> None:
        """Report a failure."""
        self.outcomes.put(err)

    def success(self) -> None:
        """Report that the e-mail was sent."""
        self.outcomes.put(None)

    def assign_preview_id(self, rid: str) -> str:
        """Set the recipient id to the preview form of ``rid`` and return it."""
        self.rid = f"{PREVIEW_PREFIX}{rid}"
        return self.rid
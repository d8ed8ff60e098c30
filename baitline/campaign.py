"""Campaigns: validation, scheduling of recipients and completion."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from .recipients import Group, ValidationError, unique_recipients

RECIPIENT_PARAMETER = "rid"

CAMPAIGN_NAME_NOT_SPECIFIED = "Campaign name not specified"
GROUP_NOT_SPECIFIED = "No groups specified"
TEMPLATE_NOT_SPECIFIED = "No email template specified"
PAGE_NOT_SPECIFIED = "No landing page specified"
SMTP_NOT_SPECIFIED = "No sending profile specified"
INVALID_SEND_BY_DATE = 'The launch date must be before the "send emails by" date'

STATUS_SCHEDULED = "Scheduled"
STATUS_SENDING = "Sending"

CAMPAIGN_CREATED_EVENT = "Campaign Created"


class CampaignStatus(str, enum.Enum):
    """The life-cycle states of a campaign."""

    QUEUED = "Queued"
    IN_PROGRESS = "In progress"
    COMPLETE = "Completed"


def _utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


@dataclass
class Event:
    """Something that happened during a campaign."""

    campaign_id: int = 0
    email: str = ""
    time: datetime | None = None
    message: str = ""
    details: str = ""


@dataclass
class ScheduledResult:
    """One recipient of a campaign, with the time its e-mail is due."""

    email: str
    first_name: str
    last_name: str
    position: str
    send_date: datetime
    status: str
    processing: bool
    modified_date: datetime
    campaign_id: int = 0
    user_id: int = 0
    reported: bool = False


@dataclass
class Campaign:
    """A phishing-awareness campaign sent to one or more groups."""

    name: str = ""
    groups: list[Group] = field(default_factory=list)
    template_name: str = ""
    page_name: str = ""
    smtp_name: str = ""
    url: str = ""
    launch_date: datetime | None = None
    send_by_date: datetime | None = None
    created_date: datetime | None = None
    completed_date: datetime | None = None
    status: CampaignStatus | None = None
    id: int = 0
    user_id: int = 0
    results: list[ScheduledResult] = field(default_factory=list)
    events: list[Event] = field(default_factory=list)

    def validate(self) -> None:
        """Raise ValidationError for the first missing or inconsistent field."""
        if not self.name:
            raise ValidationError(CAMPAIGN_NAME_NOT_SPECIFIED)
        if not self.groups:
            raise ValidationError(GROUP_NOT_SPECIFIED)
        if not self.template_name:
            raise ValidationError(TEMPLATE_NOT_SPECIFIED)
        if not self.page_name:
            raise ValidationError(PAGE_NOT_SPECIFIED)
        if not self.smtp_name:
            raise ValidationError(SMTP_NOT_SPECIFIED)
        if (
            self.send_by_date is not None
            and self.launch_date is not None
            and _utc(self.send_by_date) < _utc(self.launch_date)
        ):
            raise ValidationError(INVALID_SEND_BY_DATE)

    def generate_send_date(self, idx: int, total_recipients: int) -> datetime | None:
        """Return when the idx-th of total_recipients e-mails is due.

        Without a send-by date every e-mail goes at the launch date; with one,
        the e-mails are spread evenly over whole minutes between the two.
        """
        if (
            self.send_by_date is None
            or self.launch_date is None
            or self.send_by_date == self.launch_date
        ):
            return self.launch_date
        total_minutes = (self.send_by_date - self.launch_date).total_seconds() / 60
        minutes_per_email = total_minutes / total_recipients
        offset = int(minutes_per_email * idx)
        return self.launch_date + timedelta(minutes=offset)

    def schedule(self, created: datetime | None = None) -> list[ScheduledResult]:
        """Validate the campaign and schedule one result per unique address.

        Sets the creation date, status and launch date, records the creation
        event and returns the results, which are also kept on the campaign.
        Results due at or before the creation time are marked as sending.
        """
        self.validate()
        created = _utc(created) if created is not None else datetime.now(timezone.utc)
        self.created_date = created
        self.completed_date = None
        self.status = CampaignStatus.QUEUED
        self.launch_date = created if self.launch_date is None else _utc(self.launch_date)
        if self.send_by_date is not None:
            self.send_by_date = _utc(self.send_by_date)
        if self.launch_date <= created:
            self.status = CampaignStatus.IN_PROGRESS

        # Duplicates count towards the spread, as the recipients are counted
        # before they are made unique.
        total_recipients = sum(len(group.targets) for group in self.groups)
        self.events.append(
            Event(campaign_id=self.id, time=created, message=CAMPAIGN_CREATED_EVENT)
        )

        results = []
        for index, target in enumerate(unique_recipients(self.groups)):
            send_date = self.generate_send_date(index, total_recipients)
            processing = send_date <= created
            results.append(
                ScheduledResult(
                    email=target.email,
                    first_name=target.first_name,
                    last_name=target.last_name,
                    position=target.position,
                    send_date=send_date,
                    status=STATUS_SENDING if processing else STATUS_SCHEDULED,
                    processing=processing,
                    modified_date=created,
                    campaign_id=self.id,
                    user_id=self.user_id,
                )
            )
        self.results = results
        return results

    def complete(self, now: datetime | None = None) -> bool:
        """Mark the campaign complete; an earlier completion date is kept.

        Returns True if the campaign was not already complete.
        """
        if self.status == CampaignStatus.COMPLETE:
            return False
        self.completed_date = _utc(now) if now is not None else datetime.now(timezone.utc)
        self.status = CampaignStatus.COMPLETE
        return True
"""Aggregate statistics and summaries of campaigns."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable

from .campaign import Campaign

EVENT_SENT = "Email Sent"
EVENT_OPENED = "Email Opened"
EVENT_CLICKED = "Clicked Link"
EVENT_DATA_SUBMIT = "Submitted Data"
STATUS_ERROR = "Error"


@dataclass
class CampaignStats:
    """Counts of how far recipients of a campaign got.

    The counts are cumulative: every submission implies a click, every click
    an open, and every open a sent e-mail.
    """

    total: int = 0
    sent: int = 0
    opened: int = 0
    clicked: int = 0
    submitted_data: int = 0
    email_reported: int = 0
    error: int = 0


@dataclass
class CampaignSummary:
    """The overview of one campaign, with statistics instead of results."""

    id: int
    name: str
    status: str
    created_date: datetime | None = None
    launch_date: datetime | None = None
    send_by_date: datetime | None = None
    completed_date: datetime | None = None
    stats: CampaignStats = field(default_factory=CampaignStats)


def compute_stats(results: Iterable[Any]) -> CampaignStats:
    """Count the results by status, with the cumulative totals filled in.

    Each result needs a ``status`` and may have a ``reported`` flag.
    """
    statuses: Counter[str] = Counter()
    total = 0
    reported = 0
    for result in results:
        total += 1
        statuses[result.status] += 1
        if getattr(result, "reported", False):
            reported += 1
    submitted = statuses[EVENT_DATA_SUBMIT]
    clicked = statuses[EVENT_CLICKED] + submitted
    opened = statuses[EVENT_OPENED] + clicked
    sent = statuses[EVENT_SENT] + opened
    return CampaignStats(
        total=total,
        sent=sent,
        opened=opened,
        clicked=clicked,
        submitted_data=submitted,
        email_reported=reported,
        error=statuses[STATUS_ERROR],
    )


def summarize(campaign: Campaign, results: Iterable[Any] | None = None) -> CampaignSummary:
    """Return the summary of a campaign, counting the given results.

    Without results, those kept on the campaign are counted.
    """
    if results is None:
        results = campaign.results
    status = campaign.status
    if status is None:
        status_text = ""
    else:
        status_text = getattr(status, "value", str(status))
    return CampaignSummary(
        id=campaign.id,
        name=campaign.name,
        status=status_text,
        created_date=campaign.created_date,
        launch_date=campaign.launch_date,
        send_by_date=campaign.send_by_date,
        completed_date=campaign.completed_date,
        stats=compute_stats(results),
    )
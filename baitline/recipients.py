"""Recipients, target groups and attachments."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from email.quoprimime import header_encode
from email.utils import parseaddr
from typing import Iterable, Iterator

EMAIL_NOT_SPECIFIED = "No email address specified"
GROUP_NAME_NOT_SPECIFIED = "Group name not specified"
NO_TARGETS_SPECIFIED = "No targets specified"


class ValidationError(ValueError):
    """Raised when user-supplied data is incomplete or malformed."""


@dataclass
class Attachment:
    """A file attached to an e-mail template, with base64-encoded content."""

    content: str = ""
    type: str = ""
    name: str = ""
    id: int = 0
    template_id: int = 0


def _is_printable_ascii(text: str) -> bool:
    return all(ch in " \t" or "!" <= ch <= "~" for ch in text)


def _format_name(name: str) -> str:
    if _is_printable_ascii(name):
        escaped = name.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return header_encode(name.encode("utf-8"), charset="utf-8")


def _check_address(address: str) -> None:
    _name, addr = parseaddr(address)
    local, at, domain = addr.rpartition("@")
    if not addr or not at or not local or not domain or any(c.isspace() for c in addr):
        raise ValidationError(f"invalid email address: {address!r}")


@dataclass
class BaseRecipient:
    """A single recipient: address, name and position."""

    email: str = ""
    first_name: str = ""
    last_name: str = ""
    position: str = ""

    def format_address(self) -> str:
        """Return the value for the To header.

        The display name is used only when both first and last names are set.
        """
        if self.first_name and self.last_name:
            name = _format_name(f"{self.first_name} {self.last_name}")
            return f"{name} <{self.email}>"
        return self.email


@dataclass
class Target(BaseRecipient):
    """A recipient stored as a member of one or more groups."""

    id: int = 0


@dataclass
class GroupSummary:
    """A group described by its number of targets instead of the targets."""

    id: int
    name: str
    modified_date: datetime | None
    num_targets: int


@dataclass
class Group:
    """A named list of targets owned by a user."""

    name: str = ""
    targets: list[Target] = field(default_factory=list)
    id: int = 0
    user_id: int = 0
    modified_date: datetime | None = None

    def validate(self) -> None:
        """Raise ValidationError unless the group has a name and valid targets."""
        if not self.name:
            raise ValidationError(GROUP_NAME_NOT_SPECIFIED)
        if not self.targets:
            raise ValidationError(NO_TARGETS_SPECIFIED)
        for target in self.targets:
            if not target.email:
                raise ValidationError(EMAIL_NOT_SPECIFIED)
            _check_address(target.email)

    def summary(self) -> GroupSummary:
        """Return the summary of this group."""
        return GroupSummary(
            id=self.id,
            name=self.name,
            modified_date=self.modified_date,
            num_targets=len(self.targets),
        )


def merge_targets(existing: Iterable[Target], updated: Iterable[Target]) -> list[Target]:
    """Return the new membership of a group being updated.

    Targets whose address is already in the group keep their id and take the
    new name and position; new addresses come in with no id; addresses no
    longer listed are dropped. The order of ``updated`` is kept.
    """
    known = {target.email: target.id for target in existing}
    merged = []
    for target in updated:
        merged.append(
            Target(
                email=target.email,
                first_name=target.first_name,
                last_name=target.last_name,
                position=target.position,
                id=known.get(target.email, 0),
            )
        )
    return merged


def unique_recipients(groups: Iterable[Group]) -> Iterator[Target]:
    """Yield the targets of all groups in order, each address only once."""
    seen: set[str] = set()
    for group in groups:
        for target in group.targets:
            if target.email in seen:
                continue
            seen.add(target.email)
            yield target
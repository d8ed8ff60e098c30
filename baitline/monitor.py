"""Watching users' IMAP folders for reported campaign e-mails."""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from email.message import EmailMessage, Message
from email.utils import parseaddr
from typing import Any, Callable, Iterable

from .imap import Mailbox, ReportedEmail, parse_message

logger = logging.getLogger(__name__)

# Matches ?rid=AbC1234, also with a quoted-printable "3D" left in front of the
# id and with URL-encoded "?" and "=" as rewritten by some link scanners.
_RID_PATTERN = re.compile(r"((\?|%3F)rid(=|%3D)(3D)?([A-Za-z0-9]{7}))")

USER_POLL_INTERVAL = 10.0


@dataclass
class MonitorSettings:
    """The IMAP settings of one user, and what to do with reported e-mails."""

    user_id: int = 0
    host: str = ""
    port: int = 993
    username: str = ""
    password: str = ""
    tls: bool = True
    ignore_cert_errors: bool = False
    folder: str = "INBOX"
    enabled: bool = False
    imap_freq: int = 60
    restrict_domain: str = ""
    delete_reported_campaign_email: bool = False


def _mailbox_for(settings: MonitorSettings) -> Mailbox:
    return Mailbox(
        host=settings.host,
        user=settings.username,
        password=settings.password,
        port=settings.port,
        tls=settings.tls,
        ignore_cert_errors=settings.ignore_cert_errors,
        folder=settings.folder,
    )


def find_rids(text: str) -> list[str]:
    """Return the recipient ids found in the text, each once, in order."""
    rids: dict[str, None] = {}
    for match in _RID_PATTERN.finditer(text):
        rids.setdefault(match.group(5))
    return list(rids)


def _extension(filename: str) -> str:
    dot = filename.rfind(".")
    if dot < 0 or "/" in filename[dot:]:
        return ""
    return filename[dot:]


def _attached_message(part: EmailMessage) -> ReportedEmail:
    payload = part.get_payload()
    if isinstance(payload, list) and payload and isinstance(payload[0], Message):
        inner = payload[0]
        if not isinstance(inner, EmailMessage):
            inner = parse_message(inner.as_bytes())
        return ReportedEmail(seq_num=0, message=inner)
    raw = part.get_payload(decode=True)
    if raw is None:
        raise ValueError("attachment holds no message")
    return ReportedEmail(seq_num=0, message=parse_message(raw))


def match_email(message: ReportedEmail | EmailMessage) -> list[str]:
    """Return the recipient ids in the body and in attached e-mails.

    The plain-text and HTML bodies are searched, then every attachment that
    is an e-mail (message/rfc822, or a file ending in .eml).
    """
    report = (
        message if isinstance(message, ReportedEmail) else ReportedEmail(seq_num=0, message=message)
    )
    rids = dict.fromkeys(find_rids(report.text + report.html))
    for part in report.attachments:
        filename = part.get_filename() or ""
        if part.get_content_type() != "message/rfc822" and _extension(filename) != ".eml":
            continue
        inner = _attached_message(part)
        rids.update(dict.fromkeys(find_rids(inner.text + inner.html)))
    return list(rids)


def sender_domain(address: str) -> str:
    """Return the part after the last "@" of the sender's address."""
    _name, addr = parseaddr(address)
    return (addr or address).rpartition("@")[2]


def check_for_new_emails(
    settings: MonitorSettings, mailbox: Any, report: Callable[[str], Any]
) -> list[str]:
    """Read unread e-mails and report every campaign id found in them.

    ``report`` is called with each id; it raises LookupError when the id is
    unknown, in which case the e-mail is marked unread again to be retried.
    Other errors from ``report`` are logged. E-mails whose ids were reported
    are deleted when the settings ask for it. Returns the reported ids.
    """
    try:
        messages = mailbox.get_unread()
    except Exception as exc:
        logger.error("%s", exc)
        return []
    if not messages:
        logger.debug("No new emails for %s", settings.username)
        return []

    logger.debug("%d new emails for %s", len(messages), settings.username)
    reported: list[str] = []
    reporting_failed: list[int] = []
    to_delete: list[int] = []
    for message in messages:
        if settings.restrict_domain:
            domain = sender_domain(message.sender)
            if domain != settings.restrict_domain:
                logger.debug("Ignoring email as not from company domain: %s", domain)
                continue
        try:
            rids = match_email(message)
        except Exception as exc:
            logger.error(
                "Error searching email for rids from user '%s': %s", message.sender, exc
            )
            continue
        if not rids:
            logger.info(
                "User '%s' reported email with subject '%s'. This is not a campaign email; "
                "you should investigate it.",
                message.sender,
                message.subject,
            )
        for rid in rids:
            logger.info("User '%s' reported email with rid %s", message.sender, rid)
            try:
                report(rid)
            except LookupError as exc:
                logger.error("Error reporting email with rid %s: %s", rid, exc)
                reporting_failed.append(message.seq_num)
                continue
            except Exception as exc:
                logger.error("Error updating email with rid %s: %s", rid, exc)
                continue
            reported.append(rid)
            if settings.delete_reported_campaign_email:
                to_delete.append(message.seq_num)

    if reporting_failed:
        logger.debug("Marking %d emails as unread as failed to report", len(reporting_failed))
        try:
            mailbox.mark_as_unread(reporting_failed)
        except Exception as exc:
            logger.error("Unable to mark emails as unread: %s", exc)
    if to_delete:
        logger.debug("Deleting %d campaign emails", len(to_delete))
        try:
            mailbox.delete_emails(to_delete)
        except Exception as exc:
            logger.error("Failed to delete emails: %s", exc)
    return reported


class Monitor:
    """Polls the IMAP folder of every user that has enabled it.

    ``list_users`` returns the ids of all users. ``get_settings`` returns a
    user's MonitorSettings or None, and raises LookupError once the user no
    longer exists. ``report`` is handed every recipient id found, and
    ``mailbox_factory`` makes the mailbox for a user's settings.
    """

    def __init__(
        self,
        list_users: Callable[[], Iterable[int]],
        get_settings: Callable[[int], MonitorSettings | None],
        report: Callable[[str], Any],
        mailbox_factory: Callable[[MonitorSettings], Any] = _mailbox_for,
    ) -> None:
        self._list_users = list_users
        self._get_settings = get_settings
        self._report = report
        self._mailbox_factory = mailbox_factory
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        """Whether any monitoring thread is alive."""
        with self._lock:
            return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        """Start watching in background threads."""
        if self.running:
            return
        logger.info("Starting IMAP monitor manager")
        self._stop.clear()
        with self._lock:
            self._threads = []
        self._spawn(self._manage, "imap-monitor-manager")

    def shutdown(self) -> None:
        """Stop watching and wait for the threads to finish."""
        logger.info("Shutting down IMAP monitor manager")
        self._stop.set()
        with self._lock:
            threads = list(self._threads)
        for thread in threads:
            thread.join()

    def _spawn(self, target: Callable[..., None], name: str, *args: Any) -> None:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        with self._lock:
            self._threads.append(thread)
        thread.start()

    def _manage(self) -> None:
        watched: set[int] = set()
        while not self._stop.is_set():
            try:
                users = list(self._list_users())
            except Exception as exc:
                logger.error("%s", exc)
            else:
                for uid in users:
                    if uid in watched:
                        continue
                    logger.info("Starting new IMAP monitor for user %s", uid)
                    watched.add(uid)
                    self._spawn(self._watch, f"imap-monitor-{uid}", uid)
            if self._stop.wait(USER_POLL_INTERVAL):
                return

    def _watch(self, uid: int) -> None:
        while not self._stop.is_set():
            try:
                settings = self._get_settings(uid)
            except LookupError:
                logger.info(
                    "User %s seems to have been deleted. Stopping IMAP monitor for this user.",
                    uid,
                )
                return
            except Exception as exc:
                logger.error("%s", exc)
                settings = None
            if settings is not None and settings.enabled:
                logger.debug(
                    "Checking IMAP for user %s: %s -> %s", uid, settings.username, settings.host
                )
                try:
                    mailbox = self._mailbox_factory(settings)
                except Exception as exc:
                    logger.error("%s", exc)
                else:
                    check_for_new_emails(settings, mailbox, self._report)
                if self._stop.wait(max(0.0, settings.imap_freq - USER_POLL_INTERVAL)):
                    return
            if self._stop.wait(USER_POLL_INTERVAL):
                return
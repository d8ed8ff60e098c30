"""Reading reported e-mails from an IMAP mailbox."""

from __future__ import annotations

import contextlib
import imaplib
import logging
import socket
import ssl
from contextlib import contextmanager
from dataclasses import dataclass, field
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from typing import Any, Callable, Iterable, Iterator

from .dialer import DEFAULT_DIALER, DIAL_TIMEOUT, RestrictedDialer

logger = logging.getLogger(__name__)

SEEN_FLAG = r"\Seen"
DELETED_FLAG = r"\Deleted"


class _RestrictedIMAP4(imaplib.IMAP4):
    """An IMAP client whose connection goes through a restricted dialer."""

    def __init__(self, host: str, port: int, dialer: RestrictedDialer) -> None:
        self._dialer = dialer
        super().__init__(host, port)

    def _create_socket(self, timeout: float | None) -> socket.socket:
        return self._dialer.create_connection(
            (self.host, self.port), DIAL_TIMEOUT if timeout is None else timeout
        )


class _RestrictedIMAP4SSL(imaplib.IMAP4_SSL):
    """A TLS IMAP client whose connection goes through a restricted dialer."""

    def __init__(
        self, host: str, port: int, dialer: RestrictedDialer, ssl_context: ssl.SSLContext
    ) -> None:
        self._dialer = dialer
        super().__init__(host, port, ssl_context=ssl_context)

    def _create_socket(self, timeout: float | None) -> socket.socket:
        sock = self._dialer.create_connection(
            (self.host, self.port), DIAL_TIMEOUT if timeout is None else timeout
        )
        return self.ssl_context.wrap_socket(sock, server_hostname=self.host)


def parse_message(raw: bytes | str) -> EmailMessage:
    """Parse a raw message, dropping carriage returns first."""
    if isinstance(raw, str):
        raw = raw.encode("utf-8", "surrogateescape")
    return BytesParser(policy=policy.default).parsebytes(raw.replace(b"\r", b""))


def _decode_text(part: EmailMessage) -> str:
    try:
        content = part.get_content()
    except (LookupError, KeyError, ValueError):
        payload = part.get_payload(decode=True) or b""
        return payload.decode("utf-8", "replace")
    if isinstance(content, bytes):
        return content.decode("utf-8", "replace")
    return str(content)


def _collect(
    part: EmailMessage, text: list[str], html: list[str], attachments: list[EmailMessage]
) -> None:
    content_type = part.get_content_type()
    if part.get_content_disposition() == "attachment" or content_type == "message/rfc822":
        attachments.append(part)
        return
    if part.is_multipart():
        for sub in part.iter_parts():
            _collect(sub, text, html, attachments)
        return
    if part.get_filename():
        attachments.append(part)
    elif content_type == "text/plain":
        text.append(_decode_text(part))
    elif content_type == "text/html":
        html.append(_decode_text(part))


@dataclass
class ReportedEmail:
    """A message read from the mailbox together with its sequence number."""

    seq_num: int
    message: EmailMessage

    def _parts(self) -> tuple[str, str, list[EmailMessage]]:
        text: list[str] = []
        html: list[str] = []
        attachments: list[EmailMessage] = []
        _collect(self.message, text, html, attachments)
        return "".join(text), "".join(html), attachments

    @property
    def sender(self) -> str:
        """The From header."""
        return str(self.message.get("From", ""))

    @property
    def subject(self) -> str:
        """The Subject header."""
        return str(self.message.get("Subject", ""))

    @property
    def text(self) -> str:
        """The plain-text body."""
        return self._parts()[0]

    @property
    def html(self) -> str:
        """The HTML body."""
        return self._parts()[1]

    @property
    def attachments(self) -> list[EmailMessage]:
        """The attached parts, including attached messages."""
        return self._parts()[2]


def _quote_mailbox(name: str) -> str:
    if name.startswith('"') or not any(c in name for c in ' "\\'):
        return name
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _message_set(seqs: Iterable[int]) -> str:
    return ",".join(str(int(seq)) for seq in seqs)


def _fetched(data: Iterable[Any]) -> Iterator[tuple[int, bytes]]:
    for item in data:
        if not isinstance(item, tuple) or len(item) < 2:
            continue
        header = item[0].decode("ascii", "replace") if isinstance(item[0], bytes) else str(item[0])
        seq_text = header.split(None, 1)[0] if header.strip() else ""
        if not seq_text.isdigit():
            continue
        yield int(seq_text), item[1]


@dataclass
class Mailbox:
    """The credentials and location of an IMAP folder to read reports from.

    ``client_factory``, when given, is called with the mailbox to make the
    unconnected client instead of opening a connection through the dialer.
    """

    host: str
    user: str
    password: str
    port: int = 993
    tls: bool = True
    ignore_cert_errors: bool = False
    folder: str = "INBOX"
    read_only: bool = False
    dialer: RestrictedDialer = field(default=DEFAULT_DIALER, repr=False)
    client_factory: Callable[[Mailbox], Any] | None = field(default=None, repr=False)

    def _open(self) -> Any:
        if self.client_factory is not None:
            return self.client_factory(self)
        if self.tls:
            context = ssl.create_default_context()
            if self.ignore_cert_errors:
                context.check_hostname = False
                context.verify_mode = ssl.CERT_NONE
            return _RestrictedIMAP4SSL(self.host, self.port, self.dialer, context)
        return _RestrictedIMAP4(self.host, self.port, self.dialer)

    def _connect(self) -> Any:
        client = self._open()
        try:
            client.login(self.user, self.password)
            status, data = client.select(_quote_mailbox(self.folder), readonly=self.read_only)
            if status != "OK":
                raise imaplib.IMAP4.error(f"cannot select folder {self.folder!r}: {data!r}")
        except BaseException:
            with contextlib.suppress(Exception):
                client.logout()
            raise
        return client

    @contextmanager
    def _session(self) -> Iterator[Any]:
        client = self._connect()
        try:
            yield client
        finally:
            with contextlib.suppress(Exception):
                client.logout()

    def get_unread(self) -> list[ReportedEmail]:
        """Return the unread messages of the folder; fetching marks them read."""
        try:
            client = self._connect()
        except Exception as exc:
            raise ConnectionError(f"failed to create IMAP connection: {exc}") from exc
        try:
            status, data = client.search(None, "UNSEEN")
            if status != "OK":
                raise imaplib.IMAP4.error(f"search failed: {data!r}")
            seqs = data[0].split() if data and data[0] else []
            if not seqs:
                return []
            message_set = ",".join(
                s.decode("ascii") if isinstance(s, bytes) else str(s) for s in seqs
            )
            status, fetched = client.fetch(message_set, "(BODY[])")
            if status != "OK":
                logger.error("Error fetching emails: %r", fetched)
                return []
            return [
                ReportedEmail(seq_num=seq, message=parse_message(raw))
                for seq, raw in _fetched(fetched)
            ]
        finally:
            with contextlib.suppress(Exception):
                client.logout()

    def _store(self, seqs: Iterable[int], operation: str, flag: str) -> None:
        message_set = _message_set(seqs)
        if not message_set:
            return
        with self._session() as client:
            status, data = client.store(message_set, operation, f"({flag})")
            if status != "OK":
                raise imaplib.IMAP4.error(f"store failed: {data!r}")

    def mark_as_unread(self, seqs: Iterable[int]) -> None:
        """Clear the seen flag on the given messages."""
        self._store(seqs, "-FLAGS.SILENT", SEEN_FLAG)

    def delete_emails(self, seqs: Iterable[int]) -> None:
        """Flag the given messages as deleted."""
        self._store(seqs, "+FLAGS.SILENT", DELETED_FLAG)
"""Delivery of batches of mail over a shared SMTP connection."""

from __future__ import annotations

import contextlib
import logging
import smtplib
import threading
from email.message import EmailMessage
from email.utils import getaddresses, parseaddr
from queue import Empty, Queue
from typing import Iterable, Protocol, Sequence

logger = logging.getLogger(__name__)

MAX_RECONNECT_ATTEMPTS = 10

_POLL_INTERVAL = 0.1


class MaxConnectAttemptsError(Exception):
    """Raised when a server could not be reached within the allowed attempts."""

    def __init__(self, underlying: BaseException | None = None) -> None:
        self.underlying = underlying
        message = "Max connection attempts exceeded"
        if underlying is not None:
            message = f"{message} - {underlying}"
        super().__init__(message)


class SMTPResponseError(Exception):
    """An error reply from an SMTP server, carrying its numeric code."""

    def __init__(self, code: int, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(f"{code:03d} {message}")


class _Sender(Protocol):
    def send(self, from_addr: str, to: list[str], message: EmailMessage) -> None: ...

    def close(self) -> None: ...

    def reset(self) -> None: ...


class _Dialer(Protocol):
    def dial(self) -> _Sender: ...


class _Mail(Protocol):
    def backoff(self, reason: BaseException) -> None: ...

    def error(self, err: BaseException) -> None: ...

    def success(self) -> None: ...

    def generate(self, message: EmailMessage) -> None: ...

    def get_dialer(self) -> _Dialer: ...


def error_mail(err: BaseException, mails: Iterable[_Mail]) -> None:
    """Mark every mail as failed with the given error."""
    for mail in mails:
        mail.error(err)


def dial_host(dialer: _Dialer, stop_event: threading.Event | None = None) -> _Sender | None:
    """Connect through the dialer, retrying up to MAX_RECONNECT_ATTEMPTS times.

    Returns None if the stop event is set before a connection is made and
    raises MaxConnectAttemptsError once the attempts are used up.
    """
    attempts = 0
    while True:
        if stop_event is not None and stop_event.is_set():
            return None
        try:
            return dialer.dial()
        except Exception as exc:
            attempts += 1
            if attempts >= MAX_RECONNECT_ATTEMPTS:
                raise MaxConnectAttemptsError(exc) from exc


def _response_code(exc: BaseException) -> int | None:
    if isinstance(exc, SMTPResponseError):
        return exc.code
    if isinstance(exc, smtplib.SMTPResponseException):
        return exc.smtp_code
    return None


def _deliver(sender: _Sender, message: EmailMessage) -> None:
    from_header = message.get("Sender") or message.get("From")
    if not from_header:
        raise ValueError('invalid message, "From" field is absent')
    _name, from_addr = parseaddr(str(from_header))
    fields = [str(v) for key in ("To", "Cc", "Bcc") for v in message.get_all(key, [])]
    recipients = [addr for _name, addr in getaddresses(fields) if addr]
    if "Bcc" in message:
        del message["Bcc"]
    sender.send(from_addr, recipients, message)


def _close_quietly(sender: _Sender) -> None:
    with contextlib.suppress(Exception):
        sender.close()


def send_mail(
    dialer: _Dialer, mails: Sequence[_Mail], stop_event: threading.Event | None = None
) -> None:
    """Send each mail over one connection, handling server errors per mail.

    Temporary (4xx) replies back the mail off, permanent (5xx) and other
    replies fail it; both reset the connection. Any other error is taken as
    a dropped connection: the dialer reconnects and the mail is backed off,
    or, if reconnecting fails, the remaining mails are failed. Mails left
    when the stop event is set are not touched.
    """
    mails = list(mails)
    try:
        sender = dial_host(dialer, stop_event)
    except MaxConnectAttemptsError as exc:
        logger.warning("%s", exc)
        error_mail(exc, mails)
        return
    if sender is None:
        return
    try:
        for index, mail in enumerate(mails):
            if stop_event is not None and stop_event.is_set():
                return
            message = EmailMessage()
            try:
                mail.generate(message)
            except Exception as exc:
                logger.warning("%s", exc)
                mail.error(exc)
                continue
            recipient = str(message.get("To", ""))
            try:
                _deliver(sender, message)
            except Exception as exc:
                code = _response_code(exc)
                if code is None:
                    logger.warning("%s", exc, extra={"fields": {"email": recipient}})
                    _close_quietly(sender)
                    sender = None
                    try:
                        sender = dial_host(dialer, stop_event)
                    except MaxConnectAttemptsError as dial_exc:
                        error_mail(dial_exc, mails[index:])
                        return
                    mail.backoff(exc)
                    if sender is None:
                        return
                    continue
                if 400 <= code <= 499:
                    logger.warning("%s", exc, extra={"fields": {"code": code, "email": recipient}})
                    mail.backoff(exc)
                elif 500 <= code <= 599:
                    logger.warning("%s", exc, extra={"fields": {"code": code, "email": recipient}})
                    mail.error(exc)
                else:
                    logger.warning(
                        "%s", exc, extra={"fields": {"code": "unknown", "email": recipient}}
                    )
                    mail.error(exc)
                sender.reset()
                continue
            logger.info("Email sent", extra={"fields": {"email": recipient}})
            mail.success()
    finally:
        if sender is not None:
            sender.close()


class MailWorker:
    """Receives batches of mail and sends each batch in its own thread.

    Every mail in a batch is expected to go through the same server, the
    one given by the first mail's dialer.
    """

    def __init__(self) -> None:
        self._pending: Queue[list[_Mail]] = Queue()

    def start(self, stop_event: threading.Event) -> None:
        """Process queued batches until the stop event is set."""
        while not stop_event.is_set():
            try:
                mails = self._pending.get(timeout=_POLL_INTERVAL)
            except Empty:
                continue
            if not mails:
                continue
            threading.Thread(
                target=self._process, args=(mails, stop_event), name="mail-batch", daemon=True
            ).start()

    def queue(self, mails: Iterable[_Mail]) -> None:
        """Hand a batch of mail to the worker."""
        self._pending.put(list(mails))

    @staticmethod
    def _process(mails: list[_Mail], stop_event: threading.Event) -> None:
        try:
            dialer = mails[0].get_dialer()
        except Exception as exc:
            error_mail(exc, mails)
            return
        send_mail(dialer, mails, stop_event)
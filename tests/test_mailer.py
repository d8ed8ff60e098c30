import smtplib
import threading

import pytest

from baitline import mailer
from baitline.mailer import (
    MailWorker,
    MaxConnectAttemptsError,
    SMTPResponseError,
    dial_host,
    error_mail,
    send_mail,
)


class HostUnreachable(OSError):
    pass


class MockSender:
    def __init__(self, fail_first=None):
        self.fail_first = fail_first
        self.attempts = []
        self.delivered = []
        self.reset_count = 0
        self.close_count = 0

    def send(self, from_addr, to, message):
        self.attempts.append((from_addr, list(to), message))
        if self.fail_first is not None and len(self.attempts) == 1:
            raise self.fail_first
        self.delivered.append((from_addr, list(to), message.get_content()))

    def reset(self):
        self.reset_count += 1

    def close(self):
        self.close_count += 1


class MockDialer:
    def __init__(self, sender=None, error=None, fail_after=None):
        self.sender = sender
        self.error = error
        self.fail_after = fail_after
        self.dial_count = 0

    def dial(self):
        self.dial_count += 1
        if self.error is not None:
            raise self.error
        if self.fail_after is not None and self.dial_count > self.fail_after:
            raise HostUnreachable("host unreachable")
        return self.sender if self.sender is not None else MockSender()


class MockMail:
    def __init__(self, from_addr, to, body, dialer=None):
        self.from_addr = from_addr
        self.to = to
        self.body = body
        self.dialer = dialer
        self.backoff_count = 0
        self.err = None
        self.succeeded = False
        self.finished = threading.Event()

    def get_dialer(self):
        if isinstance(self.dialer, Exception):
            raise self.dialer
        return self.dialer if self.dialer is not None else MockDialer()

    def backoff(self, reason):
        self.backoff_count += 1
        self.err = reason

    def error(self, err):
        self.err = err
        self.finished.set()

    def success(self):
        self.succeeded = True
        self.finished.set()

    def generate(self, message):
        message["From"] = self.from_addr
        message["To"] = ", ".join(self.to)
        message.set_content(self.body, subtype="html")


class BrokenMail(MockMail):
    def generate(self, message):
        raise ValueError("template failed")


def generate_messages(dialer):
    to = ["to@example.com"]
    first = MockMail("first@example.com", to, "First email", dialer=dialer)
    second = MockMail("second@example.com", to, "Second email")
    return [first, second]


def test_dial_host_gives_up_after_max_attempts():
    unreachable = HostUnreachable("host unreachable")
    dialer = MockDialer(error=unreachable)
    with pytest.raises(MaxConnectAttemptsError) as info:
        dial_host(dialer)
    assert info.value.underlying is unreachable
    assert dialer.dial_count == mailer.MAX_RECONNECT_ATTEMPTS


def test_dial_host_succeeds():
    sender = MockSender()
    dialer = MockDialer(sender=sender)
    assert dial_host(dialer) is sender
    assert dialer.dial_count == 1


def test_dial_host_returns_none_when_stopped():
    stop = threading.Event()
    stop.set()
    dialer = MockDialer()
    assert dial_host(dialer, stop) is None
    assert dialer.dial_count == 0


def test_max_connect_attempts_message():
    err = MaxConnectAttemptsError(HostUnreachable("host unreachable"))
    assert str(err) == "Max connection attempts exceeded - host unreachable"
    assert str(MaxConnectAttemptsError()) == "Max connection attempts exceeded"


def test_smtp_response_error_message():
    assert str(SMTPResponseError(421, "Service not available")) == "421 Service not available"


def test_error_mail_marks_all():
    mails = generate_messages(MockDialer())
    err = RuntimeError("boom")
    error_mail(err, mails)
    assert all(m.err is err and m.finished.is_set() for m in mails)


def test_mail_worker_start():
    stop = threading.Event()
    worker = MailWorker()
    thread = threading.Thread(target=worker.start, args=(stop,), daemon=True)
    thread.start()
    try:
        sender = MockSender()
        dialer = MockDialer(sender=sender)
        messages = generate_messages(dialer)
        worker.queue(messages)
        for message in messages:
            assert message.finished.wait(5)
    finally:
        stop.set()
        thread.join(5)
    assert [d[0] for d in sender.delivered] == ["first@example.com", "second@example.com"]
    assert sender.delivered[0][1] == ["to@example.com"]
    assert sender.delivered[0][2].strip() == "First email"
    assert sender.close_count == 1
    assert all(m.succeeded for m in messages)


def test_mail_worker_dialer_failure_errors_batch():
    stop = threading.Event()
    worker = MailWorker()
    thread = threading.Thread(target=worker.start, args=(stop,), daemon=True)
    thread.start()
    failure = RuntimeError("no sending profile")
    try:
        messages = generate_messages(failure)
        worker.queue(messages)
        for message in messages:
            assert message.finished.wait(5)
    finally:
        stop.set()
        thread.join(5)
    assert [m.err for m in messages] == [failure, failure]


def test_backoff():
    expected = SMTPResponseError(400, "Temporary error")
    sender = MockSender(fail_first=expected)
    dialer = MockDialer(sender=sender)
    messages = generate_messages(dialer)
    send_mail(dialer, messages)
    assert [d[0] for d in sender.delivered] == ["second@example.com"]
    assert messages[0].backoff_count == 1
    assert messages[0].err is expected
    assert not messages[0].finished.is_set()
    assert sender.reset_count == 1
    assert messages[1].succeeded


def test_backoff_with_smtplib_exception():
    expected = smtplib.SMTPResponseException(451, b"try later")
    sender = MockSender(fail_first=expected)
    dialer = MockDialer(sender=sender)
    messages = generate_messages(dialer)
    send_mail(dialer, messages)
    assert messages[0].backoff_count == 1
    assert sender.reset_count == 1


def test_perm_error():
    expected = SMTPResponseError(500, "Permanent error")
    sender = MockSender(fail_first=expected)
    dialer = MockDialer(sender=sender)
    messages = generate_messages(dialer)
    send_mail(dialer, messages)
    assert [d[0] for d in sender.delivered] == ["second@example.com"]
    assert messages[0].backoff_count == 0
    assert sender.reset_count == 1
    assert messages[0].err is expected


def test_unclassified_code_errors_out():
    expected = SMTPResponseError(600, "Odd reply")
    sender = MockSender(fail_first=expected)
    dialer = MockDialer(sender=sender)
    messages = generate_messages(dialer)
    send_mail(dialer, messages)
    assert messages[0].backoff_count == 0
    assert messages[0].err is expected
    assert sender.reset_count == 1


def test_unknown_error_reconnects():
    expected = RuntimeError("Unexpected error")
    sender = MockSender(fail_first=expected)
    dialer = MockDialer(sender=sender)
    messages = generate_messages(dialer)
    send_mail(dialer, messages)
    assert [d[0] for d in sender.delivered] == ["second@example.com"]
    assert messages[0].backoff_count == 1
    assert dialer.dial_count == 2
    assert messages[0].err is expected


def test_unknown_error_failed_reconnect_errors_remaining():
    sender = MockSender(fail_first=RuntimeError("connection dropped"))
    dialer = MockDialer(sender=sender, fail_after=1)
    messages = generate_messages(dialer)
    send_mail(dialer, messages)
    assert all(isinstance(m.err, MaxConnectAttemptsError) for m in messages)
    assert sender.delivered == []
    assert dialer.dial_count == 1 + mailer.MAX_RECONNECT_ATTEMPTS


def test_generate_failure_errors_only_that_mail():
    sender = MockSender()
    dialer = MockDialer(sender=sender)
    broken = BrokenMail("first@example.com", ["to@example.com"], "ignored")
    good = MockMail("second@example.com", ["to@example.com"], "Second email")
    send_mail(dialer, [broken, good])
    assert str(broken.err) == "template failed"
    assert broken.finished.is_set() is True
    assert broken.succeeded is False
    assert good.succeeded is True
    assert good.err is None
    assert [d[0] for d in sender.delivered] == ["second@example.com"]
    assert sender.close_count == 1


def test_unreachable_host_errors_all():
    unreachable = HostUnreachable("host unreachable")
    dialer = MockDialer(error=unreachable)
    messages = generate_messages(dialer)
    send_mail(dialer, messages)
    assert [str(m.err) for m in messages] == [
        "Max connection attempts exceeded - host unreachable",
        "Max connection attempts exceeded - host unreachable",
    ]
    assert all(m.err.underlying is unreachable for m in messages)
    assert dialer.dial_count == mailer.MAX_RECONNECT_ATTEMPTS


def test_send_mail_stopped_leaves_mail_untouched():
    stop = threading.Event()
    stop.set()
    dialer = MockDialer()
    messages = generate_messages(dialer)
    send_mail(dialer, messages, stop)
    assert [m.err for m in messages] == [None, None]
    assert not any(m.finished.is_set() for m in messages)
import imaplib
from email.message import EmailMessage
from email.policy import SMTP

import pytest

from baitline.imap import Mailbox, ReportedEmail, parse_message

PASSWORD = "password"


def build_message(text="Plain body", html="<p>HTML body</p>", attach_eml=False):
    msg = EmailMessage()
    msg["From"] = "Reporter <reporter@example.com>"
    msg["To"] = "abuse@example.com"
    msg["Subject"] = "Suspicious"
    msg.set_content(text)
    msg.add_alternative(html, subtype="html")
    if attach_eml:
        inner = EmailMessage()
        inner["From"] = "sender@example.com"
        inner["Subject"] = "Inner"
        inner.set_content("inner body")
        msg.add_attachment(inner, filename="forwarded.eml")
    return msg.as_bytes(policy=SMTP)


class FakeClient:
    def __init__(self, messages=None, select_status="OK", fail_login=False, fetch_status="OK"):
        self.messages = messages or {}
        self.select_status = select_status
        self.fail_login = fail_login
        self.fetch_status = fetch_status
        self.calls = []

    def login(self, user, password):
        self.calls.append(("login", user, password))
        if self.fail_login:
            raise imaplib.IMAP4.error("authentication failed")
        return "OK", [b"logged in"]

    def select(self, mailbox="INBOX", readonly=False):
        self.calls.append(("select", mailbox, readonly))
        return self.select_status, [b"2"]

    def search(self, charset, *criteria):
        self.calls.append(("search",) + criteria)
        return "OK", [b" ".join(str(s).encode() for s in sorted(self.messages))]

    def fetch(self, message_set, parts):
        self.calls.append(("fetch", message_set, parts))
        if self.fetch_status != "OK":
            return self.fetch_status, [b"failure"]
        data = []
        for seq in (int(s) for s in message_set.split(",")):
            raw = self.messages[seq]
            data.append((f"{seq} (BODY[] {{{len(raw)}}}".encode(), raw))
            data.append(b")")
        return "OK", data

    def store(self, message_set, command, flags):
        self.calls.append(("store", message_set, command, flags))
        return "OK", [b"stored"]

    def logout(self):
        self.calls.append(("logout",))
        return "BYE", [b"bye"]


def mailbox_for(client, **kwargs):
    password = PASSWORD
    return Mailbox(
        host="imap.example.com",
        user="user@example.com",
        password=password,
        client_factory=lambda _mailbox: client,
        **kwargs,
    )


def test_parse_message_strips_carriage_returns():
    raw = build_message()
    assert b"\r\n" in raw
    message = parse_message(raw)
    assert "\r" not in message.as_string()
    assert message["Subject"] == "Suspicious"


def test_parse_message_accepts_text():
    message = parse_message("Subject: Hi\r\nFrom: a@example.com\r\n\r\nbody\r\n")
    assert message["From"] == "a@example.com"
    assert message.get_content() == "body\n"


def test_reported_email_parts():
    email = ReportedEmail(seq_num=4, message=parse_message(build_message(attach_eml=True)))
    assert email.sender == "Reporter <reporter@example.com>"
    assert email.subject == "Suspicious"
    assert "Plain body" in email.text
    assert "<p>HTML body</p>" in email.html
    assert "HTML body" not in email.text
    attachments = email.attachments
    assert len(attachments) == 1
    assert attachments[0].get_content_type() == "message/rfc822"
    assert attachments[0].get_filename() == "forwarded.eml"


def test_plain_message_has_no_attachments():
    email = ReportedEmail(seq_num=1, message=parse_message(b"Subject: x\n\nhello\n"))
    assert email.attachments == []
    assert email.html == ""
    assert email.text == "hello\n"


def test_get_unread_returns_messages_with_sequence_numbers():
    client = FakeClient(messages={1: build_message(text="first"), 3: build_message(text="third")})
    emails = mailbox_for(client).get_unread()
    assert [e.seq_num for e in emails] == [1, 3]
    assert "first" in emails[0].text
    assert "third" in emails[1].text
    assert ("search", "UNSEEN") in client.calls
    assert ("fetch", "1,3", "(BODY[])") in client.calls
    assert client.calls[-1] == ("logout",)


def test_get_unread_logs_in_and_selects_folder():
    client = FakeClient()
    mailbox_for(client, folder="Reports", read_only=True).get_unread()
    assert client.calls[0] == ("login", "user@example.com", PASSWORD)
    assert client.calls[1] == ("select", "Reports", True)


def test_get_unread_with_nothing_unseen_does_not_fetch():
    client = FakeClient()
    assert mailbox_for(client).get_unread() == []
    assert not any(call[0] == "fetch" for call in client.calls)
    assert ("logout",) in client.calls


def test_get_unread_fetch_failure_returns_empty():
    client = FakeClient(messages={1: build_message()}, fetch_status="NO")
    assert mailbox_for(client).get_unread() == []


def test_get_unread_wraps_login_failure():
    client = FakeClient(fail_login=True)
    with pytest.raises(ConnectionError, match="failed to create IMAP connection"):
        mailbox_for(client).get_unread()
    assert ("logout",) in client.calls


def test_get_unread_wraps_select_failure():
    client = FakeClient(select_status="NO")
    with pytest.raises(ConnectionError, match="failed to create IMAP connection"):
        mailbox_for(client).get_unread()


def test_get_unread_wraps_connection_failure():
    def refuse(_mailbox):
        raise OSError("connection refused")

    password = PASSWORD
    mailbox = Mailbox(
        host="imap.example.com", user="user@example.com", password=password, client_factory=refuse
    )
    with pytest.raises(ConnectionError, match="connection refused"):
        mailbox.get_unread()


def test_mark_as_unread_removes_seen_flag():
    client = FakeClient()
    mailbox_for(client).mark_as_unread([2, 5])
    assert ("store", "2,5", "-FLAGS.SILENT", r"(\Seen)") in client.calls
    assert client.calls[-1] == ("logout",)


def test_delete_emails_adds_deleted_flag():
    client = FakeClient()
    mailbox_for(client).delete_emails([7])
    assert ("store", "7", "+FLAGS.SILENT", r"(\Deleted)") in client.calls


def test_store_failure_on_select_raises():
    client = FakeClient(select_status="NO")
    with pytest.raises(imaplib.IMAP4.error):
        mailbox_for(client).mark_as_unread([1])
    assert not any(call[0] == "store" for call in client.calls)
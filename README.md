# baitline

`baitline` is a library of building blocks for running phishing-awareness
campaigns in-house: recipient groups, scheduling of when each message goes
out, delivery of batches of mail with retry rules for SMTP errors, reading a
reporting mailbox for messages that users flagged, and WSGI middleware for
rate limiting, permissions and security headers.

It has no third-party dependencies; everything is built on the standard
library. Tests use `pytest` (`pip install baitline[test]`).

## Modules

| Module | Contents |
| --- | --- |
| `baitline.dialer` | `RestrictedDialer`, `ConnectionDenied`, `restricted_control`, `set_allowed_hosts`, `DEFAULT_DIALER` |
| `baitline.logger` | `LogConfig`, `setup`, `parse_level`, `InvalidLevelError` |
| `baitline.ratelimit` | `PostLimiter` |
| `baitline.mailer` | `MailWorker`, `send_mail`, `dial_host`, `error_mail`, `MaxConnectAttemptsError`, `SMTPResponseError` |
| `baitline.recipients` | `Group`, `Target`, `BaseRecipient`, `Attachment`, `GroupSummary`, `ValidationError`, `merge_targets`, `unique_recipients` |
| `baitline.campaign` | `Campaign`, `CampaignStatus`, `Event`, `ScheduledResult` |
| `baitline.stats` | `CampaignStats`, `CampaignSummary`, `compute_stats`, `summarize` |
| `baitline.email_request` | `EmailRequest` |
| `baitline.imap` | `Mailbox`, `ReportedEmail`, `parse_message` |
| `baitline.monitor` | `Monitor`, `MonitorSettings`, `find_rids`, `match_email`, `sender_domain`, `check_for_new_emails` |
| `baitline.middleware` | `use`, `csrf_exceptions`, `apply_security_headers`, `require_login`, `require_permission`, `enforce_view_only`, `json_error` |

## Restricting outbound connections

`RestrictedDialer` decides which addresses may be connected to. With no
allowed hosts, only the link-local range `169.254.0.0/16` (cloud metadata
endpoints) is refused. Once hosts are allowed, every internal range is
refused except the allowed ones. A single IP is taken as a `/32` or `/128`
range; an invalid entry raises `ValueError`.

```python
from baitline.dialer import RestrictedDialer, ConnectionDenied

dialer = RestrictedDialer()
dialer.set_allowed_hosts(["127.0.0.1"])

dialer.control("tcp4", "127.0.0.1:80")    # allowed, returns None

try:
    dialer.control("tcp4", "192.168.1.2:80")
except ConnectionDenied as exc:
    print(exc)  # upstream connection denied to internal host
```

`create_connection((host, port), timeout)` resolves the host and opens a TCP
socket to the first resolved address that passes the check. The IMAP mailbox
connects through `DEFAULT_DIALER`, whose allow list `set_allowed_hosts`
extends.

## Rate-limiting POST requests

`PostLimiter` gives each client address a token bucket of
`requests_per_minute` POST requests (5 by default). `limit(app)` wraps a WSGI
application and answers requests over the limit with
`429 Too Many Requests`; other methods pass through.

```python
from baitline.ratelimit import PostLimiter

with PostLimiter(requests_per_minute=5) as limiter:
    application = limiter.limit(login_app)
    ...
```

`cleanup()` drops clients not seen for `expiry` seconds (600 by default).
`start_cleanup()` runs it every `cleanup_interval` seconds in a background
thread and `close()` stops it; the `with` block does both.

## Recipients and groups

```python
from baitline.recipients import Group, Target

group = Group(name="Finance", targets=[Target(email="alice@example.com")])
group.validate()            # raises ValidationError if incomplete
group.summary().num_targets # 1
```

`BaseRecipient.format_address()` gives the `To` header, with a display name
only when both first and last names are set. `merge_targets(existing,
updated)` works out a group's new membership, keeping the ids of known
addresses, and `unique_recipients(groups)` yields each address once.

## Campaigns

`Campaign.validate()` requires a name, groups, template, page and sending
profile name, and rejects a "send emails by" date earlier than the launch
date. `Campaign.schedule(created)` validates, sets the status and dates, adds
a "Campaign Created" event and returns one `ScheduledResult` per unique
address. Without a send-by date everybody is due at launch; otherwise the
sends are spread over whole minutes across the window
(`generate_send_date(idx, total)`). Results due at or before creation are
marked `processing`. `complete(now)` marks the campaign complete once and
keeps the first completion date.

`baitline.stats.compute_stats(results)` counts results by status, with
cumulative totals (every submission counts as a click, every click as an
open, every open as a sent e-mail); `summarize(campaign)` builds a
`CampaignSummary`.

## Sending mail

`send_mail(dialer, mails)` sends each mail over one connection. The dialer
and mail objects are supplied by the caller: a dialer has `dial()`, returning
a sender with `send(from_addr, to, message)`, `reset()` and `close()`; a mail
has `generate(message)`, `get_dialer()`, `success()`, `error(err)` and
`backoff(reason)`. A 4xx `SMTPResponseError` (or `smtplib` response error)
backs the mail off, any other code fails it, and both reset the connection.
Other errors are treated as a dropped connection: the dialer reconnects and
the mail is backed off. `dial_host` tries `MAX_RECONNECT_ATTEMPTS` (10) times
before raising `MaxConnectAttemptsError`. `MailWorker.start(stop_event)`
processes batches handed to `MailWorker.queue(mails)`, each in its own
thread.

`EmailRequest` is such a recipient for a one-off test e-mail: it validates
the recipient and sender addresses and puts each outcome (None for success,
otherwise the error) on its `outcomes` queue.

## Watching for reports

Campaign links carry an `rid` parameter. `find_rids` picks identifiers out of
text, including quoted-printable and URL-encoded forms such as
`%3Frid%3DAbC1234`; `match_email` searches a message's text, HTML and any
attached e-mails (`message/rfc822` or `.eml`).

```python
from baitline.monitor import find_rids

find_rids("Click https://example.com/?rid=AbC1234")  # ["AbC1234"]
```

`Mailbox` reads unread messages from an IMAP folder (`get_unread`), and can
clear their seen flag (`mark_as_unread`) or flag them deleted
(`delete_emails`). `check_for_new_emails(settings, mailbox, report)` calls
`report(rid)` for each identifier found, marks a message unread again when
`report` raises `LookupError`, optionally ignores senders outside
`restrict_domain`, and deletes reported messages when
`delete_reported_campaign_email` is set.

`Monitor(list_users, get_settings, report)` runs this in background threads,
one per user, at each user's `imap_freq`; `start()` and `shutdown()` control
it.

## WSGI middleware

The middleware reads the current user from `environ["baitline.user"]`, an
object with `password_change_required` and `has_permission(permission)`.

- `require_login` redirects (307) to `/login?next=...`, or to
  `/reset_password` when the user must change their password.
- `require_permission(permission)` answers with a JSON 403 without it.
- `enforce_view_only` refuses methods other than GET, HEAD and OPTIONS to
  users without `modify_objects`.
- `apply_security_headers` adds `Content-Security-Policy` and
  `X-Frame-Options: DENY`.
- `csrf_exceptions` sets `environ["baitline.csrf_skip"]` for paths under
  `/api`.
- `use(handler, *middleware)` stacks them; the last is outermost.

## Logging

```python
from baitline.logger import LogConfig, setup

setup(LogConfig(level="debug", filename="baitline.log"))
```

Records go to stderr and, with a filename, are also appended to the file. An
empty level means `info`; an unknown level raises `InvalidLevelError`.

## What it does not do

`baitline` is a library only. It has no command to run, no web server or
admin interface, no API key checking or sessions, and no database: groups,
campaigns and results live in memory and storing them is up to the caller.
It does not render e-mail templates or landing pages, and it ships no SMTP
dialer of its own; `send_mail` works with whatever dialer the caller passes.
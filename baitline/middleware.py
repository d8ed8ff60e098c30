"""WSGI middleware for sessions, permissions and security headers."""

from __future__ import annotations

import html
import json
from http import HTTPStatus
from typing import Any, Callable, Iterable, Protocol
from urllib.parse import parse_qs, urlencode

USER_KEY = "baitline.user"
CSRF_SKIP_KEY = "baitline.csrf_skip"

CSRF_EXEMPT_PREFIXES = ("/api",)

PERMISSION_MODIFY_OBJECTS = "modify_objects"
PERMISSION_MODIFY_SYSTEM = "modify_system"

SECURITY_HEADERS = (
    ("Content-Security-Policy", "frame-ancestors 'none';"),
    ("X-Frame-Options", "DENY"),
)

_SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})

StartResponse = Callable[..., Any]
WSGIApp = Callable[[dict, StartResponse], Iterable[bytes]]


class _User(Protocol):
    password_change_required: bool

    def has_permission(self, permission: str) -> bool: ...


def _status(code: int) -> str:
    return f"{code} {HTTPStatus(code).phrase}"


def _path(environ: dict) -> str:
    return (environ.get("SCRIPT_NAME", "") + environ.get("PATH_INFO", "")) or "/"


def _http_error(start_response: StartResponse, code: int) -> list[bytes]:
    body = f"{HTTPStatus(code).phrase}\n".encode()
    start_response(
        _status(code),
        [
            ("Content-Type", "text/plain; charset=utf-8"),
            ("X-Content-Type-Options", "nosniff"),
            ("Content-Length", str(len(body))),
        ],
    )
    return [body]


def _redirect(environ: dict, start_response: StartResponse, target: str) -> list[bytes]:
    query = parse_qs(environ.get("QUERY_STRING", ""), keep_blank_values=True)
    query["next"] = [_path(environ)]
    location = f"{target}?{urlencode(sorted(query.items()), doseq=True)}"
    headers = [("Location", location)]
    body = b""
    method = environ.get("REQUEST_METHOD", "GET")
    if method in ("GET", "HEAD"):
        headers.append(("Content-Type", "text/html; charset=utf-8"))
        if method == "GET":
            body = f'<a href="{html.escape(location)}">Temporary Redirect</a>.\n\n'.encode()
    start_response(_status(HTTPStatus.TEMPORARY_REDIRECT), headers)
    return [body]


def json_error(start_response: StartResponse, code: int, message: str) -> list[bytes]:
    """Answer with the status code and a JSON body carrying the message."""
    body = json.dumps({"success": False, "message": message}, indent=2).encode()
    start_response(
        _status(code),
        [("Content-Type", "application/json"), ("Content-Length", str(len(body)))],
    )
    return [body]


def use(handler: WSGIApp, *args: Callable[[WSGIApp], WSGIApp]) -> WSGIApp:
    """Wrap the handler in each middleware in turn; the last is outermost."""
    for middleware in args:
        handler = middleware(handler)
    return handler


def csrf_exceptions(app: WSGIApp) -> WSGIApp:
    """Flag requests under the exempt prefixes so CSRF checks skip them."""

    def middleware(environ: dict, start_response: StartResponse) -> Iterable[bytes]:
        path = _path(environ)
        environ[CSRF_SKIP_KEY] = any(path.startswith(p) for p in CSRF_EXEMPT_PREFIXES)
        return app(environ, start_response)

    return middleware


def apply_security_headers(app: WSGIApp) -> WSGIApp:
    """Add the frame-blocking security headers unless the app sets them."""

    def middleware(environ: dict, start_response: StartResponse) -> Iterable[bytes]:
        def secured_start(status: str, headers: list, exc_info: Any = None) -> Any:
            present = {name.lower() for name, _value in headers}
            extra = [(n, v) for n, v in SECURITY_HEADERS if n.lower() not in present]
            return start_response(status, list(headers) + extra, exc_info)

        return app(environ, secured_start)

    return middleware


def require_login(app: WSGIApp) -> WSGIApp:
    """Redirect to the login page without a user in the request.

    A user who must change their password is sent to the reset page, except
    when already on it.
    """

    def middleware(environ: dict, start_response: StartResponse) -> Iterable[bytes]:
        user = environ.get(USER_KEY)
        if user is None:
            return _redirect(environ, start_response, "/login")
        if getattr(user, "password_change_required", False) and _path(environ) != "/reset_password":
            return _redirect(environ, start_response, "/reset_password")
        return app(environ, start_response)

    return middleware


def require_permission(permission: str) -> Callable[[WSGIApp], WSGIApp]:
    """Return middleware that answers with a JSON 403 unless the user holds the permission."""

    def decorate(app: WSGIApp) -> WSGIApp:
        def middleware(environ: dict, start_response: StartResponse) -> Iterable[bytes]:
            user = environ.get(USER_KEY)
            if user is None:
                return json_error(start_response, HTTPStatus.FORBIDDEN, HTTPStatus.FORBIDDEN.phrase)
            try:
                access = user.has_permission(permission)
            except Exception as exc:
                return json_error(start_response, HTTPStatus.INTERNAL_SERVER_ERROR, str(exc))
            if not access:
                return json_error(start_response, HTTPStatus.FORBIDDEN, HTTPStatus.FORBIDDEN.phrase)
            return app(environ, start_response)

        return middleware

    return decorate


def enforce_view_only(app: WSGIApp) -> WSGIApp:
    """Refuse changing requests from users who may not modify objects."""

    def middleware(environ: dict, start_response: StartResponse) -> Iterable[bytes]:
        if environ.get("REQUEST_METHOD", "GET") not in _SAFE_METHODS:
            user = environ.get(USER_KEY)
            if user is None:
                return _http_error(start_response, HTTPStatus.FORBIDDEN)
            try:
                access = user.has_permission(PERMISSION_MODIFY_OBJECTS)
            except Exception:
                return _http_error(start_response, HTTPStatus.INTERNAL_SERVER_ERROR)
            if not access:
                return _http_error(start_response, HTTPStatus.FORBIDDEN)
        return app(environ, start_response)

    return middleware
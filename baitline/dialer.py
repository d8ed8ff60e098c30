"""Outbound TCP connections restricted to allow-listed address ranges."""

from __future__ import annotations

import ipaddress
import socket
from typing import Callable, Iterable, Union

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]
IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
Control = Callable[[str, str], None]

DIAL_TIMEOUT = 30.0

# Ranges blocked when no hosts have been explicitly allowed.
DEFAULT_DENY = (
    "169.254.0.0/16",  # link-local, used for instance metadata services
)

# Ranges blocked once any host has been allowed, so that only the allowed
# hosts and external addresses remain reachable.
ALL_INTERNAL = (
    "0.0.0.0/8",
    "127.0.0.0/8",
    "10.0.0.0/8",
    "100.64.0.0/10",
    "172.16.0.0/12",
    "169.254.0.0/16",
    "192.88.99.0/24",
    "192.168.0.0/16",
    "198.51.100.0/24",
    "203.0.113.0/24",
    "224.0.0.0/4",
    "240.0.0.0/4",
    "255.255.255.255/32",
    "::/0",
    "::/128",
    "::1/128",
    "::ffff:0:0/96",
    "::ffff:0:0:0/96",
    "fe80::/10",
    "fc00::/7",
)


class ConnectionDenied(OSError):
    """Raised when an outbound connection is not permitted."""


def _fold_network(network: IPNetwork) -> IPNetwork:
    # IPv4-mapped IPv6 ranges are folded onto the IPv4 space, so that
    # ::ffff:0:0/96 covers every IPv4 address.
    if (
        isinstance(network, ipaddress.IPv6Network)
        and network.prefixlen >= 96
        and network.network_address.ipv4_mapped is not None
    ):
        return ipaddress.IPv4Network(
            (network.network_address.ipv4_mapped, network.prefixlen - 96)
        )
    return network


def _coerce_network(value: IPNetwork | str) -> IPNetwork:
    if isinstance(value, (ipaddress.IPv4Network, ipaddress.IPv6Network)):
        return value
    return ipaddress.ip_network(value, strict=False)


_DEFAULT_DENY_NETWORKS = tuple(_fold_network(_coerce_network(r)) for r in DEFAULT_DENY)
_ALL_INTERNAL_NETWORKS = tuple(_fold_network(_coerce_network(r)) for r in ALL_INTERNAL)


def _parse_ip(text: str) -> IPAddress:
    if "%" in text:
        raise ValueError(f"zoned address {text!r} is not accepted")
    ip = ipaddress.ip_address(text)
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def _split_host_port(address: str) -> tuple[str, str]:
    if address.startswith("["):
        end = address.find("]")
        if end < 0:
            raise ValueError("missing ']' in address")
        host, rest = address[1:end], address[end + 1 :]
        if not rest.startswith(":"):
            raise ValueError("missing port in address")
        port = rest[1:]
        if "[" in host or "]" in port or "[" in port:
            raise ValueError("unexpected bracket in address")
        return host, port
    if "[" in address or "]" in address:
        raise ValueError("unexpected bracket in address")
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError("missing port in address")
    if ":" in host:
        raise ValueError("too many colons in address")
    return host, port


def _parse_cidr(text: str) -> IPNetwork:
    address, sep, prefix = text.partition("/")
    if not sep or not (prefix.isascii() and prefix.isdigit()) or "%" in address:
        raise ValueError(f"invalid CIDR address: {text}")
    try:
        return ipaddress.ip_network(text, strict=False)
    except ValueError:
        raise ValueError(f"invalid CIDR address: {text}") from None


def restricted_control(allowed: Iterable[IPNetwork | str]) -> Control:
    """Return a check that raises ConnectionDenied for forbidden destinations.

    The check takes a network name ("tcp4" or "tcp6") and a "host:port"
    address whose host is a literal IP address.
    """
    allowed_networks = tuple(_fold_network(_coerce_network(n)) for n in allowed)
    deny_networks = _ALL_INTERNAL_NETWORKS if allowed_networks else _DEFAULT_DENY_NETWORKS

    def control(network: str, address: str) -> None:
        if network not in ("tcp4", "tcp6"):
            raise ConnectionDenied(f"{network} is not a safe network type")
        try:
            host, _port = _split_host_port(address)
        except ValueError as exc:
            raise ConnectionDenied(f"{address} is not a valid host/port pair: {exc}") from None
        try:
            ip = _parse_ip(host)
        except ValueError:
            raise ConnectionDenied(f"{host} is not a valid IP address") from None
        if any(ip in net for net in allowed_networks):
            return
        if any(ip in net for net in deny_networks):
            raise ConnectionDenied("upstream connection denied to internal host")

    return control


class RestrictedDialer:
    """Opens TCP connections only to addresses permitted by its allow list.

    With no allowed hosts, only link-local addresses are refused. Once hosts
    are allowed, every internal address except the allowed ones is refused.
    """

    def __init__(self) -> None:
        self._networks: list[IPNetwork] = []

    def allowed_hosts(self) -> list[str]:
        """Return the allowed ranges in CIDR notation."""
        return [str(network) for network in self._networks]

    def set_allowed_hosts(self, allowed: Iterable[str]) -> None:
        """Add hosts or CIDR ranges to the allow list.

        Entries before an invalid one are kept; the invalid entry raises
        ValueError.
        """
        for ip_range in allowed:
            try:
                single = ipaddress.ip_address(ip_range) if "%" not in ip_range else None
            except ValueError:
                single = None
            if single is not None:
                ip_range += "/32" if single.version == 4 else "/128"
            try:
                parsed = _parse_cidr(ip_range)
            except ValueError as exc:
                raise ValueError(f"provided ip range is not valid CIDR notation: {exc}") from None
            self._networks.append(parsed)

    def control(self, network: str, address: str) -> None:
        """Raise ConnectionDenied if the destination is not permitted."""
        restricted_control(self._networks)(network, address)

    def create_connection(
        self, address: tuple[str, int], timeout: float = DIAL_TIMEOUT
    ) -> socket.socket:
        """Connect to (host, port), trying each resolved address that is permitted."""
        host, port = address
        check = restricted_control(self._networks)
        errors: list[OSError] = []
        for family, sock_type, proto, _name, sockaddr in socket.getaddrinfo(
            host, port, type=socket.SOCK_STREAM
        ):
            if family == socket.AF_INET:
                network, target = "tcp4", f"{sockaddr[0]}:{sockaddr[1]}"
            elif family == socket.AF_INET6:
                network, target = "tcp6", f"[{sockaddr[0]}]:{sockaddr[1]}"
            else:
                continue
            try:
                check(network, target)
            except ConnectionDenied as exc:
                errors.append(exc)
                continue
            sock = socket.socket(family, sock_type, proto)
            try:
                sock.settimeout(timeout)
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
                sock.connect(sockaddr)
            except OSError as exc:
                sock.close()
                errors.append(exc)
                continue
            return sock
        if errors:
            raise errors[0]
        raise OSError(f"no addresses found for {host}")


DEFAULT_DIALER = RestrictedDialer()


def set_allowed_hosts(allowed: Iterable[str]) -> None:
    """Add hosts or CIDR ranges to the allow list of the default dialer."""
    DEFAULT_DIALER.set_allowed_hosts(allowed)
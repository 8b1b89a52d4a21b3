"""Egress guard for outbound calls made by tenant flow graphs.

Every outbound HTTP call issued from a running graph is checked here before a
socket is opened. The guard resolves the target hostname itself and rejects
the call if *any* advertised address is private, loopback, link-local or
otherwise internal. Names under internal-only DNS suffixes are rejected
without resolution, and names that cannot be resolved are rejected too.

Decisions are computed fresh per call; DNS answers are never cached.
"""
from __future__ import annotations

import asyncio
import ipaddress
import socket
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Optional, Protocol, Sequence
from urllib.parse import urlparse

from flowpod.config import DEFAULT_BLOCKED_SUFFIXES
from flowpod.logging import get_logger
from flowpod.service.errors import ServiceError

logger = get_logger(__name__)

_BLOCKED_IPV4_NETWORKS = tuple(
    ipaddress.ip_network(net)
    for net in (
        "127.0.0.0/8",
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "169.254.0.0/16",
        "0.0.0.0/8",
    )
)

_BLOCKED_IPV6_NETWORKS = tuple(
    ipaddress.ip_network(net)
    for net in (
        "::1/128",
        "::/128",
        "fe80::/10",
        "fc00::/7",
    )
)

_ALLOWED_SCHEMES = frozenset({"http", "https"})

DEFAULT_DNS_TIMEOUT_SECONDS = 5.0


class EgressBlockedError(ServiceError):
    """Outbound call denied by the egress guard.

    Fatal for the one call that raised it. Callers must not retry against a
    different address or downgrade it to a warning.
    """

    status_code = 403
    error_code = "ssrf_blocked"

    def __init__(self, decision: "EgressDecision") -> None:
        super().__init__(
            "request blocked by egress policy",
            detail={
                "hostname": decision.hostname,
                "reason": decision.reason,
            },
        )
        self.decision = decision


@dataclass(frozen=True)
class EgressDecision:
    """Outcome of checking one outbound target."""

    target_url: str
    hostname: Optional[str]
    resolved_addresses: tuple[str, ...] = ()
    blocked: bool = False
    reason: Optional[str] = None


def is_private_ip(ip: str) -> bool:
    """Return True if ``ip`` is in a reserved, private, loopback or link-local range.

    IPv4-mapped IPv6 addresses (``::ffff:a.b.c.d``) are classified by their
    IPv4 form. Raises ``ValueError`` if ``ip`` is not an IP literal.
    """

    addr = ipaddress.ip_address(ip)
    if isinstance(addr, ipaddress.IPv6Address):
        if addr.ipv4_mapped is not None:
            addr = addr.ipv4_mapped
        else:
            # Zone ids ("fe80::1%eth0") do not change the range
            if addr.scope_id:
                addr = ipaddress.IPv6Address(str(addr).split("%", 1)[0])
            return any(addr in net for net in _BLOCKED_IPV6_NETWORKS)
    return any(addr in net for net in _BLOCKED_IPV4_NETWORKS)


def _is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


class Resolver(Protocol):
    async def resolve(self, hostname: str, family: socket.AddressFamily) -> list[str]:
        """Return every address of ``family`` advertised for ``hostname``."""
        ...


DEFAULT_DNS_MAX_WORKERS = 8


class SystemResolver:
    """Resolve through ``getaddrinfo`` one family at a time.

    Lookups run on a dedicated bounded thread pool. A lookup that hangs past
    the guard's timeout keeps its worker until the OS gives up, so hung
    resolvers can only exhaust this pool and never the loop's default
    executor.
    """

    def __init__(self, max_workers: int = DEFAULT_DNS_MAX_WORKERS):
        self.max_workers = max_workers
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="egress-dns"
        )
        self._in_flight = 0
        self._lock = threading.Lock()

    @property
    def in_flight(self) -> int:
        """Lookups submitted to the pool and not yet finished or cancelled."""
        with self._lock:
            return self._in_flight

    @property
    def saturated(self) -> bool:
        return self.in_flight >= self.max_workers

    def _release(self, _future: Future) -> None:
        with self._lock:
            self._in_flight -= 1

    async def resolve(self, hostname: str, family: socket.AddressFamily) -> list[str]:
        with self._lock:
            busy = self._in_flight
            self._in_flight += 1
        if busy >= self.max_workers:
            logger.warning(
                "egress_dns_pool_saturated",
                hostname=hostname,
                in_flight=busy,
                max_workers=self.max_workers,
            )
        future = self._executor.submit(
            socket.getaddrinfo, hostname, None, family, socket.SOCK_STREAM
        )
        future.add_done_callback(self._release)
        infos = await asyncio.wrap_future(future)
        addresses: list[str] = []
        for _family, _type, _proto, _canon, sockaddr in infos:
            address = str(sockaddr[0])
            if address not in addresses:
                addresses.append(address)
        return addresses

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)


def _matches_blocked_suffix(hostname: str, suffixes: Sequence[str]) -> bool:
    for suffix in suffixes:
        if hostname.endswith(suffix) or hostname == suffix.lstrip("."):
            return True
    return False


@dataclass
class EgressGuard:
    """Resolve-then-validate check applied to every outbound target."""

    resolver: Resolver = field(default_factory=SystemResolver)
    dns_timeout: float = DEFAULT_DNS_TIMEOUT_SECONDS
    blocked_suffixes: Sequence[str] = DEFAULT_BLOCKED_SUFFIXES

    async def evaluate(self, url: str) -> EgressDecision:
        """Compute the decision for ``url`` without raising."""

        try:
            parsed = urlparse(url)
            hostname = parsed.hostname
        except ValueError:
            return EgressDecision(url, None, blocked=True, reason="invalid_url")

        if (parsed.scheme or "").lower() not in _ALLOWED_SCHEMES:
            return EgressDecision(url, hostname, blocked=True, reason="unsupported_scheme")
        if not hostname:
            return EgressDecision(url, None, blocked=True, reason="missing_host")

        hostname = hostname.lower().rstrip(".")

        if _matches_blocked_suffix(hostname, self.blocked_suffixes):
            return EgressDecision(url, hostname, blocked=True, reason="internal_suffix")

        if _is_ip_literal(hostname):
            blocked = is_private_ip(hostname)
            return EgressDecision(
                url,
                hostname,
                resolved_addresses=(hostname,),
                blocked=blocked,
                reason="private_address" if blocked else None,
            )

        addresses = await self._resolve_all(hostname)
        if not addresses:
            return EgressDecision(url, hostname, blocked=True, reason="unresolvable")

        for address in addresses:
            try:
                private = is_private_ip(address)
            except ValueError:
                private = True
            if private:
                return EgressDecision(
                    url,
                    hostname,
                    resolved_addresses=tuple(addresses),
                    blocked=True,
                    reason="private_address",
                )

        return EgressDecision(url, hostname, resolved_addresses=tuple(addresses))

    async def check(self, url: str) -> EgressDecision:
        """Return the decision for an allowed ``url``; raise ``EgressBlockedError`` otherwise."""

        decision = await self.evaluate(url)
        if decision.blocked:
            logger.warning(
                "egress_blocked",
                hostname=decision.hostname,
                reason=decision.reason,
                addresses=list(decision.resolved_addresses),
            )
            raise EgressBlockedError(decision)
        logger.debug(
            "egress_allowed",
            hostname=decision.hostname,
            addresses=list(decision.resolved_addresses),
        )
        return decision

    async def _resolve_family(
        self, hostname: str, family: socket.AddressFamily
    ) -> list[str]:
        try:
            return await asyncio.wait_for(
                self.resolver.resolve(hostname, family), self.dns_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "egress_dns_timeout",
                hostname=hostname,
                family=family.name,
                timeout=self.dns_timeout,
            )
        except (OSError, UnicodeError) as exc:
            # gaierror (NXDOMAIN, no data) is an OSError
            logger.debug(
                "egress_dns_lookup_failed",
                hostname=hostname,
                family=family.name,
                error=str(exc),
            )
        return []

    async def _resolve_all(self, hostname: str) -> list[str]:
        v4, v6 = await asyncio.gather(
            self._resolve_family(hostname, socket.AF_INET),
            self._resolve_family(hostname, socket.AF_INET6),
        )
        return [*v4, *v6]


_default_guard: EgressGuard | None = None


def get_default_guard() -> EgressGuard:
    global _default_guard
    if _default_guard is None:
        _default_guard = EgressGuard()
    return _default_guard


async def check_egress(url: str, *, guard: EgressGuard | None = None) -> EgressDecision:
    """Check ``url`` against the egress policy, raising ``EgressBlockedError`` if denied."""

    return await (guard or get_default_guard()).check(url)


__all__ = [
    "EgressBlockedError",
    "EgressDecision",
    "EgressGuard",
    "Resolver",
    "SystemResolver",
    "check_egress",
    "is_private_ip",
]

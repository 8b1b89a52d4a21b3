"""Tests for the outbound egress guard.

The guard must reject a target when *any* resolved address is internal, when
the name sits under an internal-only suffix, and when the name cannot be
resolved at all.
"""

import asyncio
import socket
import threading

import pytest

from conftest import FakeResolver
from flowpod.service.egress import (
    EgressBlockedError,
    EgressGuard,
    SystemResolver,
    check_egress,
    is_private_ip,
)


class TestIsPrivateIp:
    @pytest.mark.parametrize(
        "ip",
        [
            "127.0.0.1",
            "127.255.255.254",
            "10.0.0.5",
            "172.16.0.1",
            "172.31.255.255",
            "192.168.1.1",
            "169.254.169.254",
            "0.0.0.0",
            "::1",
            "::",
            "fe80::1",
            "fc00::1",
            "fd12:3456:789a::1",
        ],
    )
    def test_internal_ranges(self, ip):
        assert is_private_ip(ip) is True

    @pytest.mark.parametrize(
        "ip",
        ["8.8.8.8", "93.184.216.34", "172.32.0.1", "192.169.0.1", "2606:4700:4700::1111"],
    )
    def test_public_addresses(self, ip):
        assert is_private_ip(ip) is False

    def test_ipv4_mapped_ipv6_uses_embedded_address(self):
        assert is_private_ip("::ffff:127.0.0.1") is True
        assert is_private_ip("::ffff:169.254.169.254") is True
        assert is_private_ip("::ffff:8.8.8.8") is False

    def test_link_local_with_zone_id(self):
        assert is_private_ip("fe80::1%eth0") is True

    def test_non_ip_raises(self):
        with pytest.raises(ValueError):
            is_private_ip("example.com")


def _guard(**kwargs):
    resolver = kwargs.pop("resolver", None) or FakeResolver()
    return EgressGuard(resolver=resolver, **kwargs)


class TestEgressGuard:
    async def test_public_host_allowed(self):
        resolver = FakeResolver(v4={"api.example.com": ["93.184.216.34"]})
        decision = await _guard(resolver=resolver).check("https://api.example.com/v1")
        assert decision.blocked is False
        assert decision.hostname == "api.example.com"
        assert decision.resolved_addresses == ("93.184.216.34",)

    async def test_both_families_are_queried(self):
        resolver = FakeResolver(
            v4={"api.example.com": ["93.184.216.34"]},
            v6={"api.example.com": ["2606:2800:220:1::1"]},
        )
        decision = await _guard(resolver=resolver).check("https://api.example.com/")
        assert set(decision.resolved_addresses) == {"93.184.216.34", "2606:2800:220:1::1"}
        families = {family for _, family in resolver.calls}
        assert families == {socket.AF_INET, socket.AF_INET6}

    async def test_metadata_ip_literal_blocked(self):
        resolver = FakeResolver()
        with pytest.raises(EgressBlockedError) as exc_info:
            await _guard(resolver=resolver).check("http://169.254.169.254/latest/meta-data")
        assert exc_info.value.status_code == 403
        assert exc_info.value.error_code == "ssrf_blocked"
        assert exc_info.value.decision.reason == "private_address"
        # Literals are classified without a lookup
        assert resolver.calls == []

    async def test_ipv6_loopback_literal_blocked(self):
        decision = await _guard().evaluate("http://[::1]:8080/")
        assert decision.blocked is True
        assert decision.reason == "private_address"

    async def test_any_private_answer_blocks(self):
        resolver = FakeResolver(
            v4={"mixed.example.com": ["93.184.216.34", "10.0.0.8"]},
        )
        decision = await _guard(resolver=resolver).evaluate("https://mixed.example.com/")
        assert decision.blocked is True
        assert decision.reason == "private_address"
        assert "10.0.0.8" in decision.resolved_addresses

    async def test_private_aaaa_blocks_public_a(self):
        resolver = FakeResolver(
            v4={"dual.example.com": ["93.184.216.34"]},
            v6={"dual.example.com": ["fd00::5"]},
        )
        decision = await _guard(resolver=resolver).evaluate("https://dual.example.com/")
        assert decision.blocked is True

    async def test_rebinding_style_name_to_loopback_blocked(self):
        resolver = FakeResolver(v4={"attacker.example": ["127.0.0.1"]})
        with pytest.raises(EgressBlockedError):
            await _guard(resolver=resolver).check("http://attacker.example/")

    async def test_unresolvable_host_blocked(self):
        resolver = FakeResolver(
            v4={"nxdomain.example": socket.gaierror(socket.EAI_NONAME, "not known")},
            v6={"nxdomain.example": socket.gaierror(socket.EAI_NONAME, "not known")},
        )
        decision = await _guard(resolver=resolver).evaluate("http://nxdomain.example/")
        assert decision.blocked is True
        assert decision.reason == "unresolvable"

    async def test_single_family_failure_uses_other_family(self):
        resolver = FakeResolver(
            v4={"v6only.example.com": socket.gaierror(socket.EAI_NODATA, "no data")},
            v6={"v6only.example.com": ["2606:4700:4700::1111"]},
        )
        decision = await _guard(resolver=resolver).evaluate("https://v6only.example.com/")
        assert decision.blocked is False
        assert decision.resolved_addresses == ("2606:4700:4700::1111",)

    async def test_dns_timeout_blocks(self):
        resolver = FakeResolver(v4={"slow.example.com": ["93.184.216.34"]}, delay=1.0)
        decision = await _guard(resolver=resolver, dns_timeout=0.05).evaluate(
            "https://slow.example.com/"
        )
        assert decision.blocked is True
        assert decision.reason == "unresolvable"

    @pytest.mark.parametrize(
        "url",
        [
            "http://redis.default.svc.cluster.local:6379/",
            "http://metadata.google.internal/computeMetadata/v1/",
            "http://app.localhost/",
            "http://localhost:1880/",
            "http://REDIS.Default.SVC.Cluster.Local./",
        ],
    )
    async def test_internal_suffix_blocked_without_lookup(self, url):
        resolver = FakeResolver()
        decision = await _guard(resolver=resolver).evaluate(url)
        assert decision.blocked is True
        assert decision.reason == "internal_suffix"
        assert resolver.calls == []

    async def test_custom_suffixes(self):
        resolver = FakeResolver(v4={"db.corp.example": ["93.184.216.34"]})
        guard = _guard(resolver=resolver, blocked_suffixes=(".corp.example",))
        decision = await guard.evaluate("https://db.corp.example/")
        assert decision.reason == "internal_suffix"

    @pytest.mark.parametrize(
        "url,reason",
        [
            ("file:///etc/passwd", "unsupported_scheme"),
            ("gopher://example.com/", "unsupported_scheme"),
            ("ftp://example.com/", "unsupported_scheme"),
            ("http:///nohost", "missing_host"),
        ],
    )
    async def test_rejected_urls(self, url, reason):
        decision = await _guard().evaluate(url)
        assert decision.blocked is True
        assert decision.reason == reason

    async def test_blocked_error_detail(self):
        resolver = FakeResolver(v4={"internal.example.com": ["192.168.0.10"]})
        with pytest.raises(EgressBlockedError) as exc_info:
            await _guard(resolver=resolver).check("https://internal.example.com/x")
        assert exc_info.value.detail == {
            "hostname": "internal.example.com",
            "reason": "private_address",
        }

    async def test_decisions_are_not_cached(self):
        resolver = FakeResolver(v4={"flip.example.com": ["93.184.216.34"]})
        guard = _guard(resolver=resolver)
        assert (await guard.evaluate("https://flip.example.com/")).blocked is False
        resolver.v4["flip.example.com"] = ["10.1.2.3"]
        assert (await guard.evaluate("https://flip.example.com/")).blocked is True

    async def test_check_egress_uses_given_guard(self):
        resolver = FakeResolver(v4={"ok.example.com": ["8.8.8.8"]})
        decision = await check_egress("https://ok.example.com/", guard=_guard(resolver=resolver))
        assert decision.blocked is False


class TestSystemResolver:
    async def test_answers_are_deduplicated(self, monkeypatch):
        def fake_getaddrinfo(host, port, family=0, type=0, *args):
            sockaddr = ("93.184.216.34", 0)
            return [(family, type, 6, "", sockaddr), (family, type, 17, "", sockaddr)]

        monkeypatch.setattr(socket, "getaddrinfo", fake_getaddrinfo)
        resolver = SystemResolver(max_workers=2)
        try:
            assert await resolver.resolve("api.example.com", socket.AF_INET) == ["93.184.216.34"]
            assert resolver.in_flight == 0
        finally:
            resolver.close()

    async def test_hung_lookups_stay_in_their_own_pool(self, monkeypatch):
        release = threading.Event()

        def hung_getaddrinfo(host, port, family=0, type=0, *args):
            release.wait(5)
            return []

        monkeypatch.setattr(socket, "getaddrinfo", hung_getaddrinfo)
        resolver = SystemResolver(max_workers=1)
        guard = EgressGuard(resolver=resolver, dns_timeout=0.05)
        try:
            decision = await guard.evaluate("https://hung.example.com/")
            assert decision.blocked is True
            assert decision.reason == "unresolvable"
            assert resolver.saturated is True

            # The loop's default executor is still free for other work
            loop = asyncio.get_running_loop()
            assert await loop.run_in_executor(None, lambda: "free") == "free"

            second = await guard.evaluate("https://other.example.com/")
            assert second.reason == "unresolvable"
        finally:
            release.set()
            resolver.close()

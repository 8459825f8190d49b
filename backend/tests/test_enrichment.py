"""Tests for public-IP lookup and DNS resolution checks."""
from types import SimpleNamespace

import dns.exception
import dns.rdatatype
import dns.resolver
import httpx

from ipwhat.models import AddressFamily, ErrorKind
from ipwhat.services.enrichment import DnsResolutionCheck, PublicIPLookup, parse_public_ip


class FakeResolver:
    """Answers per record type from a table of addresses or exceptions."""

    def __init__(self, answers):
        self.answers = answers
        self.calls = []

    async def resolve(self, fqdn, rdtype, lifetime=None):
        self.calls.append((fqdn, rdtype, lifetime))
        answer = self.answers[rdtype]
        if isinstance(answer, Exception):
            raise answer
        return [SimpleNamespace(address=address) for address in answer]


class TestParsePublicIP:
    def test_trims_whitespace(self):
        assert parse_public_ip("203.0.113.7\n", AddressFamily.IPV4) == "203.0.113.7"

    def test_wrong_family_rejected(self):
        assert parse_public_ip("2001:db8::1", AddressFamily.IPV4) is None
        assert parse_public_ip("203.0.113.7", AddressFamily.IPV6) is None

    def test_garbage_rejected(self):
        assert parse_public_ip("<html>", AddressFamily.IPV4) is None


class TestPublicIPLookup:
    async def test_falls_through_to_next_service(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "first.example":
                return httpx.Response(503)
            if request.url.host == "second.example":
                return httpx.Response(200, text="not an address")
            return httpx.Response(200, text="198.51.100.4\n")

        lookup = PublicIPLookup(
            ipv4_services=["http://first.example/", "http://second.example/", "http://third.example/"],
            transport=httpx.MockTransport(handler),
        )
        assert await lookup.lookup(AddressFamily.IPV4, 1000) == "198.51.100.4"

    async def test_all_services_failing_gives_none(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("no route")

        lookup = PublicIPLookup(
            ipv6_services=["http://v6.example/"],
            transport=httpx.MockTransport(handler),
        )
        assert await lookup.lookup(AddressFamily.IPV6, 1000) is None


class TestDnsResolutionCheck:
    async def test_resolved(self):
        resolver = FakeResolver({
            dns.rdatatype.A: ["104.16.124.96"],
            dns.rdatatype.AAAA: ["2606:4700::6810:7c60"],
        })
        result = await DnsResolutionCheck(resolver=resolver).check("www.cloudflare.com", 2000)

        assert result.resolved is True
        assert result.ipv4_addresses == ["104.16.124.96"]
        assert result.ipv6_addresses == ["2606:4700::6810:7c60"]
        assert result.error_kind is None
        assert {call[2] for call in resolver.calls} == {2.0}

    async def test_one_family_is_enough(self):
        resolver = FakeResolver({
            dns.rdatatype.A: ["192.0.2.10"],
            dns.rdatatype.AAAA: dns.resolver.NoAnswer(),
        })
        result = await DnsResolutionCheck(resolver=resolver).check("v4only.example", 1000)
        assert result.resolved is True
        assert result.ipv6_addresses == []

    async def test_nxdomain_is_a_negative_answer(self):
        resolver = FakeResolver({
            dns.rdatatype.A: dns.resolver.NXDOMAIN(),
            dns.rdatatype.AAAA: dns.resolver.NXDOMAIN(),
        })
        result = await DnsResolutionCheck(resolver=resolver).check("missing.example", 1000)
        assert result.resolved is False
        assert result.error_kind is None

    async def test_resolver_failure_is_unavailable(self):
        resolver = FakeResolver({
            dns.rdatatype.A: dns.exception.Timeout(),
            dns.rdatatype.AAAA: dns.resolver.NoAnswer(),
        })
        result = await DnsResolutionCheck(resolver=resolver).check("slow.example", 1000)
        assert result.resolved is None
        assert result.error_kind is ErrorKind.ENRICHMENT_UNAVAILABLE

"""Optional checks that enrich a cycle without affecting the reachability verdict."""

import asyncio
import ipaddress
import time
from typing import Any, Callable

import dns.asyncresolver
import dns.exception
import dns.rdatatype
import dns.resolver
import httpx
import structlog

from ..config import get_settings
from ..models import AddressFamily, DnsCheckResult, ErrorKind

log = structlog.get_logger()

# Binding the source address pins the lookup to one family
LOCAL_ADDRESSES = {AddressFamily.IPV4: "0.0.0.0", AddressFamily.IPV6: "::"}


def parse_public_ip(text: str, family: AddressFamily) -> str | None:
    """Return the address if ``text`` is a literal of ``family``."""
    candidate = text.strip()
    try:
        address = ipaddress.ip_address(candidate)
    except ValueError:
        return None
    expected = 4 if family is AddressFamily.IPV4 else 6
    return str(address) if address.version == expected else None


class PublicIPLookup:
    """Asks third-party echo services for the public address of each family."""

    def __init__(
        self,
        ipv4_services: list[str] | None = None,
        ipv6_services: list[str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings().enrichment
        self.services = {
            AddressFamily.IPV4: ipv4_services or settings.ipv4_services,
            AddressFamily.IPV6: ipv6_services or settings.ipv6_services,
        }
        self._transport = transport

    def _client(self, family: AddressFamily, timeout_s: float) -> httpx.AsyncClient:
        transport = self._transport or httpx.AsyncHTTPTransport(
            local_address=LOCAL_ADDRESSES[family]
        )
        return httpx.AsyncClient(timeout=timeout_s, transport=transport)

    async def lookup(self, family: AddressFamily, timeout_ms: int) -> str | None:
        """Try each service in order; None if none answers with a valid address."""
        timeout_s = max(timeout_ms, 1) / 1000

        async with self._client(family, timeout_s) as client:
            for url in self.services[family]:
                try:
                    response = await client.get(url, headers={"Cache-Control": "no-store"})
                except httpx.HTTPError as e:
                    log.debug("public_ip_service_failed", family=family.value, url=url, error=str(e))
                    continue

                if not response.is_success:
                    log.debug(
                        "public_ip_service_status",
                        family=family.value,
                        url=url,
                        status_code=response.status_code,
                    )
                    continue

                address = parse_public_ip(response.text, family)
                if address:
                    return address
                log.debug("public_ip_response_invalid", family=family.value, url=url)

        return None


class DnsResolutionCheck:
    """Resolves the configured FQDN to tell DNS trouble apart from routing trouble."""

    def __init__(
        self,
        resolver: Any | None = None,
        timer: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._resolver = resolver
        self._timer = timer

    async def check(self, fqdn: str, timeout_ms: int) -> DnsCheckResult:
        resolver = self._resolver or dns.asyncresolver.Resolver()
        lifetime = max(timeout_ms, 1) / 1000

        start = self._timer()
        (v4, v4_error), (v6, v6_error) = await asyncio.gather(
            self._resolve(resolver, fqdn, dns.rdatatype.A, lifetime),
            self._resolve(resolver, fqdn, dns.rdatatype.AAAA, lifetime),
        )
        latency_ms = int(round((self._timer() - start) * 1000))

        if v4 or v6:
            return DnsCheckResult(
                fqdn=fqdn,
                resolved=True,
                ipv4_addresses=v4,
                ipv6_addresses=v6,
                latency_ms=latency_ms,
            )

        # The resolver answered, the name just has no addresses
        if all(isinstance(e, (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer)) for e in (v4_error, v6_error)):
            return DnsCheckResult(fqdn=fqdn, resolved=False, latency_ms=latency_ms)

        log.info(
            "dns_check_unavailable",
            fqdn=fqdn,
            ipv4_error=type(v4_error).__name__,
            ipv6_error=type(v6_error).__name__,
        )
        return DnsCheckResult(fqdn=fqdn, error_kind=ErrorKind.ENRICHMENT_UNAVAILABLE)

    async def _resolve(
        self, resolver: Any, fqdn: str, rdtype: Any, lifetime: float
    ) -> tuple[list[str], Exception | None]:
        try:
            answer = await resolver.resolve(fqdn, rdtype, lifetime=lifetime)
        except dns.exception.DNSException as e:
            return [], e
        return [rdata.address for rdata in answer], None

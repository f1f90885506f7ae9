from __future__ import annotations

import asyncio
import socket
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Sequence

from app.logger import get_logger

_logger = get_logger("services.dns")

# Published Cloudflare IPv4 ranges, matched by dotted prefix.
CLOUDFLARE_PREFIXES = (
    "103.21.",
    "103.22.",
    "103.31.",
    "104.16.",
    "104.17.",
    "104.18.",
    "104.19.",
    "104.20.",
    "104.21.",
    "104.22.",
    "104.23.",
    "104.24.",
    "104.25.",
    "104.26.",
    "104.27.",
    "108.162.",
    "131.0.",
    "141.101.",
    "162.158.",
    "172.64.",
    "172.65.",
    "172.66.",
    "172.67.",
    "172.68.",
    "172.69.",
    "172.70.",
    "172.71.",
    "173.245.",
    "188.114.",
    "190.93.",
    "197.234.",
    "198.41.",
)

Resolver = Callable[[str], Awaitable[List[str]]]


class ResolutionError(Exception):
    pass


@dataclass(frozen=True)
class DnsCheck:
    matches: bool
    resolved_ips: List[str] = field(default_factory=list)
    is_cloudflare: bool = False
    error: Optional[str] = None


async def resolve_ipv4(hostname: str) -> List[str]:
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(hostname, None, family=socket.AF_INET, type=socket.SOCK_STREAM)
    except socket.gaierror as exc:
        raise ResolutionError(exc.strerror or str(exc)) from exc
    addresses: List[str] = []
    for info in infos:
        address = str(info[4][0])
        if address not in addresses:
            addresses.append(address)
    return addresses


def is_cloudflare_ip(address: str) -> bool:
    return address.startswith(CLOUDFLARE_PREFIXES)


def classify(resolved_ips: Sequence[str], server_ip: str) -> DnsCheck:
    ips = list(resolved_ips)
    if server_ip in ips:
        return DnsCheck(matches=True, resolved_ips=ips)
    if ips and any(is_cloudflare_ip(address) for address in ips):
        return DnsCheck(matches=False, resolved_ips=ips, is_cloudflare=True)
    return DnsCheck(matches=False, resolved_ips=ips)


async def check_domain(
    hostname: str,
    server_ip: str,
    *,
    timeout_seconds: float,
    resolver: Optional[Resolver] = None,
) -> DnsCheck:
    lookup = resolver or resolve_ipv4
    try:
        ips = await asyncio.wait_for(lookup(hostname), timeout=timeout_seconds)
    except TimeoutError:
        _logger.warning("dns.timeout", "DNS lookup timed out", domain=hostname, timeout=timeout_seconds)
        return DnsCheck(matches=False, error=f"DNS lookup timed out after {timeout_seconds}s")
    except ResolutionError as exc:
        _logger.info("dns.fail", "DNS lookup failed", domain=hostname, error=str(exc))
        return DnsCheck(matches=False, error=str(exc))
    if not ips:
        return DnsCheck(matches=False, error="No A records found")
    check = classify(ips, server_ip)
    _logger.debug(
        "dns.check",
        "Classified DNS answer",
        domain=hostname,
        resolved=",".join(ips),
        matches=check.matches,
        cloudflare=check.is_cloudflare,
    )
    return check

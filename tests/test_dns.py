from __future__ import annotations

import asyncio
from typing import List

import pytest

from app.services import dns

SERVER_IP = "203.0.113.10"


@pytest.mark.parametrize(
    "address, expected",
    [
        ("104.16.1.1", True),
        ("172.67.10.2", True),
        ("188.114.96.3", True),
        ("203.0.113.10", False),
        ("10.104.16.1", False),
    ],
)
def test_cloudflare_prefixes(address: str, expected: bool) -> None:
    assert dns.is_cloudflare_ip(address) is expected


def test_classify_match_wins_over_cloudflare() -> None:
    check = dns.classify(["104.16.1.1", SERVER_IP], SERVER_IP)
    assert check.matches
    assert not check.is_cloudflare


def test_classify_cloudflare_and_mismatch() -> None:
    assert dns.classify(["104.16.1.1"], SERVER_IP).is_cloudflare
    mismatch = dns.classify(["198.51.100.7"], SERVER_IP)
    assert not mismatch.matches
    assert not mismatch.is_cloudflare
    assert mismatch.resolved_ips == ["198.51.100.7"]


async def test_check_domain_reports_lookup_failure() -> None:
    async def failing(hostname: str) -> List[str]:
        raise dns.ResolutionError("Name or service not known")

    check = await dns.check_domain("missing.example.com", SERVER_IP, timeout_seconds=1, resolver=failing)

    assert not check.matches
    assert check.error == "Name or service not known"


async def test_check_domain_times_out() -> None:
    async def slow(hostname: str) -> List[str]:
        await asyncio.sleep(1)
        return [SERVER_IP]

    check = await dns.check_domain("slow.example.com", SERVER_IP, timeout_seconds=0.01, resolver=slow)

    assert not check.matches
    assert "timed out" in (check.error or "")


async def test_check_domain_without_records() -> None:
    async def empty(hostname: str) -> List[str]:
        return []

    check = await dns.check_domain("empty.example.com", SERVER_IP, timeout_seconds=1, resolver=empty)

    assert check.error == "No A records found"

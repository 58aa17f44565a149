"""Target URL validation tests."""

from __future__ import annotations

from bloodwatch.config.settings import URLPolicyConfig
from bloodwatch.config.url_policy import validate_target_url

POLICY = URLPolicyConfig()


def test_rejects_non_http_scheme() -> None:
    result = validate_target_url("file:///etc/passwd", POLICY)
    assert not result.allowed
    assert "Scheme 'file' not allowed" in result.reason


def test_rejects_missing_hostname() -> None:
    result = validate_target_url("https://", POLICY)
    assert not result.allowed


def test_rejects_localhost() -> None:
    result = validate_target_url("http://localhost:8080/levels", POLICY)
    assert not result.allowed
    assert "localhost" in result.reason


def test_rejects_loopback_ipv4_target() -> None:
    result = validate_target_url("http://127.0.0.1", POLICY)
    assert not result.allowed
    assert "private range" in result.reason


def test_rejects_private_ipv4_target() -> None:
    assert not validate_target_url("http://10.0.0.8", POLICY).allowed


def test_rejects_link_local_ipv6_target() -> None:
    assert not validate_target_url("http://[fe80::1]", POLICY).allowed


def test_allows_public_ip_literal() -> None:
    assert validate_target_url("https://93.184.216.34/stany", POLICY).allowed


def test_private_ips_allowed_when_policy_disabled() -> None:
    policy = URLPolicyConfig(block_private_ips=False)
    assert validate_target_url("http://192.168.1.10", policy).allowed


def test_rejects_internal_suffix() -> None:
    result = validate_target_url("https://metadata.google.internal/levels", POLICY)
    assert not result.allowed
    assert "is blocked" in result.reason


def test_rejects_ipv4_mapped_loopback() -> None:
    assert not validate_target_url("http://[::ffff:127.0.0.1]/", POLICY).allowed


def test_rejects_carrier_grade_nat_range() -> None:
    assert not validate_target_url("http://100.64.0.1/", POLICY).allowed

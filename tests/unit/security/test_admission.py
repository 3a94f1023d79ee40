"""Tests for trackgate.security.admission."""

from __future__ import annotations

import pytest

from trackgate.exceptions import AdmissionDenied
from trackgate.models import BanRange
from trackgate.security.admission import (
    ALLOW,
    KIND_BANNED,
    KIND_DENIED,
    KIND_MALFORMED,
    AdmissionFilter,
    info_hash_allowlist,
)
from trackgate.security.ban_index import BanRangeIndex

pytestmark = [pytest.mark.unit, pytest.mark.security]

INFO_HASH = b"\x11" * 20
ANNOUNCE = {"type": "announce", "peer_id": b"p" * 20, "port": 6881}


@pytest.fixture
def admission():
    """Filter with 192.168.1.0/24 banned."""
    index = BanRangeIndex([BanRange(from_ip=3232235776, to_ip=3232236031)])
    return AdmissionFilter(index)


def test_allows_clean_announce(admission):
    decision = admission.evaluate(INFO_HASH, ANNOUNCE, "10.0.0.1")
    assert decision is ALLOW
    assert decision


def test_denies_banned_integer_address(admission):
    decision = admission.evaluate(INFO_HASH, ANNOUNCE, 3232235800)
    assert not decision.allowed
    assert decision.kind == KIND_BANNED


def test_allows_address_just_past_range(admission):
    assert admission.evaluate(INFO_HASH, ANNOUNCE, 3232236032).allowed


def test_denies_ipv4_mapped_banned_address(admission):
    decision = admission.evaluate(INFO_HASH, ANNOUNCE, "::ffff:192.168.1.5")
    assert decision.kind == KIND_BANNED


def test_native_ipv6_is_not_banned(admission):
    assert admission.evaluate(INFO_HASH, ANNOUNCE, "2001:db8::1").allowed


def test_unparseable_address_is_malformed(admission):
    decision = admission.evaluate(INFO_HASH, ANNOUNCE, "bogus")
    assert decision.kind == KIND_MALFORMED


@pytest.mark.parametrize(
    ("info_hash", "params", "reason"),
    [
        (b"short", ANNOUNCE, "invalid info_hash"),
        (INFO_HASH, {"type": "announce", "port": 1}, "missing peer_id"),
        (INFO_HASH, {"type": "announce", "peer_id": b"x" * 20}, "missing port"),
        (INFO_HASH, {**ANNOUNCE, "port": 70000}, "invalid port"),
        (INFO_HASH, {**ANNOUNCE, "malformed": "Bad announce length"}, "Bad announce length"),
        (b"x" * 19, {"type": "scrape"}, "invalid info_hash"),
    ],
)
def test_malformed_requests(admission, info_hash, params, reason):
    decision = admission.evaluate(info_hash, params, "10.0.0.1")
    assert decision.kind == KIND_MALFORMED
    assert decision.reason == reason


def test_malformed_check_runs_before_ban_check(admission):
    decision = admission.evaluate(b"", ANNOUNCE, "192.168.1.5")
    assert decision.kind == KIND_MALFORMED


def test_full_scrape_is_allowed(admission):
    assert admission.evaluate(b"", {"type": "scrape"}, "10.0.0.1").allowed


def test_extensions_run_in_order_after_ban_check(admission):
    calls = []

    def first(info_hash, params, client):
        calls.append("first")
        return True

    def second(info_hash, params, client):
        calls.append("second")
        return False

    def third(info_hash, params, client):
        calls.append("third")
        return True

    admission.register("first", first)
    admission.register("second", second)
    admission.register("third", third)

    decision = admission.evaluate(INFO_HASH, ANNOUNCE, "10.0.0.1")
    assert decision.kind == KIND_DENIED
    assert decision.reason == "Request rejected by second"
    assert calls == ["first", "second"]

    calls.clear()
    banned = admission.evaluate(INFO_HASH, ANNOUNCE, "192.168.1.1")
    assert banned.kind == KIND_BANNED
    assert calls == []


def test_register_and_unregister(admission):
    admission.register("deny_all", lambda *_: False)
    with pytest.raises(ValueError):
        admission.register("deny_all", lambda *_: True)
    assert admission.predicates == ["deny_all"]

    admission.unregister("deny_all")
    admission.unregister("never_registered")
    assert admission.evaluate(INFO_HASH, ANNOUNCE, "10.0.0.1").allowed


def test_ban_added_to_index_applies_immediately():
    index = BanRangeIndex()
    admission = AdmissionFilter(index)
    assert admission(INFO_HASH, ANNOUNCE, "10.0.0.1").allowed

    index.rebuild([BanRange(from_ip=167772161, to_ip=167772161)])
    assert not admission(INFO_HASH, ANNOUNCE, "10.0.0.1").allowed


def test_info_hash_allowlist(admission):
    admission.register("info_hash_allowlist", info_hash_allowlist([INFO_HASH.hex()]))

    assert admission.evaluate(INFO_HASH, ANNOUNCE, "10.0.0.1").allowed
    other = admission.evaluate(b"\x22" * 20, ANNOUNCE, "10.0.0.1")
    assert other.reason == "Request rejected by info_hash_allowlist"


def test_decision_to_error(admission):
    decision = admission.evaluate(INFO_HASH, ANNOUNCE, "192.168.1.1")
    error = decision.to_error()
    assert isinstance(error, AdmissionDenied)
    assert error.kind == KIND_BANNED
    assert "banned" in error.message

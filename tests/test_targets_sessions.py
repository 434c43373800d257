import pytest

from dingtalk_connector.services.dedup import MessageDeduplicator
from dingtalk_connector.services.sessions import SessionRouter, is_reset_command, peer_key
from dingtalk_connector.services.targets import (
    GroupTarget,
    UserTarget,
    normalize_target,
    parse_target,
    resolve_target,
)


class ManualClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("user:abc", UserTarget(user_id="abc")),
        ("group:cidAbC==", GroupTarget(conversation_id="cidAbC==")),
        ("dingtalk-connector:group:cid1", GroupTarget(conversation_id="cid1")),
        ("DD:user:u1", UserTarget(user_id="u1")),
        ("  staff-7 ", UserTarget(user_id="staff-7")),
    ],
)
def test_parse_target(raw, expected) -> None:
    assert parse_target(raw) == expected


@pytest.mark.parametrize("raw", ["", "dingtalk:", "group:", "user:"])
def test_parse_target_rejects_missing_id(raw: str) -> None:
    with pytest.raises(ValueError):
        parse_target(raw)


def test_normalize_target_keeps_case() -> None:
    assert normalize_target("ding:cidXyZ") == "cidXyZ"
    assert normalize_target("") is None


def test_resolve_target() -> None:
    assert resolve_target("2", "cid", "u1") == GroupTarget(conversation_id="cid")
    assert resolve_target("1", "cid", "u1") == UserTarget(user_id="u1")
    with pytest.raises(ValueError):
        resolve_target("1", "cid", None)


def test_peer_key_and_reset_commands() -> None:
    assert peer_key(False, "cid", "u1") == "dingtalk-connector:dm:u1"
    assert peer_key(True, "cid", "u1") == "dingtalk-connector:group:cid"
    assert is_reset_command(" /NEW ")
    assert is_reset_command("/reset")
    assert not is_reset_command("/new chat please")


def test_session_router_rolls_over_after_idle_timeout() -> None:
    clock = ManualClock()
    router = SessionRouter(timeout_minutes=30, clock=clock)
    peer = "dingtalk-connector:dm:u1"

    first = router.resolve(peer)
    clock.now += 29 * 60
    assert router.resolve(peer) == first

    clock.now += 31 * 60
    rolled = router.resolve(peer)
    assert rolled != first
    assert rolled.startswith(peer + ":")
    assert router.current(peer) == rolled


def test_session_router_forgets_idle_peers() -> None:
    clock = ManualClock()
    router = SessionRouter(timeout_minutes=30, clock=clock)

    stale = router.resolve("dingtalk-connector:dm:old")
    clock.now += 20 * 60
    router.resolve("dingtalk-connector:dm:active")
    clock.now += 20 * 60
    router.resolve("dingtalk-connector:dm:active")

    assert len(router) == 1
    assert router.current("dingtalk-connector:dm:old") is None
    returning = router.resolve("dingtalk-connector:dm:old")
    assert returning != stale
    assert returning.startswith("dingtalk-connector:dm:old:")
    assert len(router) == 2


def test_session_router_reset_and_disabled_timeout() -> None:
    clock = ManualClock()
    router = SessionRouter(timeout_minutes=0, clock=clock)
    peer = "dingtalk-connector:group:cid"

    original = router.resolve(peer)
    clock.now += 10**7
    assert router.resolve(peer) == original

    fresh = router.reset(peer)
    assert fresh != original
    assert router.resolve(peer) == fresh


def test_deduplicator_drops_redelivery_within_ttl() -> None:
    clock = ManualClock()
    dedup = MessageDeduplicator(ttl_seconds=60, clock=clock)

    assert dedup.check_and_remember("m1")
    assert not dedup.check_and_remember("m1")
    assert dedup.check_and_remember("m2")

    clock.now += 61
    assert dedup.check_and_remember("m1")
    assert len(dedup) == 1


def test_deduplicator_passes_missing_ids_and_zero_ttl() -> None:
    assert MessageDeduplicator(ttl_seconds=60).check_and_remember(None)
    disabled = MessageDeduplicator(ttl_seconds=0)
    assert disabled.check_and_remember("m1")
    assert disabled.check_and_remember("m1")

from adspulse.config import settings
from adspulse.domain.kv import InMemoryExpiringKeyStore
from adspulse.domain.replay import ReplayGuard, build_replay_key, clear_replay_keys, register_replay_key


class FakeClock:
    def __init__(self, now_ms: int = 1_700_000_000_000):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


def test_replay_key_includes_source_id_when_present():
    assert build_replay_key("meta", "meta.conversion_event", "evt-9") == "meta:meta.conversion_event:evt-9"
    assert build_replay_key("meta", "meta.conversion_event", None) == "meta:meta.conversion_event"
    assert build_replay_key("meta", "meta.conversion_event", "") == "meta:meta.conversion_event"


def test_first_sighting_then_duplicate_then_expiry():
    clock = FakeClock()
    guard = ReplayGuard(default_window_ms=1_000, clock=clock)

    first = guard.register("shopify:shopify.orders:1")
    assert first.duplicate is False
    assert first.expires_at_ms == clock.now_ms + 1_000

    clock.advance(999)
    second = guard.register("shopify:shopify.orders:1")
    assert second.duplicate is True
    assert second.expires_at_ms == first.expires_at_ms

    clock.advance(1)
    third = guard.register("shopify:shopify.orders:1")
    assert third.duplicate is False
    assert third.expires_at_ms == clock.now_ms + 1_000


def test_duplicates_do_not_extend_the_window():
    clock = FakeClock()
    guard = ReplayGuard(default_window_ms=500, clock=clock)
    guard.register("k")
    for _ in range(4):
        clock.advance(100)
        assert guard.register("k").duplicate is True
    clock.advance(100)
    assert guard.register("k").duplicate is False


def test_expired_entries_are_purged_on_every_call():
    clock = FakeClock()
    store = InMemoryExpiringKeyStore()
    guard = ReplayGuard(store, default_window_ms=100, clock=clock)
    guard.register("a")
    guard.register("b")
    assert len(store) == 2
    clock.advance(150)
    guard.register("c")
    assert len(store) == 1


def test_explicit_window_overrides_default():
    clock = FakeClock()
    guard = ReplayGuard(default_window_ms=10_000, clock=clock)
    registration = guard.register("k", window_ms=50)
    assert registration.expires_at_ms == clock.now_ms + 50


def test_default_window_comes_from_settings(monkeypatch):
    monkeypatch.setattr(settings, "webhook_replay_window_seconds", 7)
    assert ReplayGuard().default_window_ms == 7_000


def test_process_guard_helpers():
    clear_replay_keys()
    assert register_replay_key("hubspot:hubspot.crm_event:x").duplicate is False
    assert register_replay_key("hubspot:hubspot.crm_event:x").duplicate is True
    clear_replay_keys()
    assert register_replay_key("hubspot:hubspot.crm_event:x").duplicate is False
    clear_replay_keys()

import pytest

from azmachine.ttllru import LRUCache, TTLLRUCache, new

DEFAULT_CACHE_DURATION = 30.0


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backing():
    return LRUCache(128)


@pytest.fixture
def subject(backing, clock):
    return TTLLRUCache(DEFAULT_CACHE_DURATION, backing, clock=clock)


def test_new():
    cache = new(128, DEFAULT_CACHE_DURATION)
    cache.add("foo", "bar")
    assert cache.get("foo") == "bar"


def test_new_rejects_non_positive_size():
    with pytest.raises(ValueError, match="failed to build new LRU cache"):
        new(0, DEFAULT_CACHE_DURATION)


def test_add_stores_value_with_fresh_touch(subject, backing, clock):
    subject.add("foo", "bar")
    assert "foo" in backing
    value, expiration = subject.peek("foo")
    assert value == "bar"
    assert expiration == clock.now + DEFAULT_CACHE_DURATION


def test_get_no_items_in_cache(subject):
    with pytest.raises(KeyError):
        subject.get("not_there")


def test_get_existing_item_not_expired(subject):
    subject.add("key", "value")
    assert subject.get("key") == "value"


def test_get_existing_item_expired(subject, backing, clock):
    subject.add("key", "value")
    clock.now += 10 + DEFAULT_CACHE_DURATION
    with pytest.raises(KeyError):
        subject.get("key")
    assert "key" not in backing


def test_get_advances_last_touch(subject, clock):
    subject.add("key", "value")
    clock.now += DEFAULT_CACHE_DURATION - 10
    assert subject.get("key") == "value"
    clock.now += DEFAULT_CACHE_DURATION - 10
    # Still alive only because the previous get refreshed it.
    assert subject.get("key") == "value"
    _, expiration = subject.peek("key")
    assert expiration == clock.now + DEFAULT_CACHE_DURATION


def test_get_existing_item_is_not_ttl_item(subject, backing):
    backing.add("key", "value")
    with pytest.raises(KeyError):
        subject.get("key")


def test_peek_does_not_refresh(subject, clock):
    subject.add("key", "value")
    start = clock.now
    clock.now += 20
    assert subject.peek("key") == ("value", start + DEFAULT_CACHE_DURATION)
    clock.now += 20
    with pytest.raises(KeyError):
        subject.peek("key")


def test_remove(subject):
    subject.add("key", "value")
    assert subject.remove("key") is True
    assert subject.remove("key") is False
    with pytest.raises(KeyError):
        subject.get("key")


def test_lru_evicts_least_recently_used():
    cache = LRUCache(2)
    assert cache.add("a", 1) is False
    assert cache.add("b", 2) is False
    assert cache.get("a") == 1
    assert cache.add("c", 3) is True
    assert "b" not in cache
    assert cache.get("a") == 1
    assert cache.get("c") == 3
    assert len(cache) == 2


def test_lru_update_existing_does_not_evict():
    cache = LRUCache(1)
    cache.add("a", 1)
    assert cache.add("a", 2) is False
    assert cache.get("a") == 2


def test_lru_remove_reports_presence():
    cache = LRUCache(4)
    cache.add("a", 1)
    assert cache.remove("a") is True
    assert cache.remove("a") is False
    with pytest.raises(KeyError):
        cache.get("a")


def test_lru_rejects_bad_size():
    with pytest.raises(ValueError):
        LRUCache(-1)
from nmc_prep.core.cache import (
    ProgressStore, RedisCancellationToken, RedisLatch, TokenDenylist, progress_key, view_key,
)
from nmc_prep.core.config import settings

from conftest import BrokenRedis, FakeRedis


def test_save_and_load(progress, fake_redis):
    key = progress_key("u1", "s1")
    assert progress.load(key) is None
    assert progress.save(key, {"current_index": 3, "answers": {"q1": "A"}})
    assert progress.load(key) == {"current_index": 3, "answers": {"q1": "A"}}
    assert fake_redis.ttl[key] == 60

def test_keys_are_per_user_session_and_device():
    assert progress_key("u1", "s1") != progress_key("u2", "s1")
    assert view_key("u1", "phone") != view_key("u1", "laptop")

def test_unreadable_state_is_discarded(progress, fake_redis):
    fake_redis.set("k", "{not json")
    assert progress.load("k") is None
    fake_redis.set("k", "[1, 2]")
    assert progress.load("k") is None

def test_broken_redis_is_not_fatal():
    store = ProgressStore(client=BrokenRedis())
    assert store.load("k") is None
    assert store.save("k", {"a": 1}) is False
    store.delete("k")

def test_latch_is_one_shot_until_reset():
    r = FakeRedis()
    a, b = RedisLatch("submit:s1", client=r), RedisLatch("submit:s1", client=r)
    assert a.acquire() and not b.acquire()
    a.reset()
    assert b.acquire()

def test_abandoned_latch_frees_itself_after_its_ttl():
    r = FakeRedis()
    assert RedisLatch("submit:s2", client=r).acquire()
    assert r.ttl["submit:s2"] == settings.SUBMIT_LATCH_TTL_SECONDS <= 60
    assert not RedisLatch("submit:s2", client=r).acquire()
    r.lapse("submit:s2")
    assert RedisLatch("submit:s2", client=r).acquire()

def test_cancellation_token():
    r = FakeRedis()
    token = RedisCancellationToken("s1", client=r)
    assert not token.is_cancelled()
    RedisCancellationToken("s1", client=r).cancel()
    assert token.is_cancelled()
    token.clear()
    assert not token.is_cancelled()

def test_denylist():
    d = TokenDenylist(client=FakeRedis())
    d.add("abc")
    assert d.contains("abc") and not d.contains("def")

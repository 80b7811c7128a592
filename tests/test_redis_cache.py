"""RedisCache helpers exercised against an in-process fake client."""

from datetime import datetime, timedelta, timezone

from estatevault.storage.redis_cache import RedisCache


class FakeAsyncRedis:
    def __init__(self):
        self.values = {}
        self.expiry = {}

    async def set(self, key, value, ex=None):
        self.values[key] = value
        self.expiry[key] = ex

    async def exists(self, key):
        return int(key in self.values)


class FakeBucket:
    def __init__(self, result):
        self.result = result
        self.calls = []

    async def __call__(self, keys, args):
        self.calls.append((keys, args))
        return self.result


def _cache(bucket_result=(1, 4, 0)) -> RedisCache:
    cache: RedisCache = RedisCache.__new__(RedisCache)
    cache.redis_url = "redis://unused"
    cache.client = FakeAsyncRedis()
    cache._token_bucket = FakeBucket(list(bucket_result))
    return cache


def test_rate_keys_are_hashed():
    key = RedisCache._normalize_rate_key("login:email:a@example.com")
    assert key.startswith(RedisCache.RATE_PREFIX)
    assert "a@example.com" not in key


def test_ttl_is_clamped_and_accepts_naive_times():
    assert RedisCache._ttl_seconds(datetime.now(timezone.utc) - timedelta(hours=1)) == 1
    naive = datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(minutes=10)
    assert 590 <= RedisCache._ttl_seconds(naive) <= 600


async def test_blacklist_round_trip():
    cache = _cache()
    await cache.blacklist_token("abc", datetime.now(timezone.utc) + timedelta(minutes=5))
    assert await cache.is_token_blacklisted("abc")
    assert not await cache.is_token_blacklisted("other")
    assert 0 < cache.client.expiry[RedisCache.BLACKLIST_PREFIX + "abc"] <= 300


async def test_rate_limit_reports_remaining():
    cache = _cache((0, "0.4", 3))
    allowed, remaining, reset = await cache.check_rate_limit(
        "signup:ip:1.2.3.4", 5, 60, return_remaining=True
    )
    assert (allowed, remaining, reset) == (False, 0, 3)
    keys, args = cache._token_bucket.calls[0]
    assert keys[0].startswith(RedisCache.RATE_PREFIX)
    assert args[1:] == [5 / 60, 5, 1]


def test_local_buckets_refuse_past_capacity():
    from estatevault.service.runtime import LocalBuckets

    buckets = LocalBuckets()
    results = [buckets.take("login:ip:1.2.3.4", 3, 60) for _ in range(4)]
    assert [allowed for allowed, _, _ in results] == [True, True, True, False]
    allowed, remaining, wait = results[-1]
    assert remaining == 0 and 1 <= wait <= 21
    assert buckets.take("login:ip:5.6.7.8", 3, 60)[0]

import redis

from services.cache_service import CacheService


def test_active_quiz_round_trip(stub_redis):
    cache = CacheService(client=stub_redis)
    quiz = {"quiz_id": "q1", "note_id": 3, "questions": [{"question": "Q", "correctAnswer": "true"}]}

    assert cache.cache_active_quiz("q1", quiz, ttl=60) is True
    assert stub_redis.expiry["active_quiz:q1"] == 60
    assert cache.get_active_quiz("q1") == quiz

    assert cache.clear_active_quiz("q1") is True
    assert cache.get_active_quiz("q1") is None


def test_rate_limit_blocks_after_limit(stub_redis):
    cache = CacheService(client=stub_redis)

    assert [cache.increment_rate_limit("user:1", limit=2, window=600) for _ in range(3)] == [True, True, False]
    status = cache.get_rate_limit_status("user:1", limit=2, window=600)
    assert status["allowed"] is False
    assert status["remaining"] == 0
    assert status["resets_in"] == 600
    assert cache.increment_rate_limit("user:2", limit=2) is True


def test_stats_report_connected(stub_redis):
    cache = CacheService(client=stub_redis)
    cache.cache_active_quiz("q1", {"questions": []})

    stats = cache.get_cache_stats()
    assert stats["status"] == "connected"
    assert stats["stats"]["total_keys"] == 1


def test_unreachable_redis_degrades_gracefully(monkeypatch):
    class UnreachableRedis:
        def __init__(self, **kwargs):
            pass

        def ping(self):
            raise redis.ConnectionError("connection refused")

    monkeypatch.setattr(redis, "Redis", UnreachableRedis)
    cache = CacheService()

    assert cache.is_connected is False
    assert cache.cache_active_quiz("q1", {}) is False
    assert cache.get_active_quiz("q1") is None
    assert cache.increment_rate_limit("user:1", limit=0) is True
    assert cache.get_cache_stats() == {"status": "disconnected", "stats": {}}

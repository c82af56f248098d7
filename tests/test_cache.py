import time
from infinitequiz.cache import (
    MemoryCache, cache_leaderboard, get_cached_leaderboard, invalidate_leaderboard_cache,
    cache_question_bank, get_cached_question_bank, leaderboard_version,
)


def test_memory_cache_set_get_and_expire():
    c = MemoryCache()
    c.set('k', 'v', ttl_seconds=1)
    assert c.get('k') == 'v'
    time.sleep(1.1)
    assert c.get('k') is None
    assert c.cleanup_expired() == 0
    stats = c.get_stats()
    assert stats['hits'] == 1 and stats['misses'] == 1 and stats['evictions'] == 1


def test_cleanup_and_delete():
    c = MemoryCache()
    c.set('gone', 1, ttl_seconds=-1)
    c.set('kept', 2)
    assert c.cleanup_expired() == 1
    assert c.delete('kept') is True
    assert c.delete('kept') is False
    assert c.get_stats()['cache_size'] == 0


def test_leaderboard_and_bank_helpers():
    rows = [{"name": "alice", "score": 3}]
    cache_leaderboard("ROOM01", rows)
    assert get_cached_leaderboard("ROOM01") == rows
    assert get_cached_leaderboard("ROOM02") is None
    invalidate_leaderboard_cache("ROOM01")
    assert get_cached_leaderboard("ROOM01") is None

    cache_question_bank("ARD", [{"question": "?"}])
    assert get_cached_question_bank("ARD") == [{"question": "?"}]


def test_stale_leaderboard_fill_is_dropped():
    version = leaderboard_version("ROOM03")
    invalidate_leaderboard_cache("ROOM03")
    assert leaderboard_version("ROOM03") == version + 1
    assert cache_leaderboard("ROOM03", [{"score": 0}], version=version) is False
    assert get_cached_leaderboard("ROOM03") is None
    assert cache_leaderboard("ROOM03", [{"score": 7}], version=version + 1) is True
    assert get_cached_leaderboard("ROOM03") == [{"score": 7}]

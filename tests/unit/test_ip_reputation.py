"""Unit tests for the Redis-backed IP reputation store"""

import redis
from unittest.mock import MagicMock
from auction_gateway.infrastructure.cache.ip_reputation import ATTEMPTS_KEY, SUSPICIOUS_KEY, IPReputationStore

IP = "198.51.100.4"


def test_unflagged_ip_is_clean(ip_store):
    rep = ip_store.check_suspicious_ip(IP)

    assert rep.is_suspicious is False
    assert rep.reason is None


def test_flag_is_stored_with_ttl(ip_store, redis_client):
    ip_store.flag_suspicious_ip(IP, "card testing")

    rep = ip_store.check_suspicious_ip(IP)
    assert rep.is_suspicious is True
    assert rep.reason == "card testing"
    assert rep.flagged_at is not None
    assert 0 < redis_client.ttl(SUSPICIOUS_KEY.format(ip=IP)) <= 86_400


def test_custom_ttl_overrides_default(ip_store, redis_client):
    ip_store.flag_suspicious_ip(IP, "short ban", ttl_seconds=60)

    assert 0 < redis_client.ttl(SUSPICIOUS_KEY.format(ip=IP)) <= 60


def test_expired_flag_is_forgotten(ip_store, redis_client):
    ip_store.flag_suspicious_ip(IP, "old incident")
    redis_client.delete(SUSPICIOUS_KEY.format(ip=IP))

    assert ip_store.check_suspicious_ip(IP).is_suspicious is False


def test_attempts_are_counted_per_ip_and_user(ip_store, redis_client):
    for _ in range(3):
        ip_store.track_attempt(IP, "alice")
    ip_store.track_attempt(IP, "bob")

    assert ip_store.attempt_count(IP, "alice") == 3
    assert ip_store.attempt_count(IP, "bob") == 1
    assert ip_store.attempt_count("192.0.2.1", "alice") == 0
    assert 0 < redis_client.ttl(ATTEMPTS_KEY.format(ip=IP, user_id="alice")) <= 3600


def test_reputation_combines_flag_and_attempts(ip_store):
    ip_store.flag_suspicious_ip(IP, "chargeback")
    ip_store.track_attempt(IP, "alice")
    ip_store.track_attempt(IP, "alice")

    rep = ip_store.reputation(IP, "alice")

    assert rep.is_suspicious is True
    assert rep.attempts == 2


def test_cache_outage_fails_open():
    broken = MagicMock(spec=redis.Redis)
    broken.get.side_effect = redis.ConnectionError("down")
    broken.incr.side_effect = redis.ConnectionError("down")
    store = IPReputationStore(broken)

    rep = store.reputation(IP, "alice")

    assert rep.is_suspicious is False
    assert rep.attempts == 0
    assert store.track_attempt(IP, "alice") == 0

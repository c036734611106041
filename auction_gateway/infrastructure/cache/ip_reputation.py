"""Shared IP reputation and attempt counters backed by Redis TTL keys"""

import json
import logging
from typing import Optional
import redis
from auction_gateway.config import settings
from auction_gateway.domain.models import IPReputation
from auction_gateway.utils.date_utils import utcnow

logger = logging.getLogger(__name__)

SUSPICIOUS_KEY = "ip:suspicious:{ip}"
ATTEMPTS_KEY = "ip:attempts:{ip}:{user_id}"


class IPReputationStore:
    """
    Suspicious-IP flags and per-(IP, user) attempt counters.

    Expiry is handled by Redis itself so every gateway instance sees the same
    state and nothing is lost on restart. Reads fail open: if Redis is down
    the IP is treated as clean.
    """

    def __init__(
        self,
        client: redis.Redis,
        flag_ttl_seconds: int | None = None,
        attempt_window_seconds: int | None = None,
    ):
        self.client = client
        self.flag_ttl_seconds = flag_ttl_seconds or settings.suspicious_ip_ttl_seconds
        self.attempt_window_seconds = attempt_window_seconds or settings.ip_attempt_window_seconds

    def flag_suspicious_ip(self, ip_address: str, reason: str, ttl_seconds: int | None = None) -> None:
        """Mark an IP suspicious until the TTL elapses (default 24h)"""
        payload = json.dumps({"reason": reason, "flagged_at": utcnow().isoformat()})
        self.client.set(
            SUSPICIOUS_KEY.format(ip=ip_address),
            payload,
            ex=ttl_seconds or self.flag_ttl_seconds,
        )
        logger.warning(
            "IP flagged as suspicious",
            extra={"ip_address": ip_address, "reason": reason, "step": "ip_flagged"},
        )

    def check_suspicious_ip(self, ip_address: str) -> IPReputation:
        try:
            raw: Optional[str] = self.client.get(SUSPICIOUS_KEY.format(ip=ip_address))
        except redis.RedisError as e:
            logger.error(f"IP reputation lookup failed: {e}", extra={"ip_address": ip_address})
            return IPReputation(ip_address=ip_address)

        if raw is None:
            return IPReputation(ip_address=ip_address)

        data = json.loads(raw)
        return IPReputation(
            ip_address=ip_address,
            is_suspicious=True,
            reason=data.get("reason"),
            flagged_at=data.get("flagged_at"),
        )

    def attempt_count(self, ip_address: str, user_id: str) -> int:
        try:
            value = self.client.get(ATTEMPTS_KEY.format(ip=ip_address, user_id=user_id))
        except redis.RedisError as e:
            logger.error(f"Attempt counter lookup failed: {e}", extra={"ip_address": ip_address})
            return 0
        return int(value) if value is not None else 0

    def track_attempt(self, ip_address: str, user_id: str) -> int:
        """Increment the (IP, user) counter; the window starts at the first attempt"""
        key = ATTEMPTS_KEY.format(ip=ip_address, user_id=user_id)
        try:
            count = self.client.incr(key)
            if count == 1:
                self.client.expire(key, self.attempt_window_seconds)
            return count
        except redis.RedisError as e:
            logger.error(f"Attempt tracking failed: {e}", extra={"ip_address": ip_address})
            return 0

    def reputation(self, ip_address: str, user_id: str) -> IPReputation:
        """Flag state plus attempt count, the risk scorer's IP input"""
        rep = self.check_suspicious_ip(ip_address)
        rep.attempts = self.attempt_count(ip_address, user_id)
        return rep

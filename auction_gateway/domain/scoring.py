"""Transaction risk scoring - pure rules gating payment initiation"""

from datetime import datetime, timedelta
from typing import List, Optional
from auction_gateway.domain.models import (
    FLAG_FIRST_TRANSACTION,
    FLAG_HIGH_VALUE,
    FLAG_HIGH_VELOCITY_IP,
    FLAG_MULTIPLE_FAILED,
    FLAG_SUSPICIOUS_IP,
    FLAG_UNUSUAL_AMOUNT,
    HistoryEntry,
    IPReputation,
    PaymentCandidate,
    PaymentStatus,
    RiskAssessment,
    RiskLevel,
)
from auction_gateway.utils.date_utils import utcnow

HIGH_VALUE_THRESHOLD = 10_000
IP_ATTEMPT_LIMIT = 4
UNUSUAL_AMOUNT_DEVIATION = 2.0
FAILED_ATTEMPT_LIMIT = 3
FAILED_LOOKBACK = timedelta(hours=24)


def determine_risk_level(score: int) -> RiskLevel:
    """
    Map fraud score to risk tier.

    - 70+:   high   (blocked)
    - 40-69: medium (allowed, recorded for review)
    - <40:   low
    """
    if score >= 70:
        return RiskLevel.HIGH
    elif score >= 40:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def is_unusual_amount(amount: int, history: List[HistoryEntry]) -> bool:
    """True if amount deviates from the historical mean by more than 200%"""
    if not history:
        return False

    mean = sum(entry.amount for entry in history) / len(history)
    if mean <= 0:
        return False

    return abs(amount - mean) / mean > UNUSUAL_AMOUNT_DEVIATION


def count_recent_failures(history: List[HistoryEntry], now: datetime) -> int:
    cutoff = now - FAILED_LOOKBACK
    return sum(
        1 for entry in history
        if entry.status == PaymentStatus.FAILED.value and entry.created_at > cutoff
    )


def score_transaction(
    candidate: PaymentCandidate,
    history: Optional[List[HistoryEntry]],
    ip_reputation: IPReputation,
    now: datetime | None = None,
    high_value_threshold: int = HIGH_VALUE_THRESHOLD,
) -> RiskAssessment:
    """
    Compute fraud score and risk tier for a candidate payment.

    Rules are additive, every matching rule contributes:
    - +30 amount at or above the high-value threshold
    - +40 source IP currently flagged suspicious
    - +25 four or more prior attempts from the same (IP, user) pair
    - +15 no prior transaction history
    - +20 amount more than 200% away from the historical mean
    - +35 three or more failed transactions in the last 24h

    `history=None` means the history could not be loaded; the history-based
    rules are skipped rather than treating the user as new.
    """
    now = now or utcnow()
    score = 0
    flags: List[str] = []

    if candidate.amount >= high_value_threshold:
        score += 30
        flags.append(FLAG_HIGH_VALUE)

    if ip_reputation.is_suspicious:
        score += 40
        flags.append(FLAG_SUSPICIOUS_IP)

    if ip_reputation.attempts >= IP_ATTEMPT_LIMIT:
        score += 25
        flags.append(FLAG_HIGH_VELOCITY_IP)

    if history is not None:
        if not history:
            score += 15
            flags.append(FLAG_FIRST_TRANSACTION)

        if is_unusual_amount(candidate.amount, history):
            score += 20
            flags.append(FLAG_UNUSUAL_AMOUNT)

        if count_recent_failures(history, now) >= FAILED_ATTEMPT_LIMIT:
            score += 35
            flags.append(FLAG_MULTIPLE_FAILED)

    return RiskAssessment(score=score, flags=flags, risk_level=determine_risk_level(score))

"""Unit tests for payment screening"""

import pytest
import redis
from datetime import timedelta
from unittest.mock import MagicMock, patch
from prometheus_client import REGISTRY
from sqlalchemy.exc import OperationalError
from auction_gateway.config import Settings
from auction_gateway.domain.models import FLAG_FIRST_TRANSACTION, FLAG_SUSPICIOUS_IP, RiskLevel
from auction_gateway.infrastructure.cache.ip_reputation import IPReputationStore
from auction_gateway.infrastructure.database.repositories import PaymentRepository
from auction_gateway.services.validation import DUPLICATE_MESSAGE, FRAUD_BLOCK_MESSAGE, TransactionValidator
from auction_gateway.utils.date_utils import utcnow

IP = "203.0.113.7"


@pytest.fixture
def config() -> Settings:
    return Settings(min_payment_amount=10, max_payment_amount=100_000, payment_velocity_limit=3)


@pytest.fixture
def validator(db, ip_store, config) -> TransactionValidator:
    return TransactionValidator(db, ip_store, config)


def db_error() -> OperationalError:
    return OperationalError("SELECT", {}, Exception("connection refused"))


def fail_open_count(check: str) -> float:
    return REGISTRY.get_sample_value("payment_check_fail_open_total", {"check": check}) or 0.0


@pytest.mark.parametrize("amount", [10, 500, 100_000])
def test_amount_within_bounds_is_allowed(validator, amount):
    result = validator.validate("buyer", amount, IP)

    assert result.allowed is True
    assert result.errors == []


def test_amount_below_minimum(validator):
    result = validator.validate("buyer", 9, IP)

    assert result.allowed is False
    assert result.denial == "amount"
    assert result.errors == ["Amount must be at least NPR 10"]


def test_amount_above_maximum(validator):
    result = validator.validate("buyer", 100_001, IP)

    assert result.allowed is False
    assert result.denial == "amount"
    assert result.errors == ["Amount cannot exceed NPR 100000"]


def test_amount_failure_short_circuits_later_checks(validator, ip_store):
    validator.validate("buyer", 5, IP)

    # Scoring never ran, so the attempt was not counted
    assert ip_store.attempt_count(IP, "buyer") == 0


def test_velocity_limit_counts_pending_and_success_in_window(validator, make_transaction):
    make_transaction("t1", amount=100, status="pending")
    make_transaction("t2", amount=200, status="success")
    make_transaction("t3", amount=300, status="success")

    result = validator.validate("buyer", 400, IP)

    assert result.allowed is False
    assert result.denial == "velocity"
    assert "Maximum 3 transactions per hour" in result.errors[0]


def test_velocity_ignores_failed_and_old_transactions(validator, make_transaction):
    make_transaction("t1", amount=100, status="failed")
    make_transaction("t2", amount=200, status="failed")
    make_transaction("t3", amount=300, status="success", created_at=utcnow() - timedelta(hours=2))
    make_transaction("t4", amount=300, status="success")

    result = validator.validate("buyer", 400, IP)

    assert result.denial != "velocity"


def test_duplicate_pending_same_amount_is_denied(validator, make_transaction):
    make_transaction("t1", amount=500, status="pending")

    result = validator.validate("buyer", 500, IP)

    assert result.allowed is False
    assert result.denial == "duplicate"
    assert result.errors == [DUPLICATE_MESSAGE]


def test_duplicate_window_only_covers_recent_pending(validator, make_transaction):
    make_transaction("t1", amount=500, status="pending", created_at=utcnow() - timedelta(minutes=10))
    make_transaction("t2", amount=600, status="success")

    assert validator.validate("buyer", 500, IP).allowed is True
    assert validator.validate("buyer", 600, IP).denial != "duplicate"


def test_other_users_transactions_do_not_count(validator, make_transaction):
    for i in range(3):
        make_transaction(f"t{i}", user_id="someone-else", amount=500)

    assert validator.validate("buyer", 500, IP).allowed is True


def test_high_risk_payment_is_blocked(validator, ip_store):
    ip_store.flag_suspicious_ip(IP, "chargeback")

    result = validator.validate("new-user", 15_000, IP)

    assert result.allowed is False
    assert result.denial == "fraud"
    assert result.errors == [FRAUD_BLOCK_MESSAGE]
    assert result.fraud_score == 85
    assert result.risk_level == RiskLevel.HIGH


def test_flagged_ip_adds_warning_but_medium_risk_is_allowed(validator, ip_store, make_transaction):
    make_transaction("t1", amount=500, status="success", created_at=utcnow() - timedelta(days=3))
    ip_store.flag_suspicious_ip(IP, "chargeback")

    result = validator.validate("buyer", 500, IP)

    assert result.allowed is True
    assert result.warnings == ["IP flagged: chargeback"]
    assert result.risk_level == RiskLevel.MEDIUM
    assert FLAG_SUSPICIOUS_IP in result.flags


def test_screening_counts_ip_attempts(validator, ip_store):
    for amount in (100, 200, 300, 400):
        validator.validate("buyer", amount, IP)

    assert ip_store.attempt_count(IP, "buyer") == 4


def test_velocity_check_fails_open(validator):
    before = fail_open_count("velocity")

    with patch.object(PaymentRepository, "count_recent", side_effect=db_error()):
        result = validator.validate("buyer", 500, IP)

    assert result.allowed is True
    assert fail_open_count("velocity") == before + 1


def test_duplicate_check_fails_open(validator):
    before = fail_open_count("duplicate")

    with patch.object(PaymentRepository, "find_pending_duplicate", side_effect=db_error()):
        result = validator.validate("buyer", 500, IP)

    assert result.allowed is True
    assert fail_open_count("duplicate") == before + 1


def test_unavailable_history_skips_history_rules(validator):
    with patch.object(PaymentRepository, "recent_history", side_effect=db_error()):
        result = validator.validate("buyer", 500, IP)

    assert result.allowed is True
    assert FLAG_FIRST_TRANSACTION not in result.flags
    assert "Transaction history unavailable; history checks skipped" in result.warnings


def test_unreachable_reputation_cache_treats_ip_as_clean(db, config):
    broken = MagicMock(spec=redis.Redis)
    broken.get.side_effect = redis.ConnectionError("down")
    broken.incr.side_effect = redis.ConnectionError("down")
    validator = TransactionValidator(db, IPReputationStore(broken), config)

    result = validator.validate("buyer", 500, IP)

    assert result.allowed is True
    assert FLAG_SUSPICIOUS_IP not in result.flags

"""Domain models - pure Python dataclasses representing business entities"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AuctionStatus(str, Enum):
    ACTIVE = "active"
    SOLD = "sold"
    EXPIRED = "expired"


# Risk signal tags recorded on transactions and audit entries
FLAG_HIGH_VALUE = "high_value_transaction"
FLAG_SUSPICIOUS_IP = "suspicious_ip"
FLAG_HIGH_VELOCITY_IP = "high_velocity_ip"
FLAG_FIRST_TRANSACTION = "first_transaction"
FLAG_UNUSUAL_AMOUNT = "unusual_amount"
FLAG_MULTIPLE_FAILED = "multiple_failed_attempts"
FLAG_DUPLICATE_ATTEMPT = "duplicate_attempt"
FLAG_INVALID_SIGNATURE = "invalid_signature"


@dataclass
class BidRecord:
    """Accepted bid, immutable once written"""

    bidder_id: str
    amount: int
    timestamp: datetime


@dataclass
class AuctionSnapshot:
    """Committed auction state, bids newest first"""

    id: str
    name: str
    seller_id: str
    starting_price: int
    current_price: int
    end_time: datetime
    status: str
    bids: List[BidRecord] = field(default_factory=list)

    @property
    def leading_bidder_id(self) -> Optional[str]:
        return self.bids[0].bidder_id if self.bids else None


@dataclass
class BidPlacement:
    """Outcome of a successful bid"""

    auction: AuctionSnapshot
    bid: BidRecord
    previous_leader_id: Optional[str]
    prior_bidder_ids: List[str]


@dataclass
class HistoryEntry:
    """Past payment transaction used as risk-scoring input"""

    amount: int
    status: str
    created_at: datetime


@dataclass
class PaymentCandidate:
    """Payment the user is trying to start"""

    user_id: str
    amount: int
    ip_address: str
    user_agent: str = "unknown"


@dataclass
class IPReputation:
    """Reputation of a source IP as seen by the shared cache"""

    ip_address: str
    is_suspicious: bool = False
    reason: Optional[str] = None
    flagged_at: Optional[str] = None
    attempts: int = 0


@dataclass
class RiskAssessment:
    """Output of the risk scorer"""

    score: int
    flags: List[str]
    risk_level: RiskLevel


@dataclass
class ValidationResult:
    """Allow/deny decision gating a payment initiation"""

    allowed: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    fraud_score: int = 0
    risk_level: RiskLevel = RiskLevel.LOW
    flags: List[str] = field(default_factory=list)
    denial: Optional[str] = None  # amount | velocity | duplicate | fraud

    def deny(self, denial: str, reason: str) -> "ValidationResult":
        self.allowed = False
        self.denial = denial
        self.errors.append(reason)
        return self


@dataclass
class PaymentInitiation:
    """Pending transaction plus the signed gateway form for the client redirect"""

    transaction_id: str
    amount: int
    gateway_url: str
    form_data: Dict[str, str]
    validation: ValidationResult


@dataclass
class GatewayCallback:
    """Decoded gateway redirect payload"""

    transaction_id: str
    status: str
    total_amount: str
    raw: Dict[str, Any]


@dataclass
class SettlementResult:
    transaction_id: str
    already_processed: bool
    status: str = "success"
    user_id: Optional[str] = None
    amount: Optional[int] = None


@dataclass
class PaymentConfirmation:
    """Outcome of a client-polled confirmation"""

    transaction_id: str
    status: str
    already_processed: bool = False


@dataclass
class ReconciliationReport:
    credited: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

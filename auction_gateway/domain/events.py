"""Typed event payloads for the audit trail and the real-time channel.

Each event kind is its own dataclass so the fields it carries are fixed;
`event_data()` / `to_payload()` render it for storage or publishing.
"""

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Any, ClassVar, Dict, List, Optional


# --- Audit trail ---

@dataclass(kw_only=True)
class AuditEvent:
    """Common audit context; subclasses add the event-specific fields"""

    event_type: ClassVar[str]
    status: ClassVar[str] = "info"

    transaction_id: str
    user_id: Optional[str] = None
    ip_address: str = "unknown"
    user_agent: Optional[str] = None
    security_flags: List[str] = field(default_factory=list)

    _context_fields: ClassVar[tuple] = ("transaction_id", "user_id", "ip_address", "user_agent", "security_flags")

    @property
    def error_message(self) -> Optional[str]:
        return None

    @property
    def error_code(self) -> Optional[str]:
        return None

    def event_data(self) -> Dict[str, Any]:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name not in self._context_fields
        }


@dataclass(kw_only=True)
class PaymentInitiated(AuditEvent):
    event_type: ClassVar[str] = "payment_initiated"
    status: ClassVar[str] = "success"

    amount: int
    fraud_score: int
    risk_level: str


@dataclass(kw_only=True)
class PaymentInitiationDenied(AuditEvent):
    event_type: ClassVar[str] = "payment_initiated"
    status: ClassVar[str] = "failure"

    amount: int
    fraud_score: int
    denial: str
    reasons: List[str]

    @property
    def error_message(self) -> Optional[str]:
        return ", ".join(self.reasons)


@dataclass(kw_only=True)
class VerificationAttempt(AuditEvent):
    event_type: ClassVar[str] = "verification_attempt"

    gateway_status: str


@dataclass(kw_only=True)
class GatewayStatusVerified(AuditEvent):
    event_type: ClassVar[str] = "webhook_validated"
    status: ClassVar[str] = "success"

    gateway_status: str


@dataclass(kw_only=True)
class WebhookRejected(AuditEvent):
    event_type: ClassVar[str] = "webhook_rejected"
    status: ClassVar[str] = "failure"

    reason: str

    @property
    def error_message(self) -> Optional[str]:
        return self.reason


@dataclass(kw_only=True)
class PaymentCompleted(AuditEvent):
    event_type: ClassVar[str] = "payment_completed"
    status: ClassVar[str] = "success"

    amount: int
    wallet_updated: bool = True


@dataclass(kw_only=True)
class DuplicateSettlementAttempt(AuditEvent):
    event_type: ClassVar[str] = "payment_completed"
    status: ClassVar[str] = "warning"

    current_status: Optional[str] = None

    @property
    def error_message(self) -> Optional[str]:
        return "Duplicate processing attempt"


@dataclass(kw_only=True)
class WalletCredited(AuditEvent):
    event_type: ClassVar[str] = "wallet_updated"
    status: ClassVar[str] = "success"

    amount: int
    transaction_type: str = "credit"
    reconciled: bool = False


@dataclass(kw_only=True)
class WalletCreditFailed(AuditEvent):
    event_type: ClassVar[str] = "wallet_updated"
    status: ClassVar[str] = "failure"

    amount: int
    reason: str

    @property
    def error_message(self) -> Optional[str]:
        return self.reason

    @property
    def error_code(self) -> Optional[str]:
        return "SETTLEMENT_INTEGRITY"


@dataclass(kw_only=True)
class PaymentFailed(AuditEvent):
    event_type: ClassVar[str] = "payment_failed"
    status: ClassVar[str] = "failure"

    reason: str

    @property
    def error_message(self) -> Optional[str]:
        return self.reason


@dataclass(kw_only=True)
class LateFailureIgnored(AuditEvent):
    event_type: ClassVar[str] = "late_failure_ignored"
    status: ClassVar[str] = "warning"

    reason: str
    current_status: Optional[str] = None

    @property
    def error_message(self) -> Optional[str]:
        return f"Failure after leaving pending ignored: {self.reason}"


# --- Real-time fan-out ---

@dataclass
class RealtimeEvent:
    kind: ClassVar[str]

    def to_payload(self) -> Dict[str, Any]:
        payload = asdict(self)
        for key, value in payload.items():
            if isinstance(value, datetime):
                payload[key] = value.isoformat()
        return {"kind": self.kind, **payload}


@dataclass
class BidUpdateEvent(RealtimeEvent):
    """Broadcast to everyone watching an auction"""

    kind: ClassVar[str] = "bid_update"

    auction_id: str
    current_price: int
    bidder_id: str
    amount: int
    timestamp: datetime
    bid_count: int


@dataclass
class OutbidEvent(RealtimeEvent):
    """Private notice to the bidder who just lost the lead"""

    kind: ClassVar[str] = "outbid"

    auction_id: str
    auction_name: str
    new_price: int


@dataclass
class NewBidEvent(RealtimeEvent):
    """Private notice to earlier bidders who were not leading"""

    kind: ClassVar[str] = "new_bid"

    auction_id: str
    auction_name: str
    new_price: int


@dataclass
class PaymentSettledEvent(RealtimeEvent):
    kind: ClassVar[str] = "payment_settled"

    transaction_id: str
    amount: int

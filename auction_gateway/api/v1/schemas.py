"""Pydantic schemas for API request/response validation"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Any, Dict, List, Optional


class BidRequest(BaseModel):
    """Request body for POST /v1/auctions/{auction_id}/bids"""

    amount: int = Field(..., gt=0, description="Bid amount in whole currency units")


class BidSchema(BaseModel):
    bidder_id: str
    amount: int
    timestamp: datetime


class AuctionResponse(BaseModel):
    """Auction state, bids newest first"""

    id: str
    name: str
    seller_id: str
    starting_price: int
    current_price: int
    end_time: datetime
    status: str
    bids: List[BidSchema]


class BidResponse(BaseModel):
    """Response for POST /v1/auctions/{auction_id}/bids"""

    message: str = "Bid placed successfully"
    auction: AuctionResponse
    bid: BidSchema


class InitiatePaymentRequest(BaseModel):
    """Request body for POST /v1/payments/initiate; bounds are checked by the validator"""

    amount: int = Field(..., description="Top-up amount in whole currency units")


class InitiatePaymentResponse(BaseModel):
    success: bool = True
    transaction_id: str
    esewa_url: str
    data: Dict[str, str]
    warnings: List[str] = []


class ConfirmPaymentRequest(BaseModel):
    transaction_id: str = Field(..., min_length=1)


class ConfirmPaymentResponse(BaseModel):
    success: bool
    transaction_id: str
    status: str
    already_processed: bool
    message: str


class SettlementResponse(BaseModel):
    """Response for POST /v1/admin/payments/{transaction_id}/settle"""

    success: bool = True
    transaction_id: str
    status: str
    already_processed: bool


class PaymentHistoryItem(BaseModel):
    transaction_id: str
    amount: int
    status: str
    payment_method: str
    created_at: str


class PaymentHistoryResponse(BaseModel):
    """Response for GET /v1/payments/history"""

    user_id: str
    transactions: List[PaymentHistoryItem]


class TransactionReviewItem(BaseModel):
    """Transaction as shown to admins, risk detail included"""

    transaction_id: str
    user_id: str
    amount: int
    status: str
    fraud_score: int
    risk_level: str
    security_flags: List[str]
    failure_reason: Optional[str] = None
    ip_address: str
    created_at: str


class TransactionReviewResponse(BaseModel):
    transactions: List[TransactionReviewItem]


class AuditEntry(BaseModel):
    event_type: str
    status: str
    user_id: Optional[str] = None
    ip_address: str
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    security_flags: List[str]
    event_data: Dict[str, Any]
    created_at: str


class AuditTrailResponse(BaseModel):
    transaction_id: str
    entries: List[AuditEntry]


class ReconciliationResponse(BaseModel):
    credited: List[str]
    failed: List[str]


class FlagIPRequest(BaseModel):
    ip_address: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)
    ttl_seconds: Optional[int] = Field(None, gt=0)

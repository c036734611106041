"""Admin endpoints - payment review, manual settlement, reconciliation, IP flags"""

import logging
import redis
from typing import List
from fastapi import APIRouter, Depends, HTTPException, Query, Request

from auction_gateway.api.v1.schemas import (
    AuditEntry,
    AuditTrailResponse,
    FlagIPRequest,
    ReconciliationResponse,
    SettlementResponse,
    TransactionReviewItem,
    TransactionReviewResponse,
)
from auction_gateway.api.dependencies import (
    Principal,
    get_client_ip,
    get_ip_store,
    get_payment_service,
    get_request_id,
    get_settlement_processor,
    get_user_agent,
    require_admin,
)
from auction_gateway.domain.exceptions import SettlementIntegrityError, TransactionNotFoundError, TransientStoreError
from auction_gateway.infrastructure.cache.ip_reputation import IPReputationStore
from auction_gateway.infrastructure.database.models import PaymentTransaction
from auction_gateway.services.payments import PaymentService
from auction_gateway.services.settlement import SettlementProcessor

router = APIRouter(dependencies=[Depends(require_admin)])


def review_response(transactions: List[PaymentTransaction]) -> TransactionReviewResponse:
    return TransactionReviewResponse(
        transactions=[
            TransactionReviewItem(
                transaction_id=t.transaction_id,
                user_id=t.user_id,
                amount=t.amount,
                status=t.status,
                fraud_score=t.fraud_score,
                risk_level=t.risk_level,
                security_flags=t.security_flags or [],
                failure_reason=t.failure_reason,
                ip_address=t.ip_address,
                created_at=t.created_at.isoformat(),
            )
            for t in transactions
        ]
    )


@router.get("/admin/payments/failed", response_model=TransactionReviewResponse)
def list_failed_payments(
    limit: int = Query(100, ge=1, le=500),
    service: PaymentService = Depends(get_payment_service),
):
    return review_response(service.failed_payments(limit=limit))


@router.get("/admin/payments/suspicious", response_model=TransactionReviewResponse)
def list_suspicious_payments(
    hours: int = Query(24, ge=1, le=24 * 30),
    service: PaymentService = Depends(get_payment_service),
):
    """Medium and high risk transactions created in the last `hours`"""
    return review_response(service.suspicious_transactions(hours=hours))


@router.get("/admin/payments/{transaction_id}/audit", response_model=AuditTrailResponse)
def get_audit_trail(transaction_id: str, service: PaymentService = Depends(get_payment_service)):
    entries = [
        AuditEntry(
            event_type=e.event_type,
            status=e.status,
            user_id=e.user_id,
            ip_address=e.ip_address,
            error_message=e.error_message,
            error_code=e.error_code,
            security_flags=e.security_flags or [],
            event_data=e.event_data or {},
            created_at=e.created_at.isoformat(),
        )
        for e in service.audit_trail(transaction_id)
    ]
    return AuditTrailResponse(transaction_id=transaction_id, entries=entries)


@router.post("/admin/payments/{transaction_id}/settle", response_model=SettlementResponse)
def settle_payment(
    transaction_id: str,
    request: Request,
    principal: Principal = Depends(require_admin),
    settlement: SettlementProcessor = Depends(get_settlement_processor),
):
    """Manual settlement retry; a no-op for transactions that already left pending"""
    request_id = get_request_id(request)
    logging.info(
        "Manual settlement requested",
        extra={"request_id": request_id, "transaction_id": transaction_id, "user_id": principal.user_id},
    )

    try:
        result = settlement.settle(transaction_id, get_client_ip(request), get_user_agent(request))

    except TransactionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    except SettlementIntegrityError as e:
        raise HTTPException(status_code=500, detail=str(e))

    except TransientStoreError as e:
        logging.error(f"Payment store error: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=503, detail="Payment service unavailable, please retry")

    return SettlementResponse(
        transaction_id=result.transaction_id,
        status=result.status,
        already_processed=result.already_processed,
    )


@router.post("/admin/payments/reconcile", response_model=ReconciliationResponse)
def reconcile_payments(
    limit: int = Query(100, ge=1, le=1000),
    settlement: SettlementProcessor = Depends(get_settlement_processor),
):
    report = settlement.reconcile_uncredited(limit=limit)
    return ReconciliationResponse(credited=report.credited, failed=report.failed)


@router.post("/admin/ips/flag")
def flag_ip(
    request_body: FlagIPRequest,
    request: Request,
    ip_store: IPReputationStore = Depends(get_ip_store),
):
    try:
        ip_store.flag_suspicious_ip(request_body.ip_address, request_body.reason, request_body.ttl_seconds)
    except redis.RedisError as e:
        logging.error(f"IP flag failed: {e}", extra={"request_id": get_request_id(request)})
        raise HTTPException(status_code=503, detail="Reputation store unavailable")

    return {"success": True, "ip_address": request_body.ip_address}

"""Wallet top-up endpoints - initiate, gateway verification, confirmation, history"""

import logging
from typing import Optional
from urllib.parse import urlencode
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import RedirectResponse

from auction_gateway.api.v1.schemas import (
    ConfirmPaymentRequest,
    ConfirmPaymentResponse,
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    PaymentHistoryItem,
    PaymentHistoryResponse,
)
from auction_gateway.api.dependencies import (
    Principal,
    get_client_ip,
    get_payment_service,
    get_principal,
    get_request_id,
    get_user_agent,
)
from auction_gateway.config import settings
from auction_gateway.domain.events import WebhookRejected
from auction_gateway.domain.exceptions import (
    InvalidGatewayPayloadError,
    PaymentGatewayError,
    PolicyDeniedError,
    SettlementIntegrityError,
    TransactionNotFoundError,
    TransientStoreError,
    ValidationError,
)
from auction_gateway.domain.models import FLAG_INVALID_SIGNATURE, PaymentStatus
from auction_gateway.services.payments import PaymentService
from auction_gateway.utils.date_utils import parse_timestamp, utcnow

router = APIRouter()

SUPPORT_MESSAGE = "Payment could not be completed. Support has been notified."


def frontend_redirect(outcome: str, **params: str) -> RedirectResponse:
    url = f"{settings.frontend_url}/payment/{outcome}"
    if params:
        url = f"{url}?{urlencode(params)}"
    return RedirectResponse(url=url, status_code=302)


@router.post("/payments/initiate", response_model=InitiatePaymentResponse)
def initiate_payment(
    request_body: InitiatePaymentRequest,
    request: Request,
    principal: Principal = Depends(get_principal),
    service: PaymentService = Depends(get_payment_service),
):
    """
    Start a wallet top-up.

    Flow:
    1. Screen the payment (amount, velocity, duplicate, IP, fraud score)
    2. Record the pending transaction
    3. Return the signed form the client posts to eSewa
    """
    request_id = get_request_id(request)

    try:
        initiation = service.initiate(
            principal.user_id,
            request_body.amount,
            get_client_ip(request),
            get_user_agent(request),
        )

    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    except PolicyDeniedError as e:
        logging.warning(f"Payment denied: {e}", extra={"request_id": request_id, "user_id": principal.user_id})
        raise HTTPException(status_code=403, detail=str(e))

    except TransientStoreError as e:
        logging.error(f"Payment store error: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=503, detail="Payment service unavailable, please retry")

    return InitiatePaymentResponse(
        transaction_id=initiation.transaction_id,
        esewa_url=initiation.gateway_url,
        data=initiation.form_data,
        warnings=initiation.validation.warnings,
    )


@router.get("/payments/esewa/verify")
async def verify_esewa_payment(
    request: Request,
    data: Optional[str] = Query(None, description="Base64 payload from the eSewa redirect"),
    x_webhook_timestamp: Optional[str] = Header(None),
    service: PaymentService = Depends(get_payment_service),
):
    """
    eSewa success redirect target. The payload is decoded and its signature
    checked, then the stored transaction is looked up at eSewa before it is
    settled or failed. A payment eSewa still reports as in progress stays
    pending. The browser is then redirected back to the frontend.
    """
    request_id = get_request_id(request)
    ip_address = get_client_ip(request)
    user_agent = get_user_agent(request)

    if x_webhook_timestamp is not None:
        try:
            age = abs((utcnow() - parse_timestamp(x_webhook_timestamp)).total_seconds())
        except ValueError:
            age = None
        if age is None or age > settings.webhook_timestamp_tolerance_seconds:
            await run_in_threadpool(
                service.record_audit,
                WebhookRejected(transaction_id="N/A", ip_address=ip_address, user_agent=user_agent, reason="expired"),
            )
            raise HTTPException(status_code=400, detail="Webhook expired")

    if not data:
        return frontend_redirect("failure", error="nodata")

    try:
        callback = service.gateway.decode_callback(data)
    except InvalidGatewayPayloadError as e:
        logging.warning(f"Rejected gateway payload: {e}", extra={"request_id": request_id, "ip_address": ip_address})
        await run_in_threadpool(
            service.record_audit,
            WebhookRejected(
                transaction_id="N/A",
                ip_address=ip_address,
                user_agent=user_agent,
                security_flags=[FLAG_INVALID_SIGNATURE],
                reason=str(e),
            ),
        )
        return frontend_redirect("failure", error="invalid_data")

    try:
        confirmation = await service.process_callback(callback, ip_address, user_agent)

    except TransactionNotFoundError:
        return frontend_redirect("failure", error="unknown_transaction")

    except PaymentGatewayError as e:
        logging.error(f"Gateway verification error: {e}", extra={"request_id": request_id})
        return frontend_redirect("failure", error="verification_unavailable", transaction_id=callback.transaction_id)

    except (SettlementIntegrityError, TransientStoreError) as e:
        logging.error(f"Settlement error: {e}", extra={"request_id": request_id})
        return frontend_redirect("failure", error="server_error", transaction_id=callback.transaction_id)

    if confirmation.status == PaymentStatus.SUCCESS.value:
        return frontend_redirect("success", transaction_id=callback.transaction_id)

    if confirmation.status == PaymentStatus.PENDING.value:
        return frontend_redirect("failure", error="verification_pending", transaction_id=callback.transaction_id)

    return frontend_redirect("failure", error="verification_failed", transaction_id=callback.transaction_id)


@router.post("/payments/confirm", response_model=ConfirmPaymentResponse)
async def confirm_payment(
    request_body: ConfirmPaymentRequest,
    request: Request,
    principal: Principal = Depends(get_principal),
    service: PaymentService = Depends(get_payment_service),
):
    """Client polls after returning from eSewa; safe to call any number of times"""
    request_id = get_request_id(request)

    try:
        confirmation = await service.confirm(
            principal.user_id,
            request_body.transaction_id,
            get_client_ip(request),
            get_user_agent(request),
        )

    except TransactionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    except PaymentGatewayError as e:
        logging.error(f"Gateway verification error: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=502, detail="Payment gateway unavailable, please retry")

    except SettlementIntegrityError:
        raise HTTPException(status_code=500, detail=SUPPORT_MESSAGE)

    except TransientStoreError as e:
        logging.error(f"Payment store error: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=503, detail="Payment service unavailable, please retry")

    messages = {
        PaymentStatus.SUCCESS.value: "Payment already processed" if confirmation.already_processed else "Payment successful",
        PaymentStatus.PENDING.value: "Payment is still being processed",
        PaymentStatus.FAILED.value: "Payment failed",
    }
    return ConfirmPaymentResponse(
        success=confirmation.status == PaymentStatus.SUCCESS.value,
        transaction_id=confirmation.transaction_id,
        status=confirmation.status,
        already_processed=confirmation.already_processed,
        message=messages.get(confirmation.status, confirmation.status),
    )


@router.get("/payments/history", response_model=PaymentHistoryResponse)
def get_payment_history(
    principal: Principal = Depends(get_principal),
    service: PaymentService = Depends(get_payment_service),
):
    """Caller's successful top-ups, newest first"""
    transactions = service.successful_history(principal.user_id)

    items = [
        PaymentHistoryItem(
            transaction_id=t.transaction_id,
            amount=t.amount,
            status=t.status,
            payment_method=t.payment_method,
            created_at=t.created_at.isoformat(),
        )
        for t in transactions
    ]

    return PaymentHistoryResponse(user_id=principal.user_id, transactions=items)

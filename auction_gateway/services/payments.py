"""Payment initiation and gateway verification"""

import logging
import uuid
from datetime import timedelta
from typing import List
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from fastapi.concurrency import run_in_threadpool
from auction_gateway.domain.events import (
    GatewayStatusVerified,
    PaymentInitiated,
    PaymentInitiationDenied,
    VerificationAttempt,
)
from auction_gateway.domain.exceptions import (
    DuplicateSubmissionError,
    FraudRiskError,
    InvalidAmountError,
    PolicyDeniedError,
    TransactionNotFoundError,
    TransientStoreError,
    VelocityLimitError,
)
from auction_gateway.domain.models import (
    GatewayCallback,
    PaymentConfirmation,
    PaymentInitiation,
    PaymentStatus,
)
from auction_gateway.infrastructure.clients.esewa import STATUS_COMPLETE, STATUSES_IN_PROGRESS, EsewaClient
from auction_gateway.infrastructure.database.models import AuditLog, PaymentTransaction
from auction_gateway.infrastructure.database.repositories import AuditRepository, PaymentRepository
from auction_gateway.services.settlement import SettlementProcessor
from auction_gateway.services.validation import TransactionValidator
from auction_gateway.utils.date_utils import utcnow

logger = logging.getLogger(__name__)

DENIAL_ERRORS = {
    "amount": InvalidAmountError,
    "velocity": VelocityLimitError,
    "duplicate": DuplicateSubmissionError,
    "fraud": FraudRiskError,
}


class PaymentService:
    """Wallet top-up flow: screen, record pending, hand off to the gateway, verify, settle"""

    def __init__(
        self,
        db: Session,
        validator: TransactionValidator,
        settlement: SettlementProcessor,
        gateway: EsewaClient,
    ):
        self.db = db
        self.payments = PaymentRepository(db)
        self.audit = AuditRepository(db)
        self.validator = validator
        self.settlement = settlement
        self.gateway = gateway

    def initiate(self, user_id: str, amount: int, ip_address: str, user_agent: str = "unknown") -> PaymentInitiation:
        """
        Screen and record a new pending transaction.

        Raises:
            InvalidAmountError: Amount outside configured bounds
            PolicyDeniedError: Velocity, duplicate or fraud policy denied the payment
            TransientStoreError: The pending transaction could not be recorded
        """
        validation = self.validator.validate(user_id, amount, ip_address, user_agent)

        if not validation.allowed:
            self.record_audit(
                PaymentInitiationDenied(
                    transaction_id="N/A",
                    user_id=user_id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    security_flags=list(validation.flags),
                    amount=amount,
                    fraud_score=validation.fraud_score,
                    denial=validation.denial,
                    reasons=list(validation.errors),
                )
            )
            error_cls = DENIAL_ERRORS.get(validation.denial, PolicyDeniedError)
            raise error_cls(validation.errors[0] if validation.errors else "Transaction validation failed")

        transaction_id = str(uuid.uuid4())
        try:
            self.payments.create_pending(
                transaction_id=transaction_id,
                user_id=user_id,
                amount=amount,
                ip_address=ip_address,
                user_agent=user_agent,
                validation=validation,
            )
            self.audit.record(
                PaymentInitiated(
                    transaction_id=transaction_id,
                    user_id=user_id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    amount=amount,
                    fraud_score=validation.fraud_score,
                    risk_level=validation.risk_level.value,
                )
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Payment initiation failed: {e}", extra={"user_id": user_id})
            raise TransientStoreError("Payment store unavailable") from e

        logger.info(
            "Payment initiated",
            extra={
                "transaction_id": transaction_id,
                "user_id": user_id,
                "amount": amount,
                "fraud_score": validation.fraud_score,
                "risk_level": validation.risk_level.value,
            },
        )

        return PaymentInitiation(
            transaction_id=transaction_id,
            amount=amount,
            gateway_url=self.gateway.api_url,
            form_data=self.gateway.build_payment_form(transaction_id, amount),
            validation=validation,
        )

    async def process_callback(
        self,
        callback: GatewayCallback,
        ip_address: str = "unknown",
        user_agent: str = "unknown",
    ) -> PaymentConfirmation:
        """
        Handle a decoded gateway redirect.

        The redirect is client-controlled, so its status is only recorded;
        the outcome comes from a server-side lookup keyed on the stored
        transaction (see `resolve`).

        Raises:
            TransactionNotFoundError, PaymentGatewayError, SettlementIntegrityError, TransientStoreError
        """
        await run_in_threadpool(self.record_verification_attempt, callback, ip_address, user_agent)

        txn = await run_in_threadpool(self.payments.get_by_transaction_id, callback.transaction_id)
        if txn is None:
            raise TransactionNotFoundError(callback.transaction_id)

        return await self.resolve(txn, ip_address, user_agent)

    async def confirm(
        self,
        user_id: str,
        transaction_id: str,
        ip_address: str = "unknown",
        user_agent: str = "unknown",
    ) -> PaymentConfirmation:
        """
        Client-polled confirmation after returning from the gateway.

        Raises:
            TransactionNotFoundError: Unknown id or not owned by the caller
            PaymentGatewayError, SettlementIntegrityError, TransientStoreError
        """
        txn = await run_in_threadpool(self.payments.get_by_transaction_id, transaction_id)
        if txn is None or txn.user_id != user_id:
            raise TransactionNotFoundError(transaction_id)

        return await self.resolve(txn, ip_address, user_agent)

    async def resolve(self, txn: PaymentTransaction, ip_address: str, user_agent: str) -> PaymentConfirmation:
        """
        Drive a transaction towards its final state.

        Flow:
        1. Not pending -> settle, which reports the existing outcome
        2. Pending -> look up the status at eSewa using the stored amount
        3. PENDING / AMBIENT_WAITING -> stay pending, the caller may poll again
        4. COMPLETE -> settle, any other status -> mark failed

        The gateway lookup is awaited on the event loop; the database steps
        run in the worker threadpool.
        """
        transaction_id, user_id = txn.transaction_id, txn.user_id

        if txn.status != PaymentStatus.PENDING.value:
            return await run_in_threadpool(self.settle, transaction_id, ip_address, user_agent)

        gateway_status = await self.gateway.verify_transaction(transaction_id, str(txn.amount))
        return await run_in_threadpool(
            self.apply_gateway_status, transaction_id, user_id, gateway_status, ip_address, user_agent
        )

    def apply_gateway_status(
        self,
        transaction_id: str,
        user_id: str,
        gateway_status: str,
        ip_address: str,
        user_agent: str,
    ) -> PaymentConfirmation:
        self.record_audit(
            GatewayStatusVerified(
                transaction_id=transaction_id,
                user_id=user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                gateway_status=gateway_status,
            )
        )

        if gateway_status in STATUSES_IN_PROGRESS:
            return PaymentConfirmation(transaction_id=transaction_id, status=PaymentStatus.PENDING.value)

        if gateway_status == STATUS_COMPLETE:
            return self.settle(transaction_id, ip_address, user_agent)

        if self.settlement.mark_failed(transaction_id, f"eSewa status: {gateway_status}", ip_address, user_agent):
            return PaymentConfirmation(transaction_id=transaction_id, status=PaymentStatus.FAILED.value)

        # Left pending concurrently; report whatever it became
        current = self.payments.get_by_transaction_id(transaction_id)
        return PaymentConfirmation(transaction_id=transaction_id, status=current.status, already_processed=True)

    def settle(self, transaction_id: str, ip_address: str, user_agent: str) -> PaymentConfirmation:
        result = self.settlement.settle(transaction_id, ip_address, user_agent)
        return PaymentConfirmation(
            transaction_id=transaction_id,
            status=result.status,
            already_processed=result.already_processed,
        )

    def record_verification_attempt(self, callback: GatewayCallback, ip_address: str, user_agent: str) -> None:
        try:
            self.payments.record_verification_attempt(callback.transaction_id, utcnow())
            self.audit.record(
                VerificationAttempt(
                    transaction_id=callback.transaction_id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    gateway_status=callback.status,
                )
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning(f"Failed to record verification attempt: {e}", extra={"transaction_id": callback.transaction_id})

    def record_audit(self, event) -> None:
        """Audit entries outside a money-moving transaction must not break the flow"""
        try:
            self.audit.record(event)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to create audit log: {e}", extra={"transaction_id": event.transaction_id})

    # Reporting reads

    def successful_history(self, user_id: str) -> List[PaymentTransaction]:
        return self.payments.list_successful(user_id)

    def failed_payments(self, limit: int = 100) -> List[PaymentTransaction]:
        return self.payments.list_failed(limit=limit)

    def suspicious_transactions(self, hours: int = 24) -> List[PaymentTransaction]:
        return self.payments.list_suspicious(since=utcnow() - timedelta(hours=hours))

    def audit_trail(self, transaction_id: str) -> List[AuditLog]:
        return self.audit.get_trail(transaction_id)

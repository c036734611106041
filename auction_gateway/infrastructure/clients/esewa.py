"""eSewa payment gateway client: signed form for initiation, status lookup for verification"""

import asyncio
import base64
import binascii
import hashlib
import hmac
import json
import httpx
from typing import Any, Dict
from auction_gateway.domain.models import GatewayCallback
from auction_gateway.domain.exceptions import InvalidGatewayPayloadError, PaymentGatewayError
from auction_gateway.config import settings
from auction_gateway.infrastructure.observability.metrics import gateway_latency_histogram, gateway_failure_counter

STATUS_COMPLETE = "COMPLETE"
STATUSES_IN_PROGRESS = ("PENDING", "AMBIENT_WAITING")
INITIATION_SIGNED_FIELDS = "total_amount,transaction_uuid,product_code"


class EsewaClient:
    """Client for the eSewa ePay v2 gateway"""

    def __init__(
        self,
        merchant_code: str | None = None,
        merchant_secret: str | None = None,
        api_url: str | None = None,
        verify_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.merchant_code = merchant_code or settings.esewa_merchant_code
        self.merchant_secret = merchant_secret or settings.esewa_merchant_secret
        self.api_url = api_url or settings.esewa_api_url
        self.verify_url = verify_url or settings.esewa_verify_url
        self.timeout = timeout or settings.http_timeout_seconds
        self.max_retries = settings.gateway_max_retries
        self.backoff_base = settings.gateway_backoff_base
        self.transport = transport

    def sign(self, message: str) -> str:
        digest = hmac.new(self.merchant_secret.encode(), message.encode(), hashlib.sha256).digest()
        return base64.b64encode(digest).decode()

    def build_payment_form(self, transaction_id: str, amount: int, frontend_url: str | None = None) -> Dict[str, str]:
        """Form fields the client POSTs to the gateway to start payment"""
        frontend_url = frontend_url or settings.frontend_url
        message = f"total_amount={amount},transaction_uuid={transaction_id},product_code={self.merchant_code}"
        return {
            "amount": str(amount),
            "tax_amount": "0",
            "total_amount": str(amount),
            "transaction_uuid": transaction_id,
            "product_code": self.merchant_code,
            "product_service_charge": "0",
            "product_delivery_charge": "0",
            "signed_field_names": INITIATION_SIGNED_FIELDS,
            "signature": self.sign(message),
            "success_url": f"{frontend_url}/payment/success",
            "failure_url": f"{frontend_url}/payment/failure",
        }

    def decode_callback(self, data: str) -> GatewayCallback:
        """
        Decode the base64 JSON payload eSewa appends to the success redirect.

        Raises:
            InvalidGatewayPayloadError: On undecodable data, missing fields or a bad signature
        """
        try:
            payload: Dict[str, Any] = json.loads(base64.b64decode(data, validate=True).decode("utf-8"))
            callback = GatewayCallback(
                transaction_id=str(payload["transaction_uuid"]),
                status=str(payload["status"]),
                total_amount=str(payload["total_amount"]),
                raw=payload,
            )
        except (binascii.Error, UnicodeDecodeError, ValueError, KeyError, TypeError) as e:
            raise InvalidGatewayPayloadError(f"Invalid gateway callback data: {e}") from e

        if not self.verify_callback_signature(payload):
            raise InvalidGatewayPayloadError("Gateway callback signature mismatch")

        return callback

    def verify_callback_signature(self, payload: Dict[str, Any]) -> bool:
        """Check the HMAC over signed_field_names; unsigned payloads are accepted"""
        signature = payload.get("signature")
        signed_fields = payload.get("signed_field_names")
        if not signature or not signed_fields:
            return True

        try:
            message = ",".join(f"{name}={payload[name]}" for name in signed_fields.split(","))
        except KeyError:
            return False
        return hmac.compare_digest(self.sign(message), str(signature))

    async def verify_transaction(self, transaction_id: str, total_amount: str) -> str:
        """
        Server-side status lookup for a transaction.

        Retry strategy:
        - Exponential backoff: base, 2*base, 4*base ...
        - Retries on 5xx errors and network failures, 4xx fails immediately

        Raises:
            PaymentGatewayError: When the gateway cannot give a status
        """
        params = {
            "product_code": self.merchant_code,
            "total_amount": total_amount,
            "transaction_uuid": transaction_id,
        }
        attempt = 0
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            while True:
                try:
                    with gateway_latency_histogram.time():
                        response = await client.get(self.verify_url, params=params)
                        response.raise_for_status()
                    return str(response.json()["status"])

                except httpx.HTTPStatusError as e:
                    gateway_failure_counter.inc()
                    if e.response.status_code < 500:
                        raise PaymentGatewayError(f"Gateway error: {e.response.status_code}") from e
                    last_error: Exception = e

                except httpx.RequestError as e:
                    gateway_failure_counter.inc()
                    last_error = e

                except (KeyError, ValueError) as e:
                    raise PaymentGatewayError(f"Invalid gateway status response: {e}") from e

                attempt += 1
                if attempt >= self.max_retries:
                    raise PaymentGatewayError(f"Gateway unavailable after {attempt} attempts") from last_error

                await asyncio.sleep(self.backoff_base * (2 ** (attempt - 1)))

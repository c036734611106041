"""Integration tests for API endpoints"""

import base64
import json
import threading
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock, patch
from fastapi.testclient import TestClient
from auction_gateway.infrastructure.database.models import AuditLog
from auction_gateway.infrastructure.database.repositories import PaymentRepository, WalletRepository
from auction_gateway.services.settlement import SettlementProcessor
from auction_gateway.services.validation import FRAUD_BLOCK_MESSAGE
from auction_gateway.utils.date_utils import utcnow

VERIFY = "auction_gateway.infrastructure.clients.esewa.EsewaClient.verify_transaction"


def callback_data(gateway, transaction_id: str, amount: int, status: str = "COMPLETE") -> str:
    payload = {
        "transaction_code": "000AWEO",
        "status": status,
        "total_amount": str(amount),
        "transaction_uuid": transaction_id,
        "product_code": gateway.merchant_code,
        "signed_field_names": "transaction_code,status,total_amount,transaction_uuid,product_code,signed_field_names",
    }
    message = ",".join(f"{name}={payload[name]}" for name in payload["signed_field_names"].split(","))
    payload["signature"] = gateway.sign(message)
    return base64.b64encode(json.dumps(payload).encode()).decode()


def initiate(client: TestClient, auth, user_id: str, amount: int, ip: str = "10.1.1.1"):
    return client.post(
        "/v1/payments/initiate",
        json={"amount": amount},
        headers={**auth(user_id), "X-Forwarded-For": ip},
    )


# --- Service endpoints ---


def test_health_endpoint(client: TestClient):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "auction-gateway"}


def test_metrics_endpoint(client: TestClient):
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "auction_bids_total" in response.text
    assert "payment_settlement_total" in response.text


def test_request_id_is_echoed(client: TestClient):
    response = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"
    assert client.get("/health").headers["X-Request-ID"]


# --- Auctions ---


def test_get_auction(client: TestClient, make_auction):
    auction = make_auction(seller_id="sam", starting_price=100, name="Guitar")

    response = client.get(f"/v1/auctions/{auction.id}")

    assert response.status_code == 200
    data = response.json()
    assert data["name"] == "Guitar"
    assert data["current_price"] == 100
    assert data["bids"] == []


def test_get_unknown_auction(client: TestClient):
    response = client.get("/v1/auctions/nope")
    assert response.status_code == 404
    assert response.json()["detail"] == "Bidding room not found."


def test_bid_requires_principal(client: TestClient, make_auction):
    auction = make_auction()
    response = client.post(f"/v1/auctions/{auction.id}/bids", json={"amount": 500})
    assert response.status_code == 401


def test_bid_flow(client: TestClient, auth, make_auction, publisher):
    auction = make_auction(seller_id="sam", starting_price=100)
    url = f"/v1/auctions/{auction.id}/bids"

    first = client.post(url, json={"amount": 110}, headers=auth("bob"))
    too_low = client.post(url, json={"amount": 105}, headers=auth("carol"))
    second = client.post(url, json={"amount": 150}, headers=auth("carol"))

    assert first.status_code == 200
    assert too_low.status_code == 400
    assert too_low.json()["detail"] == "Bid must be higher than current price: $110"
    assert second.status_code == 200
    body = second.json()
    assert body["message"] == "Bid placed successfully"
    assert body["bid"]["amount"] == 150
    assert body["auction"]["current_price"] == 150

    state = client.get(f"/v1/auctions/{auction.id}").json()
    assert [(b["bidder_id"], b["amount"]) for b in state["bids"]] == [("carol", 150), ("bob", 110)]
    assert any(channel == "user:bob" and event.kind == "outbid" for channel, event in publisher.events)


def test_bid_rejections_map_to_status_codes(client: TestClient, auth, make_auction):
    live = make_auction(seller_id="sam", starting_price=100)
    ended = make_auction(seller_id="sam", starting_price=100, ends_in=timedelta(minutes=-5))

    self_bid = client.post(f"/v1/auctions/{live.id}/bids", json={"amount": 500}, headers=auth("sam"))
    late = client.post(f"/v1/auctions/{ended.id}/bids", json={"amount": 500}, headers=auth("bob"))
    missing = client.post("/v1/auctions/nope/bids", json={"amount": 500}, headers=auth("bob"))
    invalid = client.post(f"/v1/auctions/{live.id}/bids", json={"amount": 0}, headers=auth("bob"))

    assert self_bid.status_code == 403
    assert self_bid.json()["detail"] == "You cannot bid on your own item."
    assert late.status_code == 400
    assert late.json()["detail"] == "This auction has ended."
    assert missing.status_code == 404
    assert invalid.status_code == 422


# --- Payments ---


def test_initiate_payment_returns_signed_form(client: TestClient, auth, gateway):
    response = initiate(client, auth, "buyer", 500)

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["esewa_url"] == gateway.api_url
    form = data["data"]
    assert form["transaction_uuid"] == data["transaction_id"]
    assert form["total_amount"] == "500"
    assert form["signature"] == gateway.sign(
        f"total_amount=500,transaction_uuid={data['transaction_id']},product_code=EPAYTEST"
    )
    # Risk detail stays internal
    assert "fraud_score" not in data


@pytest.mark.parametrize("amount, detail", [(9, "Amount must be at least NPR 10"), (100_001, "Amount cannot exceed NPR 100000")])
def test_initiate_rejects_out_of_range_amounts(client: TestClient, auth, amount, detail):
    response = initiate(client, auth, "buyer", amount)

    assert response.status_code == 400
    assert response.json()["detail"] == detail


def test_initiate_denies_duplicate_then_velocity(client: TestClient, auth):
    assert initiate(client, auth, "buyer", 500).status_code == 200

    duplicate = initiate(client, auth, "buyer", 500)
    assert duplicate.status_code == 403
    assert "Duplicate transaction" in duplicate.json()["detail"]

    assert initiate(client, auth, "buyer", 600).status_code == 200
    assert initiate(client, auth, "buyer", 700).status_code == 200

    velocity = initiate(client, auth, "buyer", 800)
    assert velocity.status_code == 403
    assert "velocity limit" in velocity.json()["detail"]


def test_flagged_ip_blocks_high_value_first_payment(client: TestClient, auth):
    flag = client.post(
        "/v1/admin/ips/flag",
        json={"ip_address": "10.6.6.6", "reason": "chargeback ring"},
        headers=auth("root", role="admin"),
    )
    assert flag.status_code == 200

    response = initiate(client, auth, "newcomer", 15_000, ip="10.6.6.6")

    assert response.status_code == 403
    assert response.json()["detail"] == FRAUD_BLOCK_MESSAGE


def test_esewa_redirect_settles_once(client: TestClient, auth, db, gateway, make_account):
    make_account("buyer", wallet_balance=0)
    transaction_id = initiate(client, auth, "buyer", 500).json()["transaction_id"]
    data = callback_data(gateway, transaction_id, 500)

    with patch(VERIFY, new_callable=AsyncMock) as mock_verify:
        mock_verify.return_value = "COMPLETE"
        first = client.get("/v1/payments/esewa/verify", params={"data": data}, follow_redirects=False)
        replay = client.get("/v1/payments/esewa/verify", params={"data": data}, follow_redirects=False)

    assert first.status_code == 302
    assert first.headers["location"].endswith(f"/payment/success?transaction_id={transaction_id}")
    assert replay.status_code == 302
    assert "/payment/success" in replay.headers["location"]
    mock_verify.assert_awaited_with(transaction_id, "500")

    assert WalletRepository(db).get_balance("buyer") == 500
    txn = PaymentRepository(db).get_by_transaction_id(transaction_id)
    assert txn.status == "success"
    assert txn.verification_attempts == 2


def test_esewa_redirect_with_failed_lookup_marks_failed(client: TestClient, auth, db, gateway, make_account):
    make_account("buyer")
    transaction_id = initiate(client, auth, "buyer", 500).json()["transaction_id"]

    with patch(VERIFY, new_callable=AsyncMock, return_value="NOT_FOUND"):
        response = client.get(
            "/v1/payments/esewa/verify",
            params={"data": callback_data(gateway, transaction_id, 500)},
            follow_redirects=False,
        )

    assert "/payment/failure" in response.headers["location"]
    assert "error=verification_failed" in response.headers["location"]
    txn = PaymentRepository(db).get_by_transaction_id(transaction_id)
    assert txn.status == "failed"
    assert txn.failure_reason == "eSewa status: NOT_FOUND"
    assert WalletRepository(db).get_balance("buyer") == 0


def test_esewa_redirect_while_gateway_pending_keeps_payment_open(client: TestClient, auth, db, gateway, make_account):
    make_account("buyer", wallet_balance=0)
    transaction_id = initiate(client, auth, "buyer", 500).json()["transaction_id"]

    with patch(VERIFY, new_callable=AsyncMock, return_value="PENDING"):
        redirect = client.get(
            "/v1/payments/esewa/verify",
            params={"data": callback_data(gateway, transaction_id, 500)},
            follow_redirects=False,
        )

    assert "error=verification_pending" in redirect.headers["location"]
    assert PaymentRepository(db).get_by_transaction_id(transaction_id).status == "pending"

    # eSewa completes later; the client's confirmation still credits the wallet
    with patch(VERIFY, new_callable=AsyncMock, return_value="COMPLETE"):
        confirmed = client.post("/v1/payments/confirm", json={"transaction_id": transaction_id}, headers=auth("buyer"))

    assert confirmed.json()["status"] == "success"
    assert confirmed.json()["already_processed"] is False
    assert WalletRepository(db).get_balance("buyer") == 500


def test_unsigned_redirect_cannot_fail_or_steer_verification(client: TestClient, auth, db, make_account):
    make_account("buyer", wallet_balance=0)
    transaction_id = initiate(client, auth, "buyer", 500).json()["transaction_id"]
    forged = base64.b64encode(
        json.dumps({"status": "CANCELED", "transaction_uuid": transaction_id, "total_amount": "1"}).encode()
    ).decode()

    with patch(VERIFY, new_callable=AsyncMock, return_value="AMBIENT_WAITING") as mock_verify:
        response = client.get("/v1/payments/esewa/verify", params={"data": forged}, follow_redirects=False)

    assert "error=verification_pending" in response.headers["location"]
    mock_verify.assert_awaited_once_with(transaction_id, "500")
    assert PaymentRepository(db).get_by_transaction_id(transaction_id).status == "pending"


def test_redirect_status_is_not_trusted_over_the_gateway_lookup(client: TestClient, auth, db, gateway, make_account):
    make_account("buyer", wallet_balance=0)
    transaction_id = initiate(client, auth, "buyer", 500).json()["transaction_id"]

    with patch(VERIFY, new_callable=AsyncMock, return_value="COMPLETE"):
        response = client.get(
            "/v1/payments/esewa/verify",
            params={"data": callback_data(gateway, transaction_id, 500, status="CANCELED")},
            follow_redirects=False,
        )

    assert "/payment/success" in response.headers["location"]
    assert WalletRepository(db).get_balance("buyer") == 500


def test_settlement_runs_off_the_event_loop(client: TestClient, auth, gateway, make_account):
    make_account("buyer")
    transaction_id = initiate(client, auth, "buyer", 500).json()["transaction_id"]
    threads = {}
    real_settle = SettlementProcessor.settle

    async def lookup(transaction_id, total_amount):
        threads["lookup"] = threading.get_ident()
        return "COMPLETE"

    def settle(self, *args, **kwargs):
        threads["settle"] = threading.get_ident()
        return real_settle(self, *args, **kwargs)

    with patch(VERIFY, new_callable=AsyncMock, side_effect=lookup), patch.object(SettlementProcessor, "settle", settle):
        response = client.get(
            "/v1/payments/esewa/verify",
            params={"data": callback_data(gateway, transaction_id, 500)},
            follow_redirects=False,
        )

    assert "/payment/success" in response.headers["location"]
    assert threads["settle"] != threads["lookup"]


def test_esewa_redirect_rejects_tampered_payload(client: TestClient, db, gateway):
    raw = json.loads(base64.b64decode(callback_data(gateway, "txn-x", 500)))
    raw["total_amount"] = "99999"
    tampered = base64.b64encode(json.dumps(raw).encode()).decode()

    response = client.get("/v1/payments/esewa/verify", params={"data": tampered}, follow_redirects=False)

    assert "error=invalid_data" in response.headers["location"]
    rejected = db.query(AuditLog).filter(AuditLog.event_type == "webhook_rejected").all()
    assert len(rejected) == 1
    assert rejected[0].security_flags == ["invalid_signature"]


def test_esewa_redirect_without_data(client: TestClient):
    response = client.get("/v1/payments/esewa/verify", follow_redirects=False)
    assert "error=nodata" in response.headers["location"]


def test_esewa_redirect_with_stale_timestamp(client: TestClient, gateway):
    stale = (utcnow() - timedelta(minutes=10)).isoformat()

    response = client.get(
        "/v1/payments/esewa/verify",
        params={"data": callback_data(gateway, "txn-x", 500)},
        headers={"X-Webhook-Timestamp": stale},
        follow_redirects=False,
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "Webhook expired"


def test_confirm_payment(client: TestClient, auth, db, make_account):
    make_account("buyer")
    transaction_id = initiate(client, auth, "buyer", 700).json()["transaction_id"]

    with patch(VERIFY, new_callable=AsyncMock, return_value="COMPLETE") as mock_verify:
        first = client.post("/v1/payments/confirm", json={"transaction_id": transaction_id}, headers=auth("buyer"))
        second = client.post("/v1/payments/confirm", json={"transaction_id": transaction_id}, headers=auth("buyer"))

    assert first.status_code == 200
    assert first.json()["status"] == "success"
    assert first.json()["already_processed"] is False
    assert second.json()["already_processed"] is True
    assert second.json()["message"] == "Payment already processed"
    # Settled transactions are not looked up again
    assert mock_verify.await_count == 1
    assert WalletRepository(db).get_balance("buyer") == 700


def test_confirm_while_gateway_pending(client: TestClient, auth, db, make_account):
    make_account("buyer")
    transaction_id = initiate(client, auth, "buyer", 700).json()["transaction_id"]

    with patch(VERIFY, new_callable=AsyncMock, return_value="PENDING"):
        response = client.post("/v1/payments/confirm", json={"transaction_id": transaction_id}, headers=auth("buyer"))

    assert response.status_code == 200
    assert response.json()["status"] == "pending"
    assert response.json()["success"] is False
    assert PaymentRepository(db).get_by_transaction_id(transaction_id).status == "pending"


def test_confirm_someone_elses_payment(client: TestClient, auth):
    transaction_id = initiate(client, auth, "buyer", 700).json()["transaction_id"]

    response = client.post("/v1/payments/confirm", json={"transaction_id": transaction_id}, headers=auth("mallory"))

    assert response.status_code == 404


def test_payment_history_lists_successful_only(client: TestClient, auth, make_transaction):
    make_transaction("ok-1", user_id="buyer", amount=100, status="success")
    make_transaction("bad-1", user_id="buyer", amount=200, status="failed")
    make_transaction("other", user_id="someone", amount=300, status="success")

    response = client.get("/v1/payments/history", headers=auth("buyer"))

    assert response.status_code == 200
    assert [t["transaction_id"] for t in response.json()["transactions"]] == ["ok-1"]


# --- Admin ---


def test_admin_endpoints_require_admin_role(client: TestClient, auth):
    assert client.get("/v1/admin/payments/failed", headers=auth("bob")).status_code == 403
    assert client.post("/v1/admin/payments/reconcile", headers=auth("bob")).status_code == 403
    assert client.get("/v1/admin/payments/failed").status_code == 401


def test_admin_review_lists(client: TestClient, auth, make_transaction):
    make_transaction("failed-1", amount=100, status="failed", failure_reason="eSewa status: CANCELED")
    make_transaction("risky-1", amount=200, fraud_score=55, risk_level="medium")
    make_transaction("old-risky", amount=300, fraud_score=60, created_at=utcnow() - timedelta(hours=30))
    make_transaction("clean-1", amount=400)
    admin = auth("root", role="admin")

    failed = client.get("/v1/admin/payments/failed", headers=admin).json()["transactions"]
    suspicious = client.get("/v1/admin/payments/suspicious", params={"hours": 24}, headers=admin).json()["transactions"]

    assert [t["transaction_id"] for t in failed] == ["failed-1"]
    assert failed[0]["failure_reason"] == "eSewa status: CANCELED"
    assert [t["transaction_id"] for t in suspicious] == ["risky-1", "failed-1"]


def test_admin_settle_and_audit_trail(client: TestClient, auth, make_account, make_transaction):
    make_account("buyer")
    make_transaction("txn-1", user_id="buyer", amount=250)
    admin = auth("root", role="admin")

    settled = client.post("/v1/admin/payments/txn-1/settle", headers=admin)
    again = client.post("/v1/admin/payments/txn-1/settle", headers=admin)
    missing = client.post("/v1/admin/payments/nope/settle", headers=admin)
    trail = client.get("/v1/admin/payments/txn-1/audit", headers=admin).json()

    assert settled.json() == {"success": True, "transaction_id": "txn-1", "status": "success", "already_processed": False}
    assert again.json()["already_processed"] is True
    assert missing.status_code == 404
    assert [e["event_type"] for e in trail["entries"]] == ["payment_completed", "wallet_updated", "payment_completed"]
    assert trail["entries"][-1]["security_flags"] == ["duplicate_attempt"]


def test_admin_settle_without_wallet_reports_integrity_failure(client: TestClient, auth, db, make_transaction):
    make_transaction("txn-1", user_id="ghost", amount=250)

    response = client.post("/v1/admin/payments/txn-1/settle", headers=auth("root", role="admin"))

    assert response.status_code == 500
    assert PaymentRepository(db).get_by_transaction_id("txn-1").status == "pending"


def test_admin_reconcile(client: TestClient, auth, db, make_account, make_transaction):
    make_account("buyer")
    make_transaction("legacy", user_id="buyer", amount=300, status="success", wallet_credited=False)

    response = client.post("/v1/admin/payments/reconcile", headers=auth("root", role="admin"))

    assert response.json() == {"credited": ["legacy"], "failed": []}
    assert WalletRepository(db).get_balance("buyer") == 300

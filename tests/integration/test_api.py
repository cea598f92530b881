"""Integration tests for the HTTP API"""

from fastapi.testclient import TestClient

from fxpay_gateway.api.dependencies import get_idempotency_guard
from fxpay_gateway.api.v1.payments import CREATE_ENDPOINT
from fxpay_gateway.services.fraud import FraudScoringEngine
from fxpay_gateway.services.settlements import SettlementBatcher


def payment_body(merchant, **overrides):
    body = {
        "merchant_id": merchant.id,
        "source_amount": 1000.0,
        "source_currency": "USD",
        "target_currency": "EUR",
        "customer_id": "cust_42",
        "customer_email": "buyer@example.com",
        "metadata": {"order_id": "A-100"},
    }
    body.update(overrides)
    return body


def test_health_check(client):
    """Test health check endpoint"""
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "fxpay-gateway"}


def test_request_and_correlation_ids(client):
    response = client.get("/health", headers={"X-Correlation-ID": "corr-123"})

    assert response.headers["X-Correlation-ID"] == "corr-123"
    assert response.headers["X-Request-ID"]


def test_metrics_endpoint(client, merchant, usd_eur_rate):
    client.post("/v1/payments", json=payment_body(merchant))

    response = client.get("/metrics")

    assert response.status_code == 200
    assert "fxpay_payments_total" in response.text
    assert "http_request_duration_seconds" in response.text


def test_create_merchant(client):
    response = client.post(
        "/v1/merchants",
        json={
            "business_name": "Globex",
            "status": "active",
            "default_currency": "gbp",
            "currency_fees": [{"currency": "eur", "percentage_fee": 1.9}],
            "account_number": "GB00000011112222",
        },
        headers={"X-Actor-Id": "admin"},
    )

    assert response.status_code == 201
    data = response.json()
    assert data["default_currency"] == "GBP"
    assert data["currency_fees"][0]["currency"] == "EUR"
    assert data["percentage_fee"] == 2.9


def test_update_merchant_whitelist(client, merchant):
    response = client.patch(f"/v1/merchants/{merchant.id}", json={"flat_fee": 0.25, "status": "suspended"})

    assert response.status_code == 200
    assert response.json()["flat_fee"] == 0.25
    assert response.json()["status"] == "suspended"


def test_update_merchant_rejects_unknown_fields(client, merchant):
    response = client.patch(f"/v1/merchants/{merchant.id}", json={"monthly_volume": 1_000_000})

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


def test_get_unknown_merchant(client, db):
    response = client.get("/v1/merchants/missing")
    assert response.status_code == 404


def test_create_payment(client, merchant, usd_eur_rate):
    response = client.post("/v1/payments", json=payment_body(merchant))

    assert response.status_code == 201
    data = response.json()
    payment = data["payment"]
    assert payment["status"] == "initiated"
    assert payment["target_amount"] == 920.0
    assert payment["total_fee"] == 29.3
    assert payment["net_amount"] == 890.7
    assert payment["fee_currency"] == "EUR"
    assert payment["metadata"] == {"order_id": "A-100"}
    assert data["fraud"]["risk_score"] == 5
    assert data["fraud"]["blocked"] is False
    assert data["creation_time_ms"] >= 0


def test_create_payment_validation_error(client, merchant, usd_eur_rate):
    response = client.post("/v1/payments", json=payment_body(merchant, source_amount=-5))

    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "VALIDATION_ERROR"
    assert set(body) == {"error", "code", "details", "timestamp"}


def test_create_payment_unknown_merchant(client, db, usd_eur_rate):
    response = client.post(
        "/v1/payments",
        json={"merchant_id": "missing", "source_amount": 10.0, "source_currency": "USD", "target_currency": "EUR"},
    )

    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"


def test_create_payment_rate_unavailable(client, merchant):
    response = client.post("/v1/payments", json=payment_body(merchant, target_currency="JPY"))

    assert response.status_code == 422
    assert response.json()["code"] == "RATE_UNAVAILABLE"
    assert response.json()["details"] == {"from": "USD", "to": "JPY"}


def test_idempotent_replay(client, merchant, usd_eur_rate):
    headers = {"Idempotency-Key": "order-100", "X-Actor-Id": "user_1"}

    first = client.post("/v1/payments", json=payment_body(merchant), headers=headers)
    second = client.post("/v1/payments", json=payment_body(merchant), headers=headers)

    assert first.status_code == second.status_code == 201
    assert second.content == first.content
    assert second.headers["Idempotency-Replayed"] == "true"
    assert second.headers["Idempotency-Key"] == "order-100"
    assert "Idempotency-Replayed" not in first.headers

    listed = client.get("/v1/payments", params={"merchant_id": merchant.id}).json()
    assert listed["pagination"]["total"] == 1


def test_same_key_different_actor_is_a_new_request(client, merchant, usd_eur_rate):
    first = client.post(
        "/v1/payments", json=payment_body(merchant), headers={"Idempotency-Key": "k1", "X-Actor-Id": "a"}
    )
    second = client.post(
        "/v1/payments",
        json=payment_body(merchant, source_amount=12.5),
        headers={"Idempotency-Key": "k1", "X-Actor-Id": "b"},
    )

    assert first.json()["payment"]["id"] != second.json()["payment"]["id"]


def test_idempotency_conflict_while_processing(client, merchant, usd_eur_rate):
    get_idempotency_guard().begin("order-200", None, CREATE_ENDPOINT)

    response = client.post("/v1/payments", json=payment_body(merchant), headers={"Idempotency-Key": "order-200"})

    assert response.status_code == 409
    assert response.json()["code"] == "CONFLICT"


def test_malformed_idempotency_key(client, merchant, usd_eur_rate):
    response = client.post("/v1/payments", json=payment_body(merchant), headers={"Idempotency-Key": "bad key!"})

    assert response.status_code == 400


def test_failed_request_is_replayed(client, merchant):
    """A non-retryable error is cached against the key"""
    headers = {"Idempotency-Key": "order-300"}

    first = client.post("/v1/payments", json=payment_body(merchant, target_currency="JPY"), headers=headers)
    second = client.post("/v1/payments", json=payment_body(merchant, target_currency="JPY"), headers=headers)

    assert first.status_code == second.status_code == 422
    assert second.json()["code"] == "RATE_UNAVAILABLE"
    assert second.headers["Idempotency-Replayed"] == "true"


def test_server_error_releases_key_for_retry(client, merchant, usd_eur_rate, monkeypatch):
    """An unexpected failure is stored as a retryable 500, so the retry proceeds"""
    headers = {"Idempotency-Key": "order-400"}
    failing = TestClient(client.app, raise_server_exceptions=False)

    async def broken_assess(self, candidate, merchant_profile):
        raise RuntimeError("scoring backend down")

    with monkeypatch.context() as patch:
        patch.setattr(FraudScoringEngine, "assess", broken_assess)
        first = failing.post("/v1/payments", json=payment_body(merchant), headers=headers)

    assert first.status_code == 500
    assert first.json()["error"] == "Internal server error"

    status = client.get("/v1/payments/idempotency/order-400").json()
    assert status["status_code"] == 500
    assert status["retryable"] is True

    second = client.post("/v1/payments", json=payment_body(merchant), headers=headers)

    assert second.status_code == 201
    assert "Idempotency-Replayed" not in second.headers


def test_idempotency_status_lookup(client, merchant, usd_eur_rate):
    headers = {"Idempotency-Key": "order-500", "X-Actor-Id": "user_9"}
    client.post("/v1/payments", json=payment_body(merchant), headers=headers)

    response = client.get("/v1/payments/idempotency/order-500", headers={"X-Actor-Id": "user_9"})

    assert response.status_code == 200
    assert response.json()["key"] == "user_9:POST /v1/payments:order-500"
    assert response.json()["status_code"] == 201

    # keys are scoped to the actor that used them
    other = client.get("/v1/payments/idempotency/order-500", headers={"X-Actor-Id": "user_10"})
    assert other.status_code == 404
    assert other.json()["code"] == "NOT_FOUND"


def test_execute_payment_completes_in_background(client, merchant, usd_eur_rate):
    created = client.post("/v1/payments", json=payment_body(merchant)).json()["payment"]

    response = client.post(f"/v1/payments/{created['transaction_id']}/execute", headers={"X-Actor-Id": "ops"})

    assert response.status_code == 200
    assert response.json()["status"] == "processing"

    # TestClient runs background tasks before returning
    payment = client.get(f"/v1/payments/{created['id']}").json()
    assert payment["status"] == "completed"
    assert [entry["status"] for entry in payment["status_history"]] == ["initiated", "processing", "completed"]

    merchant_data = client.get(f"/v1/merchants/{merchant.id}").json()
    assert merchant_data["monthly_volume"] == 920.0


def test_execute_twice_is_rejected(client, merchant, usd_eur_rate):
    created = client.post("/v1/payments", json=payment_body(merchant)).json()["payment"]
    client.post(f"/v1/payments/{created['id']}/execute")

    response = client.post(f"/v1/payments/{created['id']}/execute")

    assert response.status_code == 409
    assert response.json()["code"] == "INVALID_STATE"


def test_refund_payment(client, merchant, payment_factory):
    payment = payment_factory(merchant)

    partial = client.post(f"/v1/payments/{payment.id}/refund", json={"amount": 25.0, "reason": "damaged"})
    full = client.post(f"/v1/payments/{payment.id}/refund", json={})

    assert partial.status_code == 200
    assert partial.json()["payment"]["total_refunded"] == 25.0
    assert full.json()["refund"]["amount"] == 75.0
    assert full.json()["payment"]["status"] == "refunded"


def test_refund_too_much(client, merchant, payment_factory):
    payment = payment_factory(merchant)

    response = client.post(f"/v1/payments/{payment.id}/refund", json={"amount": 100.01})

    assert response.status_code == 409


def test_list_payments_pagination(client, merchant, payment_factory):
    for _ in range(3):
        payment_factory(merchant)

    response = client.get("/v1/payments", params={"merchant_id": merchant.id, "limit": 2, "page": 2})

    data = response.json()
    assert data["pagination"] == {"page": 2, "limit": 2, "total": 3, "pages": 2}
    assert len(data["payments"]) == 1


def test_get_missing_payment_error_body(client, db):
    response = client.get("/v1/payments/TXN-MISSING")

    assert response.status_code == 404
    body = response.json()
    assert body["error"] == "Payment TXN-MISSING not found"
    assert body["code"] == "NOT_FOUND"
    assert body["details"] == {"resource": "Payment", "id": "TXN-MISSING"}
    assert body["timestamp"]


def test_payment_analytics_and_fraud_stats(client, merchant, payment_factory):
    payment_factory(merchant, risk_score=60, fraud_flags=[{"type": "ROUND_AMOUNT"}])

    analytics = client.get(f"/v1/payments/analytics/{merchant.id}")
    stats = client.get("/v1/payments/fraud/stats")

    assert analytics.json()["summary"]["total_count"] == 1
    assert stats.json()["high_risk_transactions"] == 1


def test_currencies(client):
    data = client.get("/v1/currencies").json()

    assert "USD" in data["currencies"]
    assert data["count"] == len(data["currencies"])


def test_get_rate(client, usd_eur_rate):
    response = client.get("/v1/currencies/rate", params={"from": "usd", "to": "eur"})

    assert response.status_code == 200
    data = response.json()
    assert data["rate"] == 0.92
    assert data["source"] == "database"
    assert data["from_currency"] == "USD"


def test_get_inverse_rate(client, usd_eur_rate):
    data = client.get("/v1/currencies/rate", params={"from": "EUR", "to": "USD"}).json()
    assert data["source"] == "database-inverse"


def test_get_rate_unavailable(client, db):
    response = client.get("/v1/currencies/rate", params={"from": "USD", "to": "JPY"})
    assert response.status_code == 422


def test_convert(client, usd_eur_rate):
    response = client.post("/v1/currencies/convert", json={"amount": 100, "from_currency": "USD", "to_currency": "EUR"})

    assert response.status_code == 200
    assert response.json()["converted_amount"] == 92.0


def test_all_rates_and_history(client, usd_eur_rate):
    rates = client.get("/v1/currencies/rates", params={"base": "USD"}).json()
    history = client.get("/v1/currencies/rates/history", params={"from": "USD", "to": "EUR"}).json()

    assert rates["count"] == 1
    assert history["history"][0]["rate"] == 0.92


def test_settlement_flow(client, merchant, payment_factory):
    payment = payment_factory(merchant, target_amount=1029.30, total_fee=29.30)

    batch = client.post("/v1/settlements/batch", json={"merchant_id": merchant.id})
    assert batch.status_code == 200
    settlement = batch.json()["settlement"]
    assert settlement["status"] == "pending"
    assert settlement["net_amount"] == 1000.0
    assert [p["id"] for p in settlement["payments"]] == [payment.id]

    processed = client.post(f"/v1/settlements/{settlement['settlement_id']}/process")
    assert processed.json()["status"] == "processing"

    # Simulated bank transfer completes in the background
    completed = client.get(f"/v1/settlements/{settlement['id']}").json()
    assert completed["status"] == "completed"
    assert completed["payments"][0]["status"] == "settled"

    reconciled = client.post(
        f"/v1/settlements/{settlement['id']}/reconcile",
        json={"actual_amount": 1000.02, "notes": "bank fee"},
        headers={"X-Actor-Id": "ops@example.com"},
    )
    assert reconciled.status_code == 200
    assert reconciled.json()["reconciliation"]["discrepancy"] == 0.02
    assert reconciled.json()["reconciliation"]["reconciled_by"] == "ops@example.com"

    again = client.post(f"/v1/settlements/{settlement['id']}/reconcile", json={"actual_amount": 1000.0})
    assert again.status_code == 409

    report = client.get("/v1/settlements/reports/reconciliation").json()
    assert len(report["discrepancies"]) == 1


def test_settlement_batch_with_nothing_to_settle(client, merchant):
    response = client.post("/v1/settlements/batch", json={"merchant_id": merchant.id})

    assert response.status_code == 200
    assert response.json() == {"settlement": None, "message": "No eligible payments for settlement"}


def test_bank_callback_failure(client, merchant, payment_factory, db):
    payment_factory(merchant)
    settlement = client.post("/v1/settlements/batch", json={"merchant_id": merchant.id}).json()["settlement"]

    # Leave the settlement in processing by starting it directly
    SettlementBatcher(db).process_settlement(settlement["id"])

    response = client.post(
        f"/v1/settlements/{settlement['id']}/bank-callback",
        json={"succeeded": False, "failure_reason": "Account closed"},
    )

    assert response.status_code == 200
    assert response.json()["status"] == "failed"
    assert response.json()["bank_transfer"]["failure_reason"] == "Account closed"


def test_list_settlements(client, merchant, payment_factory):
    payment_factory(merchant)
    client.post("/v1/settlements/batch", json={"merchant_id": merchant.id})

    data = client.get("/v1/settlements", params={"merchant_id": merchant.id}).json()

    assert data["pagination"]["total"] == 1
    assert data["settlements"][0]["transaction_count"] == 1

"""Payment endpoints: create, execute, refund, lookup and analytics"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Query, Request
from fastapi.responses import JSONResponse

from fxpay_gateway.api.dependencies import (
    get_actor,
    get_client_ip,
    get_completion_worker,
    get_fraud_engine,
    get_idempotency_guard,
    get_payment_pipeline,
    get_request_id,
)
from fxpay_gateway.api.errors import domain_error_body, error_body
from fxpay_gateway.api.v1.schemas import (
    FraudAssessmentSchema,
    PaymentCreateRequest,
    PaymentCreateResponse,
    PaymentListResponse,
    PaymentResponse,
    RefundRequest,
    RefundResponse,
)
from fxpay_gateway.domain.exceptions import DomainException, NotFoundError
from fxpay_gateway.infrastructure.database.repositories import PaymentFilters
from fxpay_gateway.services.completions import CompletionWorker
from fxpay_gateway.services.fraud import FraudScoringEngine
from fxpay_gateway.services.idempotency import IdempotencyGuard, derive_key
from fxpay_gateway.services.payments import PaymentPipeline, PaymentRequest

logger = logging.getLogger(__name__)

router = APIRouter()

CREATE_ENDPOINT = "POST /v1/payments"


@router.post("/payments", status_code=201, response_model=PaymentCreateResponse)
async def create_payment(
    body: PaymentCreateRequest,
    request: Request,
    pipeline: PaymentPipeline = Depends(get_payment_pipeline),
    guard: IdempotencyGuard = Depends(get_idempotency_guard),
    actor: Optional[str] = Depends(get_actor),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
):
    """
    Create a payment.

    Flow:
    1. Claim the idempotency key, or replay the cached response
    2. Resolve rate, compute fee and screen for fraud
    3. Persist at initiated (or failed when blocked) and return 201
    4. Cache the response against the key
    """
    request_id = get_request_id(request)
    key = None
    headers = {}

    if idempotency_key:
        decision = guard.begin(idempotency_key, actor, CREATE_ENDPOINT)
        headers["Idempotency-Key"] = idempotency_key
        if decision.should_replay:
            record = decision.record
            return JSONResponse(
                status_code=record.status_code,
                content=record.body,
                headers={**headers, "Idempotency-Replayed": "true"},
            )
        key = derive_key(idempotency_key, actor, CREATE_ENDPOINT)

    try:
        result = await pipeline.create_payment(
            PaymentRequest(
                merchant_id=body.merchant_id,
                source_amount=body.source_amount,
                source_currency=body.source_currency,
                target_currency=body.target_currency,
                customer_id=body.customer_id,
                customer_email=body.customer_email,
                customer_name=body.customer_name,
                payment_method=body.payment_method,
                description=body.description,
                reference=body.reference,
                metadata=body.metadata,
                ip_address=get_client_ip(request),
            ),
            actor=actor,
            idempotency_key=key,
        )
        content = PaymentCreateResponse(
            payment=PaymentResponse.model_validate(result.payment),
            fraud=FraudAssessmentSchema.model_validate(result.fraud),
            creation_time_ms=result.creation_time_ms,
        ).model_dump(mode="json")

    except DomainException as e:
        if key:
            guard.complete(key, e.status_code, domain_error_body(e))
        raise

    except Exception:
        pipeline.db.rollback()
        logger.exception("Payment creation failed", extra={"request_id": request_id})
        if key:
            guard.complete(key, 500, error_body("Internal server error", DomainException.code))
        raise

    if key:
        guard.complete(key, 201, content)
    return JSONResponse(status_code=201, content=content, headers=headers)


@router.get("/payments", response_model=PaymentListResponse)
def list_payments(
    merchant_id: Optional[str] = None,
    status: Optional[str] = None,
    source_currency: Optional[str] = None,
    target_currency: Optional[str] = None,
    customer_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    min_amount: Optional[float] = None,
    max_amount: Optional[float] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1),
    pipeline: PaymentPipeline = Depends(get_payment_pipeline),
):
    """List payments newest first; limit is capped at 100"""
    filters = PaymentFilters(
        merchant_id=merchant_id,
        status=status,
        source_currency=source_currency,
        target_currency=target_currency,
        customer_id=customer_id,
        start_date=start_date,
        end_date=end_date,
        min_amount=min_amount,
        max_amount=max_amount,
    )
    return pipeline.list_payments(filters, page, limit)


@router.get("/payments/analytics/{merchant_id}")
def get_payment_analytics(
    merchant_id: str,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    pipeline: PaymentPipeline = Depends(get_payment_pipeline),
):
    return pipeline.get_payment_analytics(merchant_id, start_date, end_date)


@router.get("/payments/fraud/stats")
def get_fraud_stats(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    fraud_engine: FraudScoringEngine = Depends(get_fraud_engine),
):
    return fraud_engine.get_fraud_stats(start_date, end_date)


@router.get("/payments/idempotency/{client_key}")
def get_idempotency_status(
    client_key: str,
    guard: IdempotencyGuard = Depends(get_idempotency_guard),
    actor: Optional[str] = Depends(get_actor),
):
    """State of a create-payment key as seen by the calling actor"""
    status = guard.get_status(client_key, actor, CREATE_ENDPOINT)
    if status is None:
        raise NotFoundError("Idempotency key", client_key)
    return status


@router.get("/payments/{payment_id}", response_model=PaymentResponse)
def get_payment(payment_id: str, pipeline: PaymentPipeline = Depends(get_payment_pipeline)):
    """Look up by id or TXN- transaction id"""
    return pipeline.get_payment(payment_id)


@router.post("/payments/{payment_id}/execute", response_model=PaymentResponse)
def execute_payment(
    payment_id: str,
    background_tasks: BackgroundTasks,
    pipeline: PaymentPipeline = Depends(get_payment_pipeline),
    worker: CompletionWorker = Depends(get_completion_worker),
    actor: Optional[str] = Depends(get_actor),
):
    """Returns the payment at processing; completion runs in the background"""
    payment, completion_id = pipeline.execute_payment(payment_id, actor)
    background_tasks.add_task(worker.run, completion_id)
    return payment


@router.post("/payments/{payment_id}/refund", response_model=RefundResponse)
def refund_payment(
    payment_id: str,
    body: RefundRequest,
    pipeline: PaymentPipeline = Depends(get_payment_pipeline),
    actor: Optional[str] = Depends(get_actor),
):
    return pipeline.refund_payment(payment_id, body.amount, body.reason, actor)

"""Settlement endpoints: batching, payout, bank callback and reconciliation"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query

from fxpay_gateway.api.dependencies import get_actor, get_completion_worker, get_settlement_batcher
from fxpay_gateway.api.v1.schemas import (
    BankCallbackRequest,
    ReconcileRequest,
    ReconcileResponse,
    SettlementBatchRequest,
    SettlementBatchResponse,
    SettlementListResponse,
    SettlementResponse,
)
from fxpay_gateway.infrastructure.database.repositories import SettlementFilters
from fxpay_gateway.services.completions import CompletionWorker
from fxpay_gateway.services.settlements import SettlementBatcher

router = APIRouter()


@router.post("/settlements/batch", response_model=SettlementBatchResponse)
def create_settlement_batch(
    body: SettlementBatchRequest,
    batcher: SettlementBatcher = Depends(get_settlement_batcher),
    actor: Optional[str] = Depends(get_actor),
):
    """Settle a merchant's completed payments; period defaults to the previous day"""
    settlement = batcher.create_settlement_batch(body.merchant_id, body.period_start, body.period_end, actor)
    if settlement is None:
        return SettlementBatchResponse(message="No eligible payments for settlement")
    return SettlementBatchResponse(settlement=SettlementResponse.model_validate(settlement))


@router.get("/settlements", response_model=SettlementListResponse)
def list_settlements(
    merchant_id: Optional[str] = None,
    status: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1),
    batcher: SettlementBatcher = Depends(get_settlement_batcher),
):
    filters = SettlementFilters(merchant_id=merchant_id, status=status, start_date=start_date, end_date=end_date)
    return batcher.list_settlements(filters, page, limit)


@router.get("/settlements/reports/reconciliation")
def get_reconciliation_report(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    batcher: SettlementBatcher = Depends(get_settlement_batcher),
):
    return batcher.get_reconciliation_report(start_date, end_date)


@router.get("/settlements/{settlement_id}", response_model=SettlementResponse)
def get_settlement(settlement_id: str, batcher: SettlementBatcher = Depends(get_settlement_batcher)):
    return batcher.get_settlement(settlement_id)


@router.post("/settlements/{settlement_id}/process", response_model=SettlementResponse)
def process_settlement(
    settlement_id: str,
    background_tasks: BackgroundTasks,
    batcher: SettlementBatcher = Depends(get_settlement_batcher),
    worker: CompletionWorker = Depends(get_completion_worker),
    actor: Optional[str] = Depends(get_actor),
):
    """Returns the settlement at processing; the bank transfer runs in the background"""
    settlement, completion_id = batcher.process_settlement(settlement_id, actor)
    background_tasks.add_task(worker.run, completion_id)
    return settlement


@router.post("/settlements/{settlement_id}/bank-callback", response_model=SettlementResponse)
def bank_callback(
    settlement_id: str,
    body: BankCallbackRequest,
    batcher: SettlementBatcher = Depends(get_settlement_batcher),
    actor: Optional[str] = Depends(get_actor),
):
    return batcher.complete_transfer(settlement_id, body.succeeded, body.failure_reason, actor)


@router.post("/settlements/{settlement_id}/reconcile", response_model=ReconcileResponse)
def reconcile_settlement(
    settlement_id: str,
    body: ReconcileRequest,
    batcher: SettlementBatcher = Depends(get_settlement_batcher),
    actor: Optional[str] = Depends(get_actor),
):
    return batcher.reconcile_settlement(settlement_id, body.actual_amount, actor, body.notes)

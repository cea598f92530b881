"""Pydantic schemas for API request/response validation"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

MerchantStatus = Literal["pending", "active", "suspended", "terminated"]


class PaginationSchema(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


# Payments


class PaymentCreateRequest(BaseModel):
    """Request body for POST /v1/payments"""

    merchant_id: str = Field(..., min_length=1, description="Merchant identifier")
    source_amount: float = Field(..., gt=0, description="Amount charged in the source currency")
    source_currency: str = Field(..., min_length=3, max_length=3)
    target_currency: str = Field(..., min_length=3, max_length=3)
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    payment_method: Optional[Dict[str, Any]] = None
    description: Optional[str] = None
    reference: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PaymentResponse(BaseModel):
    """Payment as returned by every payment endpoint"""

    model_config = ConfigDict(from_attributes=True)

    id: str
    transaction_id: str
    merchant_id: str
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    source_amount: float
    source_currency: str
    target_amount: float
    target_currency: str
    exchange_rate: Optional[Dict[str, Any]] = None
    percentage_fee: float
    flat_fee: float
    fee_discount: float
    fee_currency_override: Optional[str] = None
    total_fee: float
    fee_currency: str
    net_amount: float
    status: str
    status_history: List[Dict[str, Any]]
    description: Optional[str] = None
    reference: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias="payment_metadata")
    risk_score: int
    fraud_flags: List[Dict[str, Any]]
    refunds: List[Dict[str, Any]]
    total_refunded: float
    settlement_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    initiated_at: datetime
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None
    created_at: datetime


class FraudFlagSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    type: str
    message: str
    severity: str
    related_transactions: List[str] = Field(default_factory=list)


class FraudAssessmentSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    risk_score: int
    flags: List[FraudFlagSchema]
    blocked: bool
    reason: Optional[str] = None


class PaymentCreateResponse(BaseModel):
    """Response for POST /v1/payments"""

    payment: PaymentResponse
    fraud: FraudAssessmentSchema
    creation_time_ms: float


class PaymentListResponse(BaseModel):
    payments: List[PaymentResponse]
    pagination: PaginationSchema


class RefundRequest(BaseModel):
    """Request body for POST /v1/payments/{id}/refund; amount defaults to the remaining balance"""

    amount: Optional[float] = Field(None, gt=0)
    reason: Optional[str] = None


class RefundResponse(BaseModel):
    payment: PaymentResponse
    refund: Dict[str, Any]


# Settlements


class SettlementBatchRequest(BaseModel):
    """Request body for POST /v1/settlements/batch; period defaults to yesterday"""

    merchant_id: str = Field(..., min_length=1)
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None


class SettlementPaymentSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    transaction_id: str
    target_amount: float
    total_fee: float
    total_refunded: float
    status: str


class SettlementResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    settlement_id: str
    merchant_id: str
    period_start: datetime
    period_end: datetime
    gross_amount: float
    total_fees: float
    refund_amount: float
    net_amount: float
    currency: str
    transaction_count: int
    successful_transactions: int
    refunded_transactions: int
    status: str
    status_history: List[Dict[str, Any]]
    reconciliation_status: str
    reconciliation: Optional[Dict[str, Any]] = None
    bank_transfer: Dict[str, Any]
    payments: List[SettlementPaymentSchema] = Field(default_factory=list)
    scheduled_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime


class SettlementBatchResponse(BaseModel):
    settlement: Optional[SettlementResponse] = None
    message: Optional[str] = None


class SettlementListResponse(BaseModel):
    settlements: List[SettlementResponse]
    pagination: PaginationSchema


class BankCallbackRequest(BaseModel):
    """Bank verdict for a settlement payout"""

    succeeded: bool
    failure_reason: Optional[str] = None


class ReconcileRequest(BaseModel):
    actual_amount: float
    notes: Optional[str] = None


class ReconcileResponse(BaseModel):
    settlement: SettlementResponse
    reconciliation: Dict[str, Any]


# Currencies


class RateResponse(BaseModel):
    from_currency: str
    to_currency: str
    rate: float
    inverse_rate: float
    source: str
    latency_ms: float
    fetched_at: Optional[datetime] = None
    rate_id: Optional[str] = None


class ConvertRequest(BaseModel):
    amount: float = Field(..., gt=0)
    from_currency: str = Field(..., min_length=3, max_length=3)
    to_currency: str = Field(..., min_length=3, max_length=3)


# Merchants


class CurrencyFeeSchema(BaseModel):
    model_config = ConfigDict(extra="forbid")

    currency: str = Field(..., min_length=3, max_length=3)
    percentage_fee: Optional[float] = Field(None, ge=0)
    flat_fee: Optional[float] = Field(None, ge=0)


class VolumeIncentiveSchema(BaseModel):
    model_config = ConfigDict(extra="forbid")

    min_volume: float = Field(..., ge=0)
    max_volume: Optional[float] = Field(None, ge=0)
    discount_percent: float = Field(..., ge=0, le=100)


class MerchantCreate(BaseModel):
    """Request body for POST /v1/merchants"""

    model_config = ConfigDict(extra="forbid")

    business_name: str = Field(..., min_length=1)
    status: MerchantStatus = "pending"
    default_currency: str = Field("USD", min_length=3, max_length=3)
    percentage_fee: float = Field(2.9, ge=0)
    flat_fee: float = Field(0.30, ge=0)
    currency_fees: List[CurrencyFeeSchema] = Field(default_factory=list)
    volume_incentives: List[VolumeIncentiveSchema] = Field(default_factory=list)
    settlement_schedule: str = "daily"
    bank_name: Optional[str] = None
    account_number: Optional[str] = None


class MerchantUpdate(BaseModel):
    """
    Request body for PATCH /v1/merchants/{id}.

    Only these fields may change; any other key is rejected.
    """

    model_config = ConfigDict(extra="forbid")

    business_name: Optional[str] = Field(None, min_length=1)
    status: Optional[MerchantStatus] = None
    default_currency: Optional[str] = Field(None, min_length=3, max_length=3)
    percentage_fee: Optional[float] = Field(None, ge=0)
    flat_fee: Optional[float] = Field(None, ge=0)
    currency_fees: Optional[List[CurrencyFeeSchema]] = None
    volume_incentives: Optional[List[VolumeIncentiveSchema]] = None
    settlement_schedule: Optional[str] = None
    bank_name: Optional[str] = None
    account_number: Optional[str] = None


class MerchantResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    business_name: str
    status: str
    default_currency: str
    percentage_fee: float
    flat_fee: float
    currency_fees: List[Dict[str, Any]]
    volume_incentives: List[Dict[str, Any]]
    monthly_volume: float
    total_volume: float
    transaction_count: int
    settlement_schedule: str
    bank_name: Optional[str] = None
    created_at: datetime
    updated_at: datetime

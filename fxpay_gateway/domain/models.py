"""Domain models - pure Python dataclasses representing business entities"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass
class CurrencyFee:
    """Merchant fee override for a single currency"""

    currency: str
    percentage_fee: Optional[float] = None
    flat_fee: Optional[float] = None


@dataclass
class VolumeIncentive:
    """Monthly volume tier granting a discount on the percentage fee"""

    min_volume: float
    discount_percent: float
    max_volume: Optional[float] = None  # None = unbounded


@dataclass
class MerchantProfile:
    """Merchant attributes the payment pipeline depends on"""

    merchant_id: str
    status: str  # pending | active | suspended | terminated
    percentage_fee: float = 2.9
    flat_fee: float = 0.30
    currency_fees: List[CurrencyFee] = field(default_factory=list)
    volume_incentives: List[VolumeIncentive] = field(default_factory=list)
    monthly_volume: float = 0.0
    default_currency: str = "USD"


@dataclass
class FeeBreakdown:
    """Output of fee calculation"""

    percentage_fee: float  # effective percentage after discount
    flat_fee: float
    total_fee: float
    discount: float
    currency_override: Optional[str] = None


@dataclass
class ExchangeRateQuote:
    """Resolved exchange rate with provenance"""

    rate: float
    inverse_rate: float
    source: str  # identity | cache | cache-inverse | database | database-inverse
    latency_ms: float
    fetched_at: Optional[datetime] = None
    rate_id: Optional[str] = None
    version: Optional[int] = None
    provider_source: Optional[str] = None  # api | fallback, for stored quotes


@dataclass
class FraudFlag:
    """Single finding produced by a fraud check"""

    type: str
    message: str
    severity: str  # low | medium | high | critical
    related_transactions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class FraudAssessment:
    """Aggregated fraud screening outcome"""

    risk_score: int
    flags: List[FraudFlag]
    blocked: bool
    reason: Optional[str]
    checked_at: datetime


@dataclass
class PaymentCandidate:
    """Payment as seen by fraud screening, before it is persisted"""

    transaction_id: str
    merchant_id: str
    source_amount: float
    source_currency: str
    target_currency: str
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    ip_address: Optional[str] = None
    rate_source: Optional[str] = None


@dataclass
class SettlementTotals:
    """Amounts aggregated over the payments in a settlement batch"""

    gross_amount: float
    total_fees: float
    refund_amount: float
    net_amount: float
    transaction_count: int
    refunded_transactions: int


@dataclass
class ReconciliationResult:
    """Comparison of declared and transferred settlement amounts"""

    status: str  # completed | discrepancy_found
    expected_amount: float
    actual_amount: float
    discrepancy: float
    reconciled_by: Optional[str]
    reconciled_at: datetime
    notes: Optional[str] = None

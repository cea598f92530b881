"""Merchant directory: onboarding and whitelisted configuration updates"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from fxpay_gateway.domain.exceptions import NotFoundError, ValidationError
from fxpay_gateway.domain.lifecycle import MERCHANT_STATUSES
from fxpay_gateway.infrastructure.clients.audit import AuditEvent, AuditSink
from fxpay_gateway.infrastructure.database.models import Merchant
from fxpay_gateway.infrastructure.database.repositories import MerchantRepository

logger = logging.getLogger(__name__)

MUTABLE_FIELDS = frozenset(
    {
        "business_name",
        "status",
        "default_currency",
        "percentage_fee",
        "flat_fee",
        "currency_fees",
        "volume_incentives",
        "bank_name",
        "account_number",
        "settlement_schedule",
    }
)

# Never echoed into audit metadata
_SENSITIVE_FIELDS = frozenset({"account_number"})


def _normalize(changes: Dict[str, Any]) -> Dict[str, Any]:
    unknown = sorted(set(changes) - MUTABLE_FIELDS)
    if unknown:
        raise ValidationError("Fields cannot be changed", {"fields": unknown})

    status = changes.get("status")
    if status is not None and status not in MERCHANT_STATUSES:
        raise ValidationError("Unknown merchant status", {"status": status})

    normalized = dict(changes)
    if normalized.get("default_currency"):
        normalized["default_currency"] = normalized["default_currency"].upper()
    if normalized.get("currency_fees") is not None:
        normalized["currency_fees"] = [
            {**fee, "currency": fee["currency"].upper()} for fee in normalized["currency_fees"]
        ]
    return normalized


class MerchantDirectory:
    def __init__(self, db: Session, audit: Optional[AuditSink] = None):
        self.db = db
        self.audit = audit
        self.merchants = MerchantRepository(db)

    def create_merchant(self, fields: Dict[str, Any], actor: Optional[str] = None) -> Merchant:
        merchant = self.merchants.create(**_normalize(fields))
        self.db.commit()
        self._audit("merchant_created", merchant, actor, fields)
        return merchant

    def get_merchant(self, merchant_id: str) -> Merchant:
        merchant = self.merchants.get(merchant_id)
        if merchant is None:
            raise NotFoundError("Merchant", merchant_id)
        return merchant

    def update_merchant(self, merchant_id: str, changes: Dict[str, Any], actor: Optional[str] = None) -> Merchant:
        """Apply a whitelisted partial update; unknown fields raise ValidationError"""
        normalized = _normalize(changes)
        merchant = self.get_merchant(merchant_id)
        self.merchants.apply_changes(merchant, normalized)
        self.db.commit()
        self._audit("merchant_updated", merchant, actor, changes)
        return merchant

    def _audit(self, action: str, merchant: Merchant, actor: Optional[str], fields: Dict[str, Any]) -> None:
        logger.info(action, extra={"merchant_id": merchant.id, "fields": sorted(fields)})
        if self.audit is None:
            return
        self.audit.record(
            AuditEvent(
                action=action,
                category="merchant",
                resource_type="merchant",
                resource_id=merchant.id,
                actor=actor,
                metadata={k: v for k, v in fields.items() if k not in _SENSITIVE_FIELDS},
            )
        )

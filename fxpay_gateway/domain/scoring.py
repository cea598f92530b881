"""Fraud risk scoring - aggregation of check findings into a block decision"""

from datetime import datetime
from typing import Dict, List

from fxpay_gateway.domain.models import FraudAssessment, FraudFlag

LOW = "low"
MEDIUM = "medium"
HIGH = "high"
CRITICAL = "critical"

SEVERITY_POINTS: Dict[str, int] = {
    LOW: 5,
    MEDIUM: 15,
    HIGH: 30,
    CRITICAL: 50,
}

UNKNOWN_SEVERITY_POINTS = 10
MAX_RISK_SCORE = 100
DEFAULT_BLOCK_SCORE = 70

BLOCK_REASON = "Transaction blocked due to high risk"


def calculate_risk_score(flags: List[FraudFlag]) -> int:
    """
    Sum severity points over all flags, capped at 100.

    Points:
    - low: 5, medium: 15, high: 30, critical: 50
    - anything else: 10

    Every severity is worth a positive amount, so adding a flag never
    lowers the score.
    """
    score = sum(SEVERITY_POINTS.get(flag.severity, UNKNOWN_SEVERITY_POINTS) for flag in flags)
    return min(MAX_RISK_SCORE, score)


def should_block(flags: List[FraudFlag], risk_score: int, block_score: int = DEFAULT_BLOCK_SCORE) -> bool:
    """Block on any critical finding or when the score reaches the threshold"""
    return any(flag.severity == CRITICAL for flag in flags) or risk_score >= block_score


def assess_flags(
    flags: List[FraudFlag],
    checked_at: datetime,
    block_score: int = DEFAULT_BLOCK_SCORE,
) -> FraudAssessment:
    """Main entry point: turn collected flags into a FraudAssessment"""
    risk_score = calculate_risk_score(flags)
    blocked = should_block(flags, risk_score, block_score)

    return FraudAssessment(
        risk_score=risk_score,
        flags=flags,
        blocked=blocked,
        reason=BLOCK_REASON if blocked else None,
        checked_at=checked_at,
    )


def alert_severity(risk_score: int, block_score: int = DEFAULT_BLOCK_SCORE) -> str:
    """Audit severity for a high-risk assessment"""
    return "critical" if risk_score >= block_score else "warning"

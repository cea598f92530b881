"""Unit tests for fraud risk scoring"""

from datetime import datetime

from fxpay_gateway.domain.models import FraudFlag
from fxpay_gateway.domain.scoring import (
    BLOCK_REASON,
    alert_severity,
    assess_flags,
    calculate_risk_score,
    should_block,
)


def flag(severity: str, flag_type: str = "TEST_FLAG") -> FraudFlag:
    return FraudFlag(type=flag_type, message="test", severity=severity)


def test_severity_points():
    """low 5, medium 15, high 30, critical 50"""
    assert calculate_risk_score([flag("low")]) == 5
    assert calculate_risk_score([flag("medium")]) == 15
    assert calculate_risk_score([flag("high")]) == 30
    assert calculate_risk_score([flag("critical")]) == 50


def test_unknown_severity_scores_ten():
    assert calculate_risk_score([flag("weird")]) == 10


def test_no_flags_scores_zero():
    assert calculate_risk_score([]) == 0


def test_score_is_capped_at_100():
    assert calculate_risk_score([flag("critical")] * 3) == 100


def test_score_never_decreases_as_flags_are_added():
    """Adding any flag keeps the score within [0, 100] and never lowers it"""
    flags = []
    previous = calculate_risk_score(flags)
    for severity in ["low", "high", "unknown", "medium", "critical", "high", "low"]:
        flags.append(flag(severity))
        score = calculate_risk_score(flags)
        assert previous <= score <= 100
        previous = score


def test_block_on_critical_flag_regardless_of_score():
    assert should_block([flag("critical")], 50) is True


def test_block_at_threshold():
    """Score of exactly 70 blocks, 65 does not"""
    assert should_block([flag("high")], 70) is True
    assert should_block([flag("high")], 65) is False


def test_assess_flags_blocked():
    checked_at = datetime(2026, 1, 1, 12, 0)
    flags = [flag("high"), flag("high"), flag("medium")]

    assessment = assess_flags(flags, checked_at)

    assert assessment.risk_score == 75
    assert assessment.blocked is True
    assert assessment.reason == BLOCK_REASON
    assert assessment.flags == flags
    assert assessment.checked_at == checked_at


def test_assess_flags_allowed():
    assessment = assess_flags([flag("low")], datetime(2026, 1, 1))

    assert assessment.risk_score == 5
    assert assessment.blocked is False
    assert assessment.reason is None


def test_assess_flags_custom_block_score():
    assessment = assess_flags([flag("high")], datetime(2026, 1, 1), block_score=30)
    assert assessment.blocked is True


def test_alert_severity():
    assert alert_severity(55) == "warning"
    assert alert_severity(70) == "critical"

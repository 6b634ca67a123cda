import pytest

from loanwise.fields import LoanStatus
from loanwise.schemas import FactorEffect, LoanFieldSet
from loanwise.underwriting import (
    UnderwritingPolicy,
    apply_decision,
    debt_service_ratio,
    decide,
    monthly_payment,
)


@pytest.fixture
def mortgage_fields():
    return LoanFieldSet(
        amount=250000,
        monthly_income=8500,
        credit_score=750,
        employment_status="full-time",
        loan_type="mortgage",
    )


def test_strong_mortgage_is_approved(mortgage_fields):
    decision = decide(mortgage_fields)
    policy = UnderwritingPolicy()
    assert decision.status == LoanStatus.APPROVED
    assert policy.min_rate < decision.interest_rate < policy.max_rate
    assert decision.interest_rate == 6.5
    assert decision.term_months == 360
    assert decision.risk_score == 0.875
    assert decision.confidence == 0.875
    assert decision.conditions == []
    assert decision.monthly_payment > 0


def test_high_ratio_auto_loan_is_rejected():
    decision = decide(LoanFieldSet(amount=45000, monthly_income=2000, loan_type="auto"))
    assert decision.status == LoanStatus.REJECTED
    assert decision.factors[0].name == "debt_service_ratio"
    assert decision.factors[0].effect == FactorEffect.NEGATIVE
    assert decision.interest_rate is None
    assert decision.term_months is None
    assert "Consider applying for a smaller loan amount" in decision.conditions


def test_missing_required_fields_need_info():
    decision = decide(LoanFieldSet(amount=1000, credit_score=800))
    assert decision.status == LoanStatus.NEEDS_INFO
    assert decision.missing_fields == ["loan_type", "monthly_income"]
    assert [f.name for f in decision.factors] == ["loan_type", "monthly_income"]
    assert decision.interest_rate is None
    assert decision.term_months is None


def test_decision_is_deterministic(mortgage_fields):
    assert decide(mortgage_fields) == decide(mortgage_fields.model_copy())


def test_stated_term_overrides_default(mortgage_fields):
    decision = decide(mortgage_fields.model_copy(update={"term_months": 180}))
    assert decision.term_months == 180


def test_low_score_is_rejected_with_factors():
    fields = LoanFieldSet(
        amount=1000,
        monthly_income=5000,
        credit_score=400,
        employment_status="unemployed",
        loan_type="personal",
    )
    decision = decide(fields)
    assert decision.status == LoanStatus.REJECTED
    assert decision.risk_score == 0.3
    assert decision.confidence == 0.7
    assert decision.factors[0].name == "credit_score"
    assert decision.factors[0].effect == FactorEffect.NEGATIVE


def test_missing_credit_score_lowers_confidence():
    fields = LoanFieldSet(
        amount=250000, monthly_income=8500, employment_status="full-time", loan_type="mortgage"
    )
    decision = decide(fields)
    assert decision.status == LoanStatus.APPROVED
    assert decision.confidence == 0.675
    assert decision.interest_rate == 7.5
    assert "Provide your credit score to confirm the quoted rate" in decision.conditions


def test_rate_is_clamped_to_policy(mortgage_fields):
    decision = decide(mortgage_fields, UnderwritingPolicy(min_rate=8.0))
    assert decision.interest_rate == 8.0


def test_ratio_and_payment_math():
    assert debt_service_ratio(45000, 2000) == 1.875
    assert monthly_payment(12000, 0, 12) == 1000.0
    assert monthly_payment(100000, 6.0, 360) == 599.55


def test_status_only_moves_forward(mortgage_fields):
    approved = apply_decision(mortgage_fields, decide(mortgage_fields))
    assert approved.status == LoanStatus.APPROVED
    assert approved.interest_rate == 6.5

    needs_info = decide(LoanFieldSet())
    assert apply_decision(approved, needs_info) is approved

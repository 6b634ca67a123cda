import logging
from dataclasses import dataclass

from .config import settings
from .fields import REQUIRED_FIELDS, LoanStatus
from .schemas import Decision, Factor, FactorEffect, LoanFieldSet

logger = logging.getLogger(__name__)

# (moderate, reject) debt-service ratio cutoffs: amount / annual income.
RATIO_CUTOFFS = {
    "mortgage": (3.0, 5.0),
    "business": (1.0, 2.0),
    "auto": (0.5, 1.0),
    "personal": (0.3, 0.6),
}
BASE_RATES = {
    "mortgage": 7.5,
    "auto": 9.5,
    "business": 11.0,
    "personal": 12.0,
}
DEFAULT_TERMS = {
    "mortgage": 360,
    "auto": 60,
    "business": 60,
    "personal": 36,
}
EMPLOYMENT_SCORES = {
    "full-time": 1.0,
    "part-time": 0.25,
    "retired": 0.0,
    "self-employed": -0.25,
    "student": -0.5,
    "unemployed": -1.0,
}
WEIGHTS = {
    "credit_score": 0.5,
    "debt_service_ratio": 0.3,
    "employment_status": 0.2,
}
# (minimum score, tier, rate offset), best tier first.
RISK_TIERS = (
    (0.8, "low", -1.0),
    (0.6, "moderate", 0.0),
    (0.4, "elevated", 1.5),
    (0.0, "high", 3.0),
)
HIGH_VALUE_AMOUNT = 1_000_000

_NEXT_STATUS = {
    LoanStatus.PENDING: {
        LoanStatus.PENDING,
        LoanStatus.APPROVED,
        LoanStatus.REJECTED,
        LoanStatus.NEEDS_INFO,
    },
    LoanStatus.NEEDS_INFO: {LoanStatus.NEEDS_INFO},
    LoanStatus.APPROVED: {LoanStatus.APPROVED},
    LoanStatus.REJECTED: {LoanStatus.REJECTED},
}


@dataclass(frozen=True)
class UnderwritingPolicy:
    approval_threshold: float = 0.6
    min_rate: float = 5.0
    max_rate: float = 20.0

    @classmethod
    def from_settings(cls) -> "UnderwritingPolicy":
        return cls(
            approval_threshold=settings.approval_threshold,
            min_rate=settings.min_rate,
            max_rate=settings.max_rate,
        )


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def debt_service_ratio(amount: float, monthly_income: float) -> float:
    return amount / (monthly_income * 12)


def _ratio_component(ratio: float, loan_type: str) -> float:
    moderate, reject = RATIO_CUTOFFS[loan_type]
    if ratio <= moderate:
        return 1.0
    return _clamp(-(ratio - moderate) / (reject - moderate), -1.0, 0.0)


def _components(fields: LoanFieldSet, ratio: float) -> dict[str, float]:
    components = {"debt_service_ratio": _ratio_component(ratio, fields.loan_type)}
    if fields.credit_score is not None:
        components["credit_score"] = _clamp((fields.credit_score - 650) / 200, -1.0, 1.0)
    if fields.employment_status in EMPLOYMENT_SCORES:
        components["employment_status"] = EMPLOYMENT_SCORES[fields.employment_status]
    return components


def _factors(components: dict[str, float]) -> list[Factor]:
    factors = [
        Factor(
            name=name,
            effect=FactorEffect.POSITIVE if value >= 0 else FactorEffect.NEGATIVE,
            weight=round(abs(WEIGHTS[name] * value), 4),
        )
        for name, value in components.items()
    ]
    return sorted(factors, key=lambda f: (-f.weight, f.name))


def risk_tier(score: float) -> tuple[str, float]:
    for minimum, tier, offset in RISK_TIERS:
        if score >= minimum:
            return tier, offset
    return RISK_TIERS[-1][1], RISK_TIERS[-1][2]


def interest_rate(loan_type: str, score: float, policy: UnderwritingPolicy) -> float:
    _, offset = risk_tier(score)
    return round(_clamp(BASE_RATES[loan_type] + offset, policy.min_rate, policy.max_rate), 2)


def monthly_payment(principal: float, annual_rate: float, term_months: int) -> float:
    monthly_rate = annual_rate / 100 / 12
    if monthly_rate == 0:
        return round(principal / term_months, 2)
    growth = (1 + monthly_rate) ** term_months
    return round(principal * monthly_rate * growth / (growth - 1), 2)


def _conditions(
    fields: LoanFieldSet, status: LoanStatus, ratio: float, ratio_rejected: bool
) -> list[str]:
    credit = fields.credit_score
    moderate, _ = RATIO_CUTOFFS[fields.loan_type]
    conditions = []
    if status == LoanStatus.REJECTED:
        if ratio_rejected and (credit is None or credit >= 600):
            conditions.append("Consider applying for a smaller loan amount")
        if credit is not None and 550 <= credit < 650:
            conditions.append("Improve credit score and reapply after 6 months")
        return conditions
    if credit is None:
        conditions.append("Provide your credit score to confirm the quoted rate")
    elif credit < 700:
        conditions.append("Provide additional income verification documents")
    if ratio > moderate:
        conditions.append("Submit a detailed monthly expense breakdown")
    if fields.amount > HIGH_VALUE_AMOUNT:
        conditions.append("Collateral security required for high-value loans")
    return conditions


def decide(fields: LoanFieldSet, policy: UnderwritingPolicy | None = None) -> Decision:
    """
    Deterministic underwriting decision for a (possibly partial) field set.

    Missing any of amount, loan type or monthly income yields ``needs-info``
    listing exactly those fields. A complete set is always approved or
    rejected: rejected outright when the debt-service ratio is over the loan
    type's reject cutoff, otherwise approved when the risk score reaches the
    approval threshold.
    """
    policy = policy or UnderwritingPolicy()
    missing = fields.missing(REQUIRED_FIELDS)
    if missing:
        return Decision(
            status=LoanStatus.NEEDS_INFO,
            confidence=0.0,
            factors=[Factor(name=name, effect=FactorEffect.NEGATIVE, weight=1.0) for name in missing],
            missing_fields=missing,
        )

    ratio = debt_service_ratio(fields.amount, fields.monthly_income)
    components = _components(fields, ratio)
    raw = sum(WEIGHTS[name] * value for name, value in components.items())
    score = round(0.5 + raw / 2, 4)
    _, reject_cutoff = RATIO_CUTOFFS[fields.loan_type]

    rate = term = payment = None
    ratio_rejected = ratio > reject_cutoff
    if ratio_rejected:
        status = LoanStatus.REJECTED
        confidence = min(1.0, 0.7 + 0.3 * (ratio - reject_cutoff) / reject_cutoff)
    elif score >= policy.approval_threshold:
        status = LoanStatus.APPROVED
        confidence = score if fields.credit_score is not None else score * 0.9
        rate = interest_rate(fields.loan_type, score, policy)
        term = fields.term_months or DEFAULT_TERMS[fields.loan_type]
        payment = monthly_payment(fields.amount, rate, term)
    else:
        status = LoanStatus.REJECTED
        confidence = 1.0 - score

    factors = _factors(components)
    if ratio_rejected:
        # the ratio is the deciding factor, so it leads the explanation
        factors.sort(key=lambda f: f.name != "debt_service_ratio")

    return Decision(
        status=status,
        confidence=round(confidence, 4),
        factors=factors,
        interest_rate=rate,
        term_months=term,
        risk_score=score,
        debt_service_ratio=round(ratio, 4),
        monthly_payment=payment,
        conditions=_conditions(fields, status, ratio, ratio_rejected),
    )


def apply_decision(fields: LoanFieldSet, decision: Decision) -> LoanFieldSet:
    """Record a decision on the field set, moving status forward only."""
    if decision.status not in _NEXT_STATUS[fields.status]:
        logger.warning(
            "Ignoring status change %s -> %s without a field change",
            fields.status.value,
            decision.status.value,
        )
        return fields
    return fields.model_copy(
        update={
            "status": decision.status,
            "interest_rate": decision.interest_rate,
            "decided_term_months": decision.term_months,
        }
    )

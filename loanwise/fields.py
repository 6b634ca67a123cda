"""
Loan-application field schema.

Single source of truth for field names, their vocabularies and the rules a raw
value must pass before it is stored on a ``LoanFieldSet``. Every function here
is pure: no I/O, no clock, no randomness.
"""
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from .errors import UnknownFieldError, ValidationError


class LoanType(str, Enum):
    MORTGAGE = "mortgage"
    AUTO = "auto"
    PERSONAL = "personal"
    BUSINESS = "business"


class EmploymentStatus(str, Enum):
    FULL_TIME = "full-time"
    PART_TIME = "part-time"
    SELF_EMPLOYED = "self-employed"
    UNEMPLOYED = "unemployed"
    RETIRED = "retired"
    STUDENT = "student"


class LoanStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    NEEDS_INFO = "needs-info"


TERM_MENU = (12, 36, 60, 180, 360)
CREDIT_SCORE_MIN = 300
CREDIT_SCORE_MAX = 850

REQUIRED_FIELDS = ("amount", "loan_type", "monthly_income")

# Fields a user can state in conversation, in the order the assistant asks for them.
INPUT_FIELDS = (
    "loan_type",
    "applicant_name",
    "amount",
    "monthly_income",
    "employment_status",
    "credit_score",
    "purpose",
    "term_months",
)

LOAN_TYPE_ALIASES = {
    "mortgage": LoanType.MORTGAGE,
    "home": LoanType.MORTGAGE,
    "home loan": LoanType.MORTGAGE,
    "house": LoanType.MORTGAGE,
    "housing": LoanType.MORTGAGE,
    "auto": LoanType.AUTO,
    "auto loan": LoanType.AUTO,
    "car": LoanType.AUTO,
    "car loan": LoanType.AUTO,
    "vehicle": LoanType.AUTO,
    "vehicle loan": LoanType.AUTO,
    "personal": LoanType.PERSONAL,
    "personal loan": LoanType.PERSONAL,
    "business": LoanType.BUSINESS,
    "business loan": LoanType.BUSINESS,
    "commercial": LoanType.BUSINESS,
}

EMPLOYMENT_ALIASES = {
    "full-time": EmploymentStatus.FULL_TIME,
    "full time": EmploymentStatus.FULL_TIME,
    "fulltime": EmploymentStatus.FULL_TIME,
    "employed": EmploymentStatus.FULL_TIME,
    "salaried": EmploymentStatus.FULL_TIME,
    "part-time": EmploymentStatus.PART_TIME,
    "part time": EmploymentStatus.PART_TIME,
    "parttime": EmploymentStatus.PART_TIME,
    "self-employed": EmploymentStatus.SELF_EMPLOYED,
    "self employed": EmploymentStatus.SELF_EMPLOYED,
    "freelance": EmploymentStatus.SELF_EMPLOYED,
    "freelancer": EmploymentStatus.SELF_EMPLOYED,
    "contractor": EmploymentStatus.SELF_EMPLOYED,
    "unemployed": EmploymentStatus.UNEMPLOYED,
    "retired": EmploymentStatus.RETIRED,
    "student": EmploymentStatus.STUDENT,
}

STATUS_ALIASES = {status.value: status for status in LoanStatus}

_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z' \-]*[A-Za-z]$")
_MONEY_JUNK_RE = re.compile(r"[$,\s]")


@dataclass(frozen=True)
class FieldValidation:
    ok: bool
    value: Any = None
    reason: str | None = None


def _accept(value) -> FieldValidation:
    return FieldValidation(ok=True, value=value)


def _reject(reason: str) -> FieldValidation:
    return FieldValidation(ok=False, reason=reason)


def _to_number(raw) -> float | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return float(raw)
    if isinstance(raw, str):
        cleaned = _MONEY_JUNK_RE.sub("", raw)
        try:
            return float(cleaned)
        except ValueError:
            return None
    return None


def _positive_money(raw) -> FieldValidation:
    number = _to_number(raw)
    if number is None or number != number:
        return _reject("not-a-number")
    if number <= 0 or number == float("inf"):
        return _reject("non-positive")
    return _accept(round(number, 2))


def _credit_score(raw) -> FieldValidation:
    if raw is None or raw == "":
        return _accept(None)
    number = _to_number(raw)
    if number is None or not number.is_integer():
        return _reject("not-an-integer")
    score = int(number)
    if not CREDIT_SCORE_MIN <= score <= CREDIT_SCORE_MAX:
        return _reject("out-of-range")
    return _accept(score)


def _enum_validator(aliases: dict[str, Enum]) -> Callable[[Any], FieldValidation]:
    def validate_enum(raw) -> FieldValidation:
        if isinstance(raw, Enum):
            raw = raw.value
        if not isinstance(raw, str):
            return _reject("unrecognized-enum")
        key = " ".join(raw.strip().lower().split())
        member = aliases.get(key)
        if member is None:
            return _reject("unrecognized-enum")
        return _accept(member.value)

    return validate_enum


def _applicant_name(raw) -> FieldValidation:
    if not isinstance(raw, str):
        return _reject("not-a-name")
    words = raw.split()
    name = " ".join(w[0].upper() + w[1:] if w.islower() else w for w in words)
    if not 2 <= len(name) <= 100 or not _NAME_RE.match(name):
        return _reject("not-a-name")
    return _accept(name)


def _purpose(raw) -> FieldValidation:
    if not isinstance(raw, str):
        return _reject("not-text")
    text = " ".join(raw.split())
    if not text:
        return _reject("empty")
    return _accept(text[:200])


def _term_months(raw) -> FieldValidation:
    number = _to_number(raw)
    if number is None or not number.is_integer():
        return _reject("not-an-integer")
    if int(number) not in TERM_MENU:
        return _reject("unsupported-term")
    return _accept(int(number))


def _interest_rate(raw) -> FieldValidation:
    if isinstance(raw, str):
        raw = raw.strip().rstrip("%")
    number = _to_number(raw)
    if number is None:
        return _reject("not-a-number")
    if not 0 < number <= 100:
        return _reject("out-of-range")
    return _accept(round(number, 2))


VALIDATORS: dict[str, Callable[[Any], FieldValidation]] = {
    "applicant_name": _applicant_name,
    "amount": _positive_money,
    "loan_type": _enum_validator(LOAN_TYPE_ALIASES),
    "credit_score": _credit_score,
    "monthly_income": _positive_money,
    "employment_status": _enum_validator(EMPLOYMENT_ALIASES),
    "purpose": _purpose,
    "term_months": _term_months,
    "interest_rate": _interest_rate,
    "status": _enum_validator(STATUS_ALIASES),
}

FIELD_NAMES = tuple(VALIDATORS)


def validate(field: str, raw) -> FieldValidation:
    try:
        validator = VALIDATORS[field]
    except KeyError:
        raise UnknownFieldError(field) from None
    return validator(raw)


def require(field: str, raw):
    """Validate ``raw`` and return the normalized value, raising on rejection."""
    result = validate(field, raw)
    if not result.ok:
        raise ValidationError(field, result.reason or "invalid")
    return result.value

"""
Loan field extraction from free-form dialogue.

Each input field has an explicit extractor that reads one utterance and returns
a raw candidate or ``None``. A structured hint emitted by the language model is
treated as one more candidate source: per field, the first source whose value
passes the field validator wins (hint first, then the deterministic extractor).
Accepted values are merged into the running field set last-accepted-wins, and a
field that fails to parse in a later turn keeps its earlier value.

Numbers are read once per utterance and assigned to amount, monthly income or
credit score by, in order: an income period right after the number ("6k a
month"), the nearest field keyword within a short window, the field the
assistant last asked for, and finally position (first number is the amount,
second the income). The last two rules are reported as ``ExtractionAmbiguity``.
"""
import json
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from .errors import ExtractionAmbiguity
from .fields import CREDIT_SCORE_MAX, CREDIT_SCORE_MIN, INPUT_FIELDS, LoanStatus, validate
from .schemas import ConversationTurn, LoanFieldSet, Sender

logger = logging.getLogger(__name__)

KEYWORD_WINDOW = 40

_MULTIPLIERS = {
    "k": 1_000,
    "thousand": 1_000,
    "grand": 1_000,
    "m": 1_000_000,
    "mm": 1_000_000,
    "million": 1_000_000,
    "lakh": 100_000,
    "lakhs": 100_000,
    "lac": 100_000,
    "lacs": 100_000,
    "crore": 10_000_000,
    "crores": 10_000_000,
}

_NUMBER_RE = re.compile(
    r"(?P<currency>\$)?\s?(?P<number>\d+(?:,\d{3})*(?:\.\d+)?)"
    r"(?:\s?(?P<suffix>k|thousand|grand|mm|m|million|lakhs?|lacs?|crores?)\b)?"
    r"(?P<percent>\s?%)?",
    re.IGNORECASE,
)
_UNIT_AFTER_RE = re.compile(r"^\s*-?\s*(?P<unit>years?|yrs?|months?|mos?)\b(?P<old>\s+old)?", re.I)
_PERIOD_AFTER_RE = re.compile(
    r"^\s*(?:(?:a|an|per|each|every|/)\s*(?P<unit>month|mo|year|yr|annum|week|wk)\b"
    r"|(?P<adverb>monthly|annually|yearly|weekly)\b)",
    re.I,
)
_DATE_BEFORE_RE = re.compile(r"\b(?:in|since|from|until|by|year)\s*$", re.I)
_TERM_BEFORE_RE = re.compile(r"\b(?:over|term|repay|pay it back|pay back|within|spread)\b", re.I)
_TERM_AFTER_RE = re.compile(r"^\W*\w*\W*(?:term|loan|mortgage|fixed)\b", re.I)

_AMOUNT_KEYWORDS = re.compile(
    r"\b(?:need|needs|borrow|borrowing|loan|amount|finance|financing|looking for|request"
    r"|requesting|want|funding|costs?|price)\b",
    re.I,
)
_INCOME_KEYWORDS = re.compile(
    r"\b(?:make|makes|making|earn|earns|earning|income|salary|paid|take home|bring in|gross)\b",
    re.I,
)
_CREDIT_KEYWORDS = re.compile(r"\b(?:credit|score|fico|cibil)\b", re.I)

_KEYWORD_FIELDS = (
    ("amount", _AMOUNT_KEYWORDS),
    ("monthly_income", _INCOME_KEYWORDS),
    ("credit_score", _CREDIT_KEYWORDS),
)

_EXPLICIT_LOAN_RE = re.compile(
    r"\b(mortgage|home|house|auto|car|vehicle|personal|business)\s+loan\b", re.I
)
_LOAN_TYPE_KEYWORDS = (
    ("mortgage", re.compile(r"\b(?:mortgage|home|house|property|condo|apartment|refinanc\w*)\b", re.I)),
    ("auto", re.compile(r"\b(?:car|auto|vehicle|truck|motorcycle|suv|van)\b", re.I)),
    ("business", re.compile(r"\b(?:business|company|startup|restaurant|shop|store|inventory|equipment)\b", re.I)),
    ("personal", re.compile(r"\b(?:personal|wedding|vacation|travel|medical|tuition|debt consolidation|renovation)\b", re.I)),
)

# Checked in order: the later patterns are substrings of the earlier ones.
_EMPLOYMENT_PATTERNS = (
    ("self-employed", re.compile(
        r"\b(?:self[- ]employed|freelanc\w*|contractor|business owner|own (?:my own )?business|run my own)\b", re.I)),
    ("unemployed", re.compile(r"\b(?:unemployed|not working|between jobs|out of work|lost my job)\b", re.I)),
    ("part-time", re.compile(r"\bpart[- ]time\b", re.I)),
    ("retired", re.compile(r"\bretired\b", re.I)),
    ("student", re.compile(r"\b(?:student|in college|at university)\b", re.I)),
    ("full-time", re.compile(r"\b(?:full[- ]time|employed|salaried|work (?:at|for)|job at)\b", re.I)),
)

_NAME_WORDS = r"([A-Za-z][A-Za-z'\-]*(?:\s+[A-Za-z][A-Za-z'\-]*){0,3})"
_NAME_PATTERNS = (
    re.compile(r"\bmy (?:full )?name is\s+" + _NAME_WORDS, re.I),
    re.compile(r"\bcall me\s+" + _NAME_WORDS, re.I),
    re.compile(r"\bname:\s*" + _NAME_WORDS, re.I),
    re.compile(r"\b(?i:i am|i'm|this is)\s+([A-Z][a-z'\-]+(?:\s+[A-Z][a-z'\-]+){0,3})"),
)
_NAME_STOPWORDS = {
    "and", "but", "i", "im", "i'm", "my", "from", "with", "who", "here", "looking",
    "need", "want", "a", "an", "the", "loan", "interested", "applying", "employed",
    "working", "seeking", "self", "currently", "so", "just", "not",
}

_PURPOSE_RE = re.compile(
    r"\b(?:purpose is|it's for|it is for|to)\s+((?:buy|purchase|pay(?: off)?|cover|fund|start"
    r"|expand|open|renovate|consolidate|finance|refinance|build|remodel)\b[^.!?;,]*)",
    re.I,
)

_HINT_ALIASES = {
    "applicantName": "applicant_name",
    "name": "applicant_name",
    "loan_amount": "amount",
    "loanAmount": "amount",
    "loanType": "loan_type",
    "creditScore": "credit_score",
    "monthlyIncome": "monthly_income",
    "employmentStatus": "employment_status",
    "loan_purpose": "purpose",
    "termMonths": "term_months",
}


@dataclass
class _Number:
    value: float
    start: int
    end: int
    bare_integer: bool
    period: str | None = None


@dataclass
class _Utterance:
    text: str
    expecting: str | None
    numbers: dict[str, float] = field(default_factory=dict)
    term_months: int | None = None
    ambiguities: list[ExtractionAmbiguity] = field(default_factory=list)


@dataclass
class ExtractionResult:
    updated_fields: LoanFieldSet
    changed_field_names: list[str]
    ambiguities: list[ExtractionAmbiguity] = field(default_factory=list)


def _distance(start: int, end: int, match: re.Match) -> float:
    if match.end() <= start:
        return start - match.end()
    if match.start() >= end:
        # keywords after the number count slightly less than keywords before it
        return match.start() - end + 0.5
    return 0.0


def _nearest_keyword(text: str, number: _Number) -> str | None:
    best: tuple[float, str] | None = None
    for name, pattern in _KEYWORD_FIELDS:
        for match in pattern.finditer(text):
            d = _distance(number.start, number.end, match)
            if d <= KEYWORD_WINDOW and (best is None or d < best[0]):
                best = (d, name)
    return best[1] if best else None


def _scan_numbers(text: str) -> tuple[list[_Number], int | None]:
    numbers: list[_Number] = []
    term_months = None
    for match in _NUMBER_RE.finditer(text):
        if match.group("percent"):
            continue
        raw = match.group("number")
        value = float(raw.replace(",", ""))
        if not math.isfinite(value):
            continue
        after = text[match.end():]
        before = text[:match.start()]
        unit = _UNIT_AFTER_RE.match(after) if not match.group("suffix") else None
        if unit:
            if unit.group("old") is None and (
                _TERM_BEFORE_RE.search(before[-25:]) or _TERM_AFTER_RE.match(after[unit.end():])
            ):
                months = int(value) * (12 if unit.group("unit").lower().startswith("y") else 1)
                term_months = term_months or months
            continue
        if not match.group("currency") and not match.group("suffix") and _DATE_BEFORE_RE.search(before):
            continue
        suffix = (match.group("suffix") or "").lower()
        value *= _MULTIPLIERS.get(suffix, 1)
        if not math.isfinite(value):
            continue
        period = None
        period_match = _PERIOD_AFTER_RE.match(after)
        if period_match:
            period = (period_match.group("unit") or period_match.group("adverb")).lower()
        numbers.append(
            _Number(
                value=value,
                start=match.start("number"),
                end=match.end(),
                bare_integer=not (match.group("currency") or suffix or "," in raw or "." in raw),
                period=period,
            )
        )
    return numbers, term_months


def _monthly(value: float, period: str) -> float:
    if period.startswith(("year", "yr", "annum", "annual")):
        return value / 12
    if period.startswith(("week", "wk")):
        return value * 52 / 12
    return value


def _is_credit_like(number: _Number) -> bool:
    return number.bare_integer and CREDIT_SCORE_MIN <= number.value <= CREDIT_SCORE_MAX


def _read(text: str, expecting: str | None) -> _Utterance:
    utterance = _Utterance(text=text, expecting=expecting)
    numbers, utterance.term_months = _scan_numbers(text)
    assigned = utterance.numbers
    unanchored: list[_Number] = []

    for number in numbers:
        if number.period:
            assigned.setdefault("monthly_income", _monthly(number.value, number.period))
            continue
        keyword = _nearest_keyword(text, number)
        if keyword is not None:
            assigned.setdefault(keyword, number.value)
        else:
            unanchored.append(number)

    if not unanchored:
        return utterance

    if len(unanchored) == 1 and expecting in ("amount", "monthly_income", "credit_score"):
        if expecting not in assigned:
            assigned[expecting] = unanchored[0].value
            utterance.ambiguities.append(
                ExtractionAmbiguity(expecting, unanchored[0].value, "expected-field")
            )
            return utterance

    remaining = []
    for number in unanchored:
        if _is_credit_like(number) and "credit_score" not in assigned and expecting != "amount":
            assigned["credit_score"] = number.value
            utterance.ambiguities.append(
                ExtractionAmbiguity("credit_score", number.value, "credit-range")
            )
        elif number.value >= 100 or not number.bare_integer:
            remaining.append(number)

    slots = [name for name in ("amount", "monthly_income") if name not in assigned]
    for name, number in zip(slots, remaining):
        assigned[name] = number.value
        utterance.ambiguities.append(ExtractionAmbiguity(name, number.value, "positional"))
    return utterance


def _extract_amount(u: _Utterance) -> Any | None:
    return u.numbers.get("amount")


def _extract_monthly_income(u: _Utterance) -> Any | None:
    return u.numbers.get("monthly_income")


def _extract_credit_score(u: _Utterance) -> Any | None:
    value = u.numbers.get("credit_score")
    return int(value) if value is not None and float(value).is_integer() else value


def _extract_term_months(u: _Utterance) -> Any | None:
    return u.term_months


def _extract_loan_type(u: _Utterance) -> Any | None:
    explicit = _EXPLICIT_LOAN_RE.search(u.text)
    if explicit:
        return explicit.group(1)
    best = None
    for loan_type, pattern in _LOAN_TYPE_KEYWORDS:
        match = pattern.search(u.text)
        if match and (best is None or match.start() < best[0]):
            best = (match.start(), loan_type)
    return best[1] if best else None


def _extract_employment_status(u: _Utterance) -> Any | None:
    for status, pattern in _EMPLOYMENT_PATTERNS:
        if pattern.search(u.text):
            return status
    return None


def _extract_applicant_name(u: _Utterance) -> Any | None:
    for pattern in _NAME_PATTERNS:
        match = pattern.search(u.text)
        if not match:
            continue
        words = []
        for word in match.group(1).split():
            if word.lower() in _NAME_STOPWORDS:
                break
            words.append(word)
        if words:
            return " ".join(words)
    return None


def _extract_purpose(u: _Utterance) -> Any | None:
    match = _PURPOSE_RE.search(u.text)
    return match.group(1).strip()[:120] if match else None


FIELD_EXTRACTORS: dict[str, Callable[[_Utterance], Any | None]] = {
    "applicant_name": _extract_applicant_name,
    "amount": _extract_amount,
    "loan_type": _extract_loan_type,
    "credit_score": _extract_credit_score,
    "monthly_income": _extract_monthly_income,
    "employment_status": _extract_employment_status,
    "purpose": _extract_purpose,
    "term_months": _extract_term_months,
}


def parse_hint(hint) -> dict[str, Any]:
    """Best-effort read of a model-emitted field hint; anything unusable is ignored."""
    if hint is None:
        return {}
    if isinstance(hint, (str, bytes)):
        try:
            hint = json.loads(hint)
        except ValueError:
            logger.debug("Ignoring unparseable field hint: %r", hint)
            return {}
    if not isinstance(hint, dict):
        return {}
    candidates = {}
    for key, value in hint.items():
        name = _HINT_ALIASES.get(key, key)
        if name in FIELD_EXTRACTORS and value is not None:
            candidates[name] = value
    return candidates


def _deterministic_candidates(text: str, expecting: str | None) -> tuple[dict[str, Any], list]:
    utterance = _read(text, expecting)
    candidates = {}
    for name, extractor in FIELD_EXTRACTORS.items():
        value = extractor(utterance)
        if value is not None:
            candidates[name] = value
    return candidates, utterance.ambiguities


def merge_fields(
    current: LoanFieldSet, accepted: dict[str, Any], locked: Iterable[str] = ()
) -> tuple[LoanFieldSet, list[str]]:
    locked = set(locked)
    changes = {
        name: value
        for name, value in accepted.items()
        if name not in locked and getattr(current, name) != value
    }
    if not changes:
        return current, []
    changes.update(status=LoanStatus.PENDING, interest_rate=None, decided_term_months=None)
    changed = [name for name in INPUT_FIELDS if name in changes]
    return current.model_copy(update=changes), changed


def extract(
    text: str | None,
    current: LoanFieldSet,
    hint=None,
    expecting: str | None = None,
    locked: Iterable[str] = (),
) -> ExtractionResult:
    hint_candidates = parse_hint(hint)
    parsed_candidates, ambiguities = _deterministic_candidates(text or "", expecting)

    accepted: dict[str, Any] = {}
    for name in INPUT_FIELDS:
        for source in (hint_candidates, parsed_candidates):
            if name not in source:
                continue
            result = validate(name, source[name])
            if result.ok and result.value is not None:
                accepted[name] = result.value
                break
            logger.debug("Rejected %s=%r (%s)", name, source[name], result.reason)

    updated, changed = merge_fields(current, accepted, locked)
    return ExtractionResult(
        updated_fields=updated,
        changed_field_names=changed,
        ambiguities=[a for a in ambiguities if a.field in changed],
    )


def extract_transcript(
    turns: Iterable[ConversationTurn], locked: Iterable[str] = ()
) -> LoanFieldSet:
    """Replay every user turn in order to rebuild the draft fields of a conversation."""
    fields = LoanFieldSet()
    expecting = None
    for turn in sorted(turns, key=lambda t: (t.created_at, t.sequence)):
        if turn.sender == Sender.USER:
            fields = extract(turn.content, fields, expecting=expecting, locked=locked).updated_fields
            # the assistant always follows up on the next missing field
            expecting = fields.next_missing()
    return fields

"""
Segmentation Engine - Customer audience rules.
Parses the rule wire format into a Predicate, evaluates it against the
customer store, and translates free-text descriptions into rules via AI
with a deterministic keyword fallback.

Wire format: {field: literal} means eq; {field: {op: value, ...}} with
op in gt|lt|gte|lte|eq (a leading '$' is tolerated, AI output often has one).
"""

import json
import logging
import math
import operator
import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple, Union

from xenocrm.engine import crm
from xenocrm.errors import InvalidPredicate
from xenocrm.models import Clause, Customer, Predicate

logger = logging.getLogger(__name__)

FIELD_TOTAL_SPEND = 'total_spend'
FIELD_VISIT_COUNT = 'visit_count'
FIELD_LAST_VISIT = 'last_visit'
FIELD_DAYS_SINCE_LAST_VISIT = 'days_since_last_visit'

# Allowlist: field name -> value kind. Column names in generated SQL only come from here.
COMPARABLE_FIELDS = {
    FIELD_TOTAL_SPEND: 'number',
    FIELD_VISIT_COUNT: 'number',
    FIELD_LAST_VISIT: 'timestamp',
    FIELD_DAYS_SINCE_LAST_VISIT: 'number',
}

# Older rule sets used the virtual field name from the first version of the rule builder
_FIELD_ALIASES = {'last_visit_days': FIELD_DAYS_SINCE_LAST_VISIT}

OPERATORS = {'gt': '>', 'lt': '<', 'gte': '>=', 'lte': '<=', 'eq': '='}

_COMPARATORS = {
    'gt': operator.gt,
    'lt': operator.lt,
    'gte': operator.ge,
    'lte': operator.le,
    'eq': operator.eq,
}

# More days ago == earlier timestamp, so the comparison flips
_DAYS_SINCE_INVERSION = {'gt': 'lt', 'gte': 'lte', 'lt': 'gt', 'lte': 'gte', 'eq': 'eq'}

SECONDS_PER_DAY = 86400
# A century of inactivity; larger windows fall outside datetime range
MAX_DAYS_SINCE = 36500

Rules = Union[Dict[str, Any], Predicate, None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# WIRE FORMAT
# =============================================================================

def _coerce_value(field_name: str, value: Any) -> Any:
    """Validate and normalise a clause value for its field kind."""
    kind = COMPARABLE_FIELDS[field_name]

    if kind == 'timestamp':
        if isinstance(value, datetime):
            ts = value
        elif isinstance(value, str):
            try:
                ts = datetime.fromisoformat(value.replace('Z', '+00:00'))
            except ValueError:
                raise InvalidPredicate(f"{field_name}: {value!r} is not an ISO timestamp")
        else:
            raise InvalidPredicate(f"{field_name}: expected a timestamp, got {value!r}")
        return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)

    if isinstance(value, bool):
        raise InvalidPredicate(f"{field_name}: expected a number, got {value!r}")
    if isinstance(value, (int, float, Decimal)):
        number = value
    elif isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            raise InvalidPredicate(f"{field_name}: expected a number, got {value!r}")
        number = int(parsed) if parsed.is_integer() else parsed
    else:
        raise InvalidPredicate(f"{field_name}: expected a number, got {value!r}")

    if not isinstance(number, int) and not math.isfinite(number):
        raise InvalidPredicate(f"{field_name}: {value!r} is not a finite number")
    if field_name == FIELD_DAYS_SINCE_LAST_VISIT and abs(number) > MAX_DAYS_SINCE:
        raise InvalidPredicate(f"{field_name}: {value!r} is outside +/-{MAX_DAYS_SINCE} days")
    return number


def parse_predicate(rules: Rules) -> Predicate:
    """
    Parse wire-format rules into a Predicate.
    None or {} yields the empty predicate (matches everyone).
    Raises InvalidPredicate on unknown fields, operators, or bad values.
    """
    if rules is None:
        return Predicate()
    if isinstance(rules, Predicate):
        return rules
    if not isinstance(rules, dict):
        raise InvalidPredicate(f"Rules must be a mapping, got {type(rules).__name__}")

    clauses = []
    for raw_field, spec in rules.items():
        field_name = _FIELD_ALIASES.get(raw_field, raw_field)
        if field_name not in COMPARABLE_FIELDS:
            raise InvalidPredicate(f"Unknown field {raw_field!r}. Choose from: {', '.join(COMPARABLE_FIELDS)}")

        if isinstance(spec, dict):
            if not spec:
                raise InvalidPredicate(f"{raw_field}: operator mapping is empty")
            for token, value in spec.items():
                op = str(token).lstrip('$')
                if op not in OPERATORS:
                    raise InvalidPredicate(f"{raw_field}: unknown operator {token!r}")
                clauses.append(Clause(field_name, op, _coerce_value(field_name, value)))
        else:
            clauses.append(Clause(field_name, 'eq', _coerce_value(field_name, spec)))

    return Predicate(tuple(clauses))


def to_rules(predicate: Predicate) -> Dict[str, Any]:
    """Serialise a Predicate back to the JSON-safe wire format."""
    rules: Dict[str, Dict[str, Any]] = {}
    for clause in predicate.clauses:
        value = clause.value
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, Decimal):
            value = float(value)
        rules.setdefault(clause.field, {})[clause.operator] = value
    return rules


def resolve_relative(predicate: Predicate, now: datetime) -> Predicate:
    """
    Rewrite days-since-last-visit clauses into absolute last_visit clauses.
    `days_since_last_visit gt 30` at T becomes `last_visit lt T - 30 days`.
    """
    resolved = []
    for clause in predicate.clauses:
        if clause.field == FIELD_DAYS_SINCE_LAST_VISIT:
            try:
                threshold = now - timedelta(seconds=float(clause.value) * SECONDS_PER_DAY)
            except (OverflowError, ValueError):
                raise InvalidPredicate(f"{clause.field}: {clause.value!r} days is out of range")
            resolved.append(Clause(FIELD_LAST_VISIT, _DAYS_SINCE_INVERSION[clause.operator], threshold))
        else:
            resolved.append(clause)
    return Predicate(tuple(resolved))


def to_sql(predicate: Predicate, now: datetime) -> Tuple[str, Dict[str, Any]]:
    """
    Compile a predicate into a WHERE clause and its parameters.
    Returns ('TRUE', {}) for the empty predicate.
    """
    conditions = []
    params: Dict[str, Any] = {}

    for i, clause in enumerate(resolve_relative(predicate, now).clauses):
        # Guard: field and operator have already been checked against the allowlists
        if clause.field not in COMPARABLE_FIELDS or clause.operator not in OPERATORS:
            raise InvalidPredicate(f"Cannot compile clause {clause}")
        key = f"p{i}"
        conditions.append(f"{clause.field} {OPERATORS[clause.operator]} %({key})s")
        params[key] = clause.value

    where_clause = " AND ".join(conditions) if conditions else "TRUE"
    return where_clause, params


def matches(customer: Customer, predicate: Predicate, now: datetime) -> bool:
    """In-memory evaluation with the same semantics as the SQL compilation."""
    for clause in resolve_relative(predicate, now).clauses:
        actual = getattr(customer, clause.field, None)
        if actual is None:
            return False
        if isinstance(actual, datetime) and actual.tzinfo is None:
            actual = actual.replace(tzinfo=timezone.utc)
        if not _COMPARATORS[clause.operator](actual, clause.value):
            return False
    return True


# =============================================================================
# EVALUATION
# =============================================================================

def evaluate(rules: Rules, now: Optional[datetime] = None) -> List[Customer]:
    """All customers matching every clause. The empty predicate matches everyone."""
    predicate = parse_predicate(rules)
    where_clause, params = to_sql(predicate, now or _utcnow())
    customers = crm.find_customers_where(where_clause, params)
    logger.debug(f"evaluate: {len(customers)} customers match {to_rules(predicate)}")
    return customers


def count(rules: Rules, now: Optional[datetime] = None) -> int:
    """Audience size without loading the records. Agrees with len(evaluate(...))."""
    predicate = parse_predicate(rules)
    where_clause, params = to_sql(predicate, now or _utcnow())
    return crm.count_customers_where(where_clause, params)


# =============================================================================
# NATURAL LANGUAGE TRANSLATION
# =============================================================================

TRANSLATION_SYSTEM = "You convert customer segment descriptions into JSON filter rules. Reply with JSON only."


def build_translation_prompt(text: str, now: datetime) -> str:
    return f"""Convert this customer segment description to JSON filter rules.

Fields: total_spend (number), visit_count (integer), days_since_last_visit (number of days), last_visit (ISO timestamp)
Operators: gt, lt, gte, lte, eq

Examples:
- "customers who spent over 5000" -> {{"total_spend": {{"gt": 5000}}}}
- "people who haven't visited in 30 days" -> {{"days_since_last_visit": {{"gt": 30}}}}
- "customers with less than 3 visits" -> {{"visit_count": {{"lt": 3}}}}

Current time: {now.isoformat()}

Convert: "{text}"

Rules (JSON only):"""


def parse_ai_rules(response: str) -> Predicate:
    """Pull the outermost JSON object out of an AI reply and parse it as rules."""
    start = response.find('{')
    end = response.rfind('}')
    if start == -1 or end <= start:
        raise InvalidPredicate(f"No JSON object in AI response: {response[:100]!r}")
    try:
        rules = json.loads(response[start:end + 1])
    except json.JSONDecodeError as e:
        raise InvalidPredicate(f"AI response is not valid JSON: {e}")
    return parse_predicate(rules)


_NUMBER_RE = re.compile(r'\d+(?:\.\d+)?')
_INACTIVE_RE = re.compile(r"(?:haven'?t|have not|not|no)\s+(?:visited|been|come)\D*?(\d+)\s*days?")


def _number_after(text: str, keyword: str) -> Optional[float]:
    """First number after keyword, else the first number anywhere in text."""
    idx = text.find(keyword)
    found = _NUMBER_RE.search(text, idx) if idx != -1 else None
    found = found or _NUMBER_RE.search(text)
    if not found:
        return None
    number = float(found.group())
    return int(number) if number.is_integer() else number


def fallback_predicate(text: str) -> Predicate:
    """
    Keyword-based translation. Never raises; unrecognised text gives the
    empty predicate.

    - "spent ... over N"             -> total_spend gt N
    - "visit ... less N"             -> visit_count lt N
    - "haven't visited in N days"    -> days_since_last_visit gt N
    """
    lowered = str(text or '').lower()
    clauses = []

    if 'spent' in lowered and 'over' in lowered:
        amount = _number_after(lowered, 'over')
        if amount is not None:
            clauses.append(Clause(FIELD_TOTAL_SPEND, 'gt', amount))

    if 'visit' in lowered and 'less' in lowered:
        visits = _number_after(lowered, 'less')
        if visits is not None:
            clauses.append(Clause(FIELD_VISIT_COUNT, 'lt', visits))

    inactive = _INACTIVE_RE.search(lowered)
    if inactive:
        days = int(inactive.group(1))
        if days <= MAX_DAYS_SINCE:
            clauses.append(Clause(FIELD_DAYS_SINCE_LAST_VISIT, 'gt', days))
        else:
            logger.info(f"Ignoring inactivity window of {days} days (max {MAX_DAYS_SINCE})")

    return Predicate(tuple(clauses))


def translate_natural_language(text: str, ai=None, now: Optional[datetime] = None) -> Predicate:
    """
    Turn a free-text segment description into a Predicate.
    Asks the AI client first; any failure, timeout or unparsable reply falls
    back to keyword extraction. Never raises.
    """
    if ai is None:
        logger.info("No AI client configured; using keyword fallback for rule translation")
        return fallback_predicate(text)

    try:
        response = ai.complete(
            build_translation_prompt(text, now or _utcnow()),
            system=TRANSLATION_SYSTEM,
            max_tokens=200,
        )
        predicate = parse_ai_rules(response)
        logger.info(f"AI translated {text!r} -> {to_rules(predicate)}")
        return predicate
    except Exception as e:
        logger.warning(f"AI rule translation failed ({type(e).__name__}: {e}); using keyword fallback")
        return fallback_predicate(text)

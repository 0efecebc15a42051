"""
Eligibility and amount calculation for VPI rent indexation.

A tenancy's rent may follow the German consumer price index (VPI). This
module decides, for one tenancy at a given point in time, whether the rent
may be raised now and by how much. The precedence of the rules is kept in
explicit decision tables below; update those when contract practice changes.

Index kinds:
- VPI / VPI - Annual: manual indexation. Requires BOTH an elapsed waiting
  time and an index change at or above the contractual threshold.
- VPI Automatic / VPI Automatic - Annual: triggered by EITHER the waiting
  time or the threshold. With a threshold of 0 only the waiting time counts.

Monthly kinds compare month keys ("MM/YYYY"), annual kinds year keys ("YYYY").
All functions are pure: "now" and the reference keys are passed in.
"""

import math
from collections import namedtuple
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from dateutil import parser as date_parser

from datekeys import (
    PARSE_DEFAULT, add_months, is_valid_month_key, is_valid_year_key, parse_to_month_key,
    previous_month_key, previous_month_year_key, year_key_from_date_string,
)


# =============================================================================
# INDEX KINDS
# =============================================================================

class IndexKind(str, Enum):
    VPI = 'VPI'
    VPI_ANNUAL = 'VPI - Annual'
    VPI_AUTOMATIC = 'VPI Automatic'
    VPI_AUTOMATIC_ANNUAL = 'VPI Automatic - Annual'
    OTHER = 'Other'


MANUAL_KINDS = (IndexKind.VPI, IndexKind.VPI_ANNUAL)
AUTOMATIC_KINDS = (IndexKind.VPI_AUTOMATIC, IndexKind.VPI_AUTOMATIC_ANNUAL)
ANNUAL_KINDS = (IndexKind.VPI_ANNUAL, IndexKind.VPI_AUTOMATIC_ANNUAL)

_KIND_BY_LABEL = {kind.value.lower(): kind for kind in IndexKind if kind is not IndexKind.OTHER}


def detect_index_kind(name):
    """Map a free-text index name from the ERP onto an IndexKind."""
    normalized = ' '.join(str(name or '').split()).lower()
    return _KIND_BY_LABEL.get(normalized, IndexKind.OTHER)


# =============================================================================
# INPUT NORMALIZATION
# =============================================================================

def _blank(value):
    # Odoo returns False for empty non-boolean fields
    return value is None or value is False or value == ''


def _to_float(value, default=None):
    if _blank(value) or isinstance(value, bool):
        return default
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    return result if math.isfinite(result) else default


def _to_int(value, default=0):
    number = _to_float(value)
    if number is None:
        return default
    return int(number)


def _to_date(value):
    if _blank(value):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        return datetime.strptime(text[:10], '%Y-%m-%d').date()
    except ValueError:
        pass
    try:
        return date_parser.parse(text, dayfirst=True, default=PARSE_DEFAULT).date()
    except (ValueError, OverflowError):
        return None


def _pair(value):
    """Normalize an Odoo many2one value to [id, name] or None."""
    if isinstance(value, (list, tuple)) and len(value) == 2 and value[0]:
        return [value[0], value[1]]
    return None


def coerce_pass_through(value):
    """
    Pass-through ratio from the ERP: numbers as-is, booleans as 1/0.
    An absent value means the full index change is passed on (1).
    """
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    number = _to_float(value)
    return 1.0 if number is None else number


def is_indexing_rent_active(value):
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'y')
    return False


def cap_increase(value, cap):
    """Limit ``value`` to ``cap``; a cap of 0 or less means uncapped."""
    if not cap or cap <= 0:
        return value
    return min(value, cap)


@dataclass
class TenancyIndexation:
    """One tenancy as seen by the engine, normalized from an ERP record."""
    id: Any
    index_kind: IndexKind = IndexKind.OTHER
    index_name: Optional[str] = None
    lock_date: Optional[date] = None
    adjustment_date: Optional[date] = None
    adjustment_date_raw: Optional[str] = None
    waiting_months: int = 0
    threshold_ratio: float = 0.0
    pass_through_ratio: float = 1.0
    cap_ratio: float = 0.0
    current_rent: Optional[float] = None
    indexing_rent: Optional[float] = None

    name: Optional[str] = None
    main_property: Optional[list] = None
    sales_person: Optional[list] = None
    index: Optional[list] = None
    adjustment_period: Any = None
    date_end_display: Optional[str] = None
    current_ancillary_costs: Optional[float] = None
    lock_date_raw: Optional[str] = None
    is_indexing_rent: bool = False

    @classmethod
    def from_record(cls, record, sales_person=None):
        """Build from a ``property.tenancy`` row as returned by Odoo."""
        index = _pair(record.get('index_id'))
        index_name = str(index[1]) if index else None
        raw_adjustment = record.get('adjustment_date')
        raw_lock = record.get('lock_date')
        return cls(
            id=record.get('id'),
            index_kind=detect_index_kind(index_name),
            index_name=index_name,
            lock_date=_to_date(raw_lock),
            adjustment_date=_to_date(raw_adjustment),
            adjustment_date_raw=None if _blank(raw_adjustment) else str(raw_adjustment),
            waiting_months=max(_to_int(record.get('waiting_time')), 0),
            threshold_ratio=_to_float(record.get('threshold'), 0.0),
            pass_through_ratio=coerce_pass_through(record.get('partially_passing_on')),
            cap_ratio=_to_float(record.get('maximal_percentage'), 0.0),
            current_rent=_to_float(record.get('current_rent')),
            indexing_rent=_to_float(record.get('indexing_rent')),
            name=None if _blank(record.get('name')) else str(record.get('name')),
            main_property=_pair(record.get('main_property_id')),
            sales_person=_pair(sales_person),
            index=index,
            adjustment_period=None if _blank(record.get('adjustment_period')) else record.get('adjustment_period'),
            date_end_display=None if _blank(record.get('date_end_display')) else str(record.get('date_end_display')),
            current_ancillary_costs=_to_float(record.get('current_ancillary_costs')),
            lock_date_raw=None if _blank(raw_lock) else str(raw_lock),
            is_indexing_rent=is_indexing_rent_active(record.get('is_indexing_rent')),
        )

    @property
    def base_rent(self):
        """Rent the indexation is applied to: current rent, else indexing rent."""
        return self.current_rent or self.indexing_rent or 0.0

    def to_row(self):
        return {
            'id': self.id,
            'name': self.name,
            'main_property_id': self.main_property,
            'sales_person_id': self.sales_person,
            'indexing_rent': self.indexing_rent,
            'current_rent': self.current_rent,
            'index_id': self.index,
            'index_name': self.index_name,
            'lock_date': self.lock_date_raw,
            'adjustment_period': self.adjustment_period,
            'adjustment_date': self.adjustment_date_raw,
            'threshold': self.threshold_ratio,
            'partially_passing_on': self.pass_through_ratio,
            'maximal_percentage': self.cap_ratio,
            'waiting_time': self.waiting_months,
            'date_end_display': self.date_end_display,
            'current_ancillary_costs': self.current_ancillary_costs,
        }


# =============================================================================
# VERDICT
# =============================================================================

@dataclass
class Verdict:
    tenancy: TenancyIndexation
    status: str
    reason: str
    blocked_by_lock: bool = False
    index_kind: Optional[IndexKind] = None
    adjustment_month_key: Optional[str] = None
    adjustment_year_key: Optional[str] = None
    current_month_key: Optional[str] = None
    current_year_key: Optional[str] = None
    adjustment_index: Optional[float] = None
    current_index: Optional[float] = None
    delta: Optional[float] = None
    eligible_now: bool = False
    applied_percentage: Optional[float] = None
    next_wait_date: Optional[date] = None

    def to_dict(self):
        row = self.tenancy.to_row()
        row.update({
            'blocked_by_lock': self.blocked_by_lock,
            'index_kind': self.index_kind.value if self.index_kind else None,
            'adjustment_month_key': self.adjustment_month_key,
            'adjustment_year_key': self.adjustment_year_key,
            'current_month_key': self.current_month_key,
            'current_year_key': self.current_year_key,
            'adjustment_index': self.adjustment_index,
            'current_index': self.current_index,
            'delta': self.delta,
            'eligible_now': self.eligible_now,
            'applied_percentage': self.applied_percentage,
            'next_wait_date': self.next_wait_date.isoformat() if self.next_wait_date else None,
            'reason': self.reason,
            'status': self.status,
        })
        return row


# =============================================================================
# DECISION TABLES: evaluated top to bottom, first matching rule wins
# =============================================================================

@dataclass
class _Facts:
    tenancy: TenancyIndexation
    now: date
    kind: IndexKind
    adjustment_month_key: Optional[str] = None
    adjustment_year_key: Optional[str] = None
    current_month_key: Optional[str] = None
    current_year_key: Optional[str] = None
    adjustment_index: Optional[float] = None
    current_index: Optional[float] = None
    delta: Optional[float] = None
    wait_until: Optional[date] = None

    @property
    def wait_reached(self):
        return self.wait_until is not None and self.wait_until <= self.now


Rule = namedtuple('Rule', ['status', 'reason', 'applies', 'emit_next_wait'])


def _automatic_triggered(f):
    threshold = f.tenancy.threshold_ratio
    if threshold == 0:
        return f.wait_reached
    return f.wait_reached or f.delta >= threshold


LOCK_RULE = Rule(
    'locked', 'locked',
    lambda f: f.tenancy.lock_date is not None and f.tenancy.lock_date >= f.now,
    False,
)

KIND_RULE = Rule(
    'kind_not_handled', 'index kind not handled',
    lambda f: f.kind is IndexKind.OTHER,
    False,
)

MANUAL_RULES = (
    Rule('missing_adjustment_date', 'no adjustment_date',
         lambda f: f.tenancy.adjustment_date is None, False),
    Rule('missing_index', 'missing index data',
         lambda f: f.delta is None, False),
    Rule('waiting_time_not_reached', 'waiting_time not reached',
         lambda f: not f.wait_reached, True),
    Rule('below_threshold', 'delta below threshold',
         lambda f: f.delta < f.tenancy.threshold_ratio, False),
)

AUTOMATIC_RULES = (
    Rule('missing_index', 'missing adjustment date or index',
         lambda f: f.tenancy.adjustment_date is None or f.delta is None, False),
    Rule('automatic_not_triggered', 'automatic: neither wait nor threshold reached',
         lambda f: not _automatic_triggered(f), True),
)


def rules_for(kind):
    """Ordered rule list for an index kind (without the eligible outcome)."""
    if kind in MANUAL_KINDS:
        return (LOCK_RULE, KIND_RULE) + MANUAL_RULES
    if kind in AUTOMATIC_KINDS:
        return (LOCK_RULE, KIND_RULE) + AUTOMATIC_RULES
    return (LOCK_RULE, KIND_RULE)


# =============================================================================
# EVALUATION
# =============================================================================

def resolve_reference_keys(reference_month=None, reference_year=None, now=None):
    """
    Reference keys for the current index value.

    Invalid or missing parameters are ignored. The month defaults to the month
    before ``now``; the year to the year of the given month, else the year of
    the month before ``now``.
    """
    if now is None:
        now = date.today()
    month_ok = is_valid_month_key(reference_month)
    month = reference_month if month_ok else previous_month_key(now)
    if is_valid_year_key(reference_year):
        year = reference_year
    elif month_ok:
        year = reference_month.split('/')[1]
    else:
        year = previous_month_year_key(now)
    return month, year


def _collect_facts(tenancy, index_table, month_key, year_key, now):
    kind = tenancy.index_kind
    facts = _Facts(tenancy=tenancy, now=now, kind=kind)
    if tenancy.lock_date is not None and tenancy.lock_date >= now:
        return facts

    raw = tenancy.adjustment_date_raw
    if tenancy.adjustment_date is not None and not raw:
        raw = tenancy.adjustment_date.isoformat()
    facts.adjustment_month_key = parse_to_month_key(raw)
    facts.adjustment_year_key = year_key_from_date_string(raw)
    facts.current_month_key = month_key
    facts.current_year_key = year_key
    if kind is IndexKind.OTHER:
        return facts

    if kind in ANNUAL_KINDS:
        facts.adjustment_index = index_table.annual_value(facts.adjustment_year_key)
        facts.current_index = index_table.annual_value(year_key)
    else:
        facts.adjustment_index = index_table.monthly_value(facts.adjustment_month_key)
        facts.current_index = index_table.monthly_value(month_key)

    if facts.adjustment_index and facts.current_index is not None:
        facts.delta = facts.current_index / facts.adjustment_index - 1

    if tenancy.adjustment_date is not None:
        facts.wait_until = add_months(tenancy.adjustment_date, tenancy.waiting_months)
    return facts


def _verdict(facts, status, reason):
    return Verdict(
        tenancy=facts.tenancy,
        status=status,
        reason=reason,
        index_kind=facts.kind,
        adjustment_month_key=facts.adjustment_month_key,
        adjustment_year_key=facts.adjustment_year_key,
        current_month_key=facts.current_month_key,
        current_year_key=facts.current_year_key,
        adjustment_index=facts.adjustment_index,
        current_index=facts.current_index,
        delta=facts.delta,
    )


def evaluate(tenancy, index_table, reference_month_key, reference_year_key, now):
    """
    Decide whether ``tenancy`` may be indexed at ``now``.

    Returns a Verdict with exactly one terminal status. Never raises for
    incomplete tenancy data; gaps surface as the matching reason.
    """
    if isinstance(now, datetime):
        now = now.date()
    month_key, year_key = resolve_reference_keys(reference_month_key, reference_year_key, now)
    facts = _collect_facts(tenancy, index_table, month_key, year_key, now)

    for rule in rules_for(facts.kind):
        if rule.applies(facts):
            verdict = _verdict(facts, rule.status, rule.reason)
            if rule is LOCK_RULE:
                verdict.blocked_by_lock = True
            if rule.emit_next_wait:
                verdict.next_wait_date = facts.wait_until
            return verdict

    applied = cap_increase(facts.delta * tenancy.pass_through_ratio, tenancy.cap_ratio)
    verdict = _verdict(facts, 'eligible', 'eligible')
    if applied > 0:
        verdict.eligible_now = True
        verdict.applied_percentage = applied
    else:
        verdict.reason = 'no positive increase'
    return verdict


def evaluate_all(tenancies, index_table, reference_month_key, reference_year_key, now):
    return [
        evaluate(t, index_table, reference_month_key, reference_year_key, now)
        for t in tenancies
    ]


def sort_verdicts(verdicts):
    """Eligible first, then by index change descending."""
    return sorted(
        verdicts,
        key=lambda v: (not v.eligible_now, -(v.delta if v.delta is not None else -math.inf)),
    )

from __future__ import annotations

# =============================
# Discount rule evaluation
# =============================

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP

from refunds import parse_instant, to_decimal

CENTS = Decimal('0.01')

IDENTITY_FIELDS = ('first_name', 'last_name', 'email', 'date_of_birth')
DEFAULT_MATCH_FIELDS = ['first_name', 'last_name']
OPERATORS = ('equals', 'contains', 'starts_with', 'ends_with')

PARTICIPATION_STATUSES = {
    'any': ('pending', 'confirmed', 'verified'),
    'confirmed': ('confirmed', 'verified'),
    'verified': ('verified',),
}


class DiscountError(Exception):
    """Raised when a discount code cannot be applied; the message is shown to the user"""

    def __init__(self, message, status_code=400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


@dataclass
class SeatDiscountResult:
    discount_amount: Decimal = Decimal('0')
    matched_rule_id: object = None


@dataclass
class DiscountOutcome:
    total_discount: Decimal = Decimal('0')
    final_amount: Decimal = Decimal('0')
    applied: list = field(default_factory=list)

    def to_dict(self):
        return {
            "totalDiscount": float(self.total_discount),
            "finalAmount": float(self.final_amount),
            "appliedDiscounts": self.applied,
        }


def money(value) -> Decimal:
    return to_decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


# -----------------------------
# Seat based
# -----------------------------

def seat_rule_matches(quantity, rule) -> bool:
    min_seats = int(rule.get('min_seats') or 0)
    max_seats = rule.get('max_seats')
    if quantity < min_seats:
        return False
    # 0 is what the organizer form stores for "no upper bound"
    if max_seats in (None, '', 0):
        return True
    return quantity <= int(max_seats)


def seat_rule_amount(rule, total) -> Decimal:
    total = to_decimal(total)
    percentage = to_decimal(rule.get('discount_percentage'))
    if percentage > 0:
        amount = total * percentage / 100
    else:
        amount = to_decimal(rule.get('discount_amount'))
    return money(min(amount, total))


def evaluate_seat_rules(quantity, rules, total) -> SeatDiscountResult:
    """Pick the best matching seat rule for `quantity` and price it against `total`"""
    best = SeatDiscountResult()
    for rule in rules or []:
        if not seat_rule_matches(quantity, rule):
            continue
        amount = seat_rule_amount(rule, total)
        if best.matched_rule_id is None or amount > best.discount_amount:
            best = SeatDiscountResult(discount_amount=amount, matched_rule_id=rule.get('id'))
    return best


# -----------------------------
# Participant based
# -----------------------------

def status_satisfies(requirement, booking_status) -> bool:
    allowed = PARTICIPATION_STATUSES.get(requirement or 'any', PARTICIPATION_STATUSES['any'])
    return booking_status in allowed


def match_fields(rule) -> list:
    raw = rule.get('field_name') or ''
    fields = [f.strip() for f in raw.split(',') if f.strip() in IDENTITY_FIELDS]
    return fields or list(DEFAULT_MATCH_FIELDS)


def normalize_day(value):
    if not value:
        return None
    try:
        return parse_instant(value).date().isoformat()
    except (TypeError, ValueError):
        return None


def participants_match(current, previous, fields) -> bool:
    for name in fields:
        if name == 'date_of_birth':
            if normalize_day(current.get(name)) != normalize_day(previous.get(name)):
                return False
        elif current.get(name) != previous.get(name):
            return False
    return True


def previous_event_rule_matches(rule, participants, previous_bookings) -> bool:
    """True when anyone in the current booking already took part in the related event"""
    requirement = rule.get('field_value') or 'any'
    fields = match_fields(rule)

    for booking in previous_bookings or []:
        if not status_satisfies(requirement, booking.get('status')):
            continue
        for previous in booking.get('participants') or []:
            for current in participants or []:
                if participants_match(current, previous, fields):
                    return True
    return False


def custom_value_text(value) -> str:
    """Render a custom form answer as comparable text"""
    if value is None:
        return ''
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, (list, tuple)):
        return ', '.join(custom_value_text(v) for v in value)
    if isinstance(value, dict):
        # rated player picked from a FIDE/ACF lookup
        if 'id' in value and 'name' in value:
            return str(value['id'])
        return str(value.get('value', ''))
    return str(value)


def apply_operator(operator, actual, expected) -> bool:
    actual = '' if actual is None else str(actual)
    expected = expected or ''
    if operator == 'equals':
        return actual == expected
    if operator == 'contains':
        return expected in actual
    if operator == 'starts_with':
        return actual.startswith(expected)
    if operator == 'ends_with':
        return actual.endswith(expected)
    return False


def custom_rule_matches(rule, participant) -> bool:
    custom_data = participant.get('custom_data') or {}
    name = rule.get('field_name')
    if not name or name not in custom_data:
        return False
    return apply_operator(rule.get('operator'), custom_value_text(custom_data[name]), rule.get('field_value'))


def rule_matches(rule, participant, participants, load_previous_bookings) -> bool:
    rule_type = rule.get('rule_type')

    if rule_type == 'previous_event':
        if not rule.get('related_event_id'):
            return False
        previous = load_previous_bookings(rule['related_event_id'])
        return previous_event_rule_matches(rule, participants, previous)

    if rule_type == 'custom':
        return custom_rule_matches(rule, participant)

    if rule_type == 'name_match':
        if rule.get('field_name') not in ('first_name', 'last_name'):
            return False
        return participant.get(rule['field_name']) == rule.get('field_value')

    if rule_type == 'dob_match':
        return normalize_day(participant.get('date_of_birth')) == rule.get('field_value')

    return False


def participant_is_eligible(rules, participant, participants, load_previous_bookings) -> bool:
    """Every rule has to hold for the participant; no rules means no discount"""
    if not rules:
        return False
    return all(rule_matches(r, participant, participants, load_previous_bookings) for r in rules)


# -----------------------------
# Discount selection
# -----------------------------

def discount_is_open(discount, now, quantity) -> bool:
    start = parse_instant(discount.get('start_date'))
    end = parse_instant(discount.get('end_date'))
    if start and start > now:
        return False
    if end and end < now:
        return False
    if discount.get('min_quantity') and quantity < discount['min_quantity']:
        return False
    if discount.get('max_quantity') and quantity > discount['max_quantity']:
        return False
    if discount.get('max_uses') and (discount.get('current_uses') or 0) >= discount['max_uses']:
        return False
    return True


def calculate_discount_amount(discount, base_amount, eligible_quantity) -> Decimal:
    base = to_decimal(base_amount)
    value = to_decimal(discount.get('value'))
    if discount.get('value_type') == 'percentage':
        amount = base * value / 100
    else:
        amount = value * eligible_quantity
    return money(min(amount, base))


def evaluate_discounts(discounts, participants, base_amount, quantity, now=None,
                       load_previous_bookings=None) -> DiscountOutcome:
    """Apply every open automatic discount of an event to a prospective booking"""
    now = parse_instant(now) if now else datetime.now(timezone.utc)
    load_previous_bookings = load_previous_bookings or (lambda event_id: [])
    base = to_decimal(base_amount)
    cache = {}

    def _previous(event_id):
        if event_id not in cache:
            cache[event_id] = load_previous_bookings(event_id)
        return cache[event_id]

    outcome = DiscountOutcome()

    for discount in discounts or []:
        if not discount_is_open(discount, now, quantity):
            continue

        if discount.get('discount_type') == 'participant_based':
            eligible = sum(
                1 for p in participants or []
                if participant_is_eligible(discount.get('rules') or [], p, participants, _previous)
            )
            if eligible == 0:
                continue
            amount = calculate_discount_amount(discount, base, eligible)
            if amount > 0:
                outcome.total_discount += amount
                outcome.applied.append({
                    "discount_id": discount.get('id'),
                    "name": discount.get('name'),
                    "type": 'participant_based',
                    "amount": float(amount),
                    "eligibleParticipants": eligible,
                })

        elif discount.get('discount_type') == 'seat_based':
            seat_rules = discount.get('seat_rules') or []
            if seat_rules:
                result = evaluate_seat_rules(quantity, seat_rules, base)
                amount = result.discount_amount
                matched = result.matched_rule_id
            else:
                amount = calculate_discount_amount(discount, base, quantity)
                matched = None
            if amount > 0:
                outcome.total_discount += amount
                outcome.applied.append({
                    "discount_id": discount.get('id'),
                    "name": discount.get('name'),
                    "type": 'seat_based',
                    "amount": float(amount),
                    "quantity": quantity,
                    "matched_rule_id": matched,
                })

    outcome.total_discount = money(min(outcome.total_discount, base))
    outcome.final_amount = money(max(Decimal('0'), base - outcome.total_discount))
    return outcome


def apply_discount_code(discount, base_amount, quantity, now=None):
    """Validate a code discount and return (discount_amount, final_amount)"""
    now = parse_instant(now) if now else datetime.now(timezone.utc)

    if not discount:
        raise DiscountError("Invalid or expired discount code", 404)

    start = parse_instant(discount.get('start_date'))
    end = parse_instant(discount.get('end_date'))
    if start and start > now:
        raise DiscountError("Discount code is not yet active")
    if end and end < now:
        raise DiscountError("Discount code has expired")

    if discount.get('min_quantity') and quantity < discount['min_quantity']:
        raise DiscountError(f"Minimum quantity of {discount['min_quantity']} required for this discount code")
    if discount.get('max_quantity') and quantity > discount['max_quantity']:
        raise DiscountError(f"Maximum quantity of {discount['max_quantity']} allowed for this discount code")

    if discount.get('max_uses') and (discount.get('current_uses') or 0) >= discount['max_uses']:
        raise DiscountError("Discount code usage limit has been reached")

    base = to_decimal(base_amount)
    if discount.get('value_type') == 'percentage':
        amount = base * to_decimal(discount.get('value')) / 100
    else:
        amount = to_decimal(discount.get('value'))

    amount = money(min(amount, base))
    return amount, money(max(Decimal('0'), base - amount))

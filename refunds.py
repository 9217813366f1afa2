from __future__ import annotations

# =============================
# Refund timeline resolution
# =============================

from dataclasses import dataclass
from datetime import datetime, date, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

REFUNDABLE_STATUSES = ('confirmed', 'verified')
CENTS = Decimal('0.01')


@dataclass
class RefundQuote:
    amount: Decimal
    percentage: Decimal
    type: str

    def to_dict(self):
        return {
            "amount": float(self.amount),
            "percentage": float(self.percentage),
            "type": self.type,
        }


@dataclass
class RefundDecision:
    eligible: bool
    quote: RefundQuote | None = None
    reason: str | None = None


def to_decimal(value) -> Decimal:
    if value is None or value == '':
        return Decimal('0')
    if isinstance(value, Decimal):
        return value if value.is_finite() else Decimal('0')
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        # organizer-entered JSON; an unreadable value refunds nothing
        return Decimal('0')
    return parsed if parsed.is_finite() else Decimal('0')


def parse_instant(value) -> datetime | None:
    """Parse an ISO string, date or datetime into an aware UTC datetime"""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        text = str(value).strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def refund_timeline(event) -> list:
    """Pull the refund entries out of an event's timeline blob"""
    if not event:
        return []
    timeline = event.get('timeline') or {}
    return list(timeline.get('refund') or [])


def entry_is_active(entry, now, event_start) -> bool:
    # open start means "since forever", open end falls back to the event start
    now = parse_instant(now)
    start = parse_instant(entry.get('from_date'))
    end = parse_instant(entry.get('to_date')) or parse_instant(event_start)
    if start is not None and now < start:
        return False
    if end is not None and now > end:
        return False
    return True


def find_active_entry(timeline, now, event_start):
    """Return the first timeline entry whose window contains `now`"""
    for entry in timeline or []:
        if entry_is_active(entry, now, event_start):
            return entry
    return None


def quote_refund(total_amount, entry) -> RefundQuote:
    total = to_decimal(total_amount)
    value = to_decimal(entry.get('value'))

    if entry.get('type') == 'percentage':
        amount = (total * value / 100).quantize(CENTS, rounding=ROUND_HALF_UP)
        return RefundQuote(amount=amount, percentage=value, type='percentage')

    amount = min(value, total).quantize(CENTS, rounding=ROUND_HALF_UP)
    if total > 0:
        # a fixed refund larger than the booking is still reported as 100%
        percentage = min(value / total * 100, Decimal('100'))
    else:
        percentage = Decimal('0')
    return RefundQuote(
        amount=amount,
        percentage=percentage.quantize(CENTS, rounding=ROUND_HALF_UP),
        type='fixed'
    )


def find_refundable_entry(timeline, now, event_start):
    """First active entry that refunds something (value > 0)"""
    for entry in timeline or []:
        if entry_is_active(entry, now, event_start) and to_decimal(entry.get('value')) > 0:
            return entry
    return None


def calculate_current_refund(booking, event, now=None) -> RefundQuote | None:
    """Quote for the active timeline entry, even when that entry refunds nothing"""
    now = now or datetime.now(timezone.utc)
    entry = find_active_entry(refund_timeline(event), now, event.get('start_date') if event else None)
    if entry is None:
        return None
    return quote_refund(booking.get('total_amount'), entry)


def quote_participant_refund(participant, event, now=None) -> RefundQuote:
    """Refund owed for withdrawing one participant, priced on what they paid"""
    now = now or datetime.now(timezone.utc)
    price_paid = to_decimal(participant.get('price_paid'))
    entry = None
    if price_paid > 0:
        entry = find_active_entry(refund_timeline(event), now, event.get('start_date') if event else None)
    if entry is None:
        return RefundQuote(amount=Decimal('0.00'), percentage=Decimal('0'), type='none')
    return quote_refund(price_paid, entry)


def can_request_refund(booking, event, now=None) -> bool:
    return resolve_refund(booking, event, now).eligible


def resolve_refund(booking, event, now=None) -> RefundDecision:
    """Decide whether `booking` may be refunded right now and for how much"""
    now = now or datetime.now(timezone.utc)

    if booking.get('status') not in REFUNDABLE_STATUSES:
        return RefundDecision(False, reason="Only confirmed or verified bookings can be refunded")

    if (booking.get('refund_status') or 'none') != 'none':
        return RefundDecision(False, reason="Refund already requested or processed")

    timeline = refund_timeline(event)
    if not timeline:
        return RefundDecision(False, reason="This event does not allow refunds")

    # a 0% window shown as current does not hide a later paying window
    entry = find_refundable_entry(timeline, now, event.get('start_date'))
    if entry is None:
        return RefundDecision(False, reason="No refund available for this booking at this time")

    return RefundDecision(True, quote=quote_refund(booking.get('total_amount'), entry))

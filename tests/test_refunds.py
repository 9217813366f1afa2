from datetime import datetime, timezone
from decimal import Decimal

from refunds import (
    calculate_current_refund,
    can_request_refund,
    entry_is_active,
    find_active_entry,
    parse_instant,
    quote_participant_refund,
    quote_refund,
    resolve_refund,
    to_decimal,
)


def at(text):
    return parse_instant(text)


def make_event(*entries, start='2025-01-20T10:00:00Z'):
    return {'start_date': start, 'timeline': {'refund': list(entries)}}


def make_booking(**overrides):
    booking = {'status': 'confirmed', 'refund_status': 'none', 'total_amount': Decimal('100.00')}
    booking.update(overrides)
    return booking


def test_full_refund_before_deadline():
    event = make_event({'from_date': None, 'to_date': '2025-01-10', 'type': 'percentage', 'value': 100})

    decision = resolve_refund(make_booking(), event, at('2025-01-05T12:00:00Z'))

    assert decision.eligible
    assert decision.quote.amount == Decimal('100.00')
    assert decision.quote.percentage == Decimal('100')
    assert can_request_refund(make_booking(), event, at('2025-01-05T12:00:00Z'))


def test_first_matching_entry_wins():
    timeline = [
        {'from_date': None, 'to_date': '2025-01-10T00:00:00Z', 'type': 'percentage', 'value': 100},
        {'from_date': None, 'to_date': '2025-01-15T00:00:00Z', 'type': 'percentage', 'value': 50},
    ]

    assert find_active_entry(timeline, at('2025-01-05T00:00:00Z'), None)['value'] == 100
    assert find_active_entry(timeline, at('2025-01-12T00:00:00Z'), None)['value'] == 50
    assert find_active_entry(timeline, at('2025-01-16T00:00:00Z'), None) is None


def test_window_bounds_are_inclusive():
    entry = {'from_date': '2025-01-01T00:00:00Z', 'to_date': '2025-01-10T00:00:00Z'}

    assert entry_is_active(entry, at('2025-01-01T00:00:00Z'), None)
    assert entry_is_active(entry, at('2025-01-10T00:00:00Z'), None)
    assert not entry_is_active(entry, at('2025-01-10T00:00:01Z'), None)


def test_open_end_falls_back_to_event_start():
    entry = {'from_date': '2025-01-01T00:00:00Z', 'to_date': None}

    assert entry_is_active(entry, at('2025-01-19T00:00:00Z'), '2025-01-20T10:00:00Z')
    assert not entry_is_active(entry, at('2025-01-21T00:00:00Z'), '2025-01-20T10:00:00Z')


def test_percentage_quote_rounds_half_up():
    quote = quote_refund(Decimal('33.33'), {'type': 'percentage', 'value': 50})
    assert quote.amount == Decimal('16.67')
    assert quote.type == 'percentage'


def test_fixed_quote_is_capped_at_total():
    quote = quote_refund(Decimal('100'), {'type': 'fixed', 'value': 150})
    assert quote.amount == Decimal('100.00')
    assert quote.percentage == Decimal('100.00')

    partial = quote_refund(Decimal('80'), {'type': 'fixed', 'value': 20})
    assert partial.amount == Decimal('20.00')
    assert partial.percentage == Decimal('25.00')


def test_fixed_quote_on_free_booking():
    quote = quote_refund(Decimal('0'), {'type': 'fixed', 'value': 10})
    assert quote.amount == Decimal('0.00')
    assert quote.percentage == Decimal('0')


def test_only_confirmed_or_verified_bookings():
    event = make_event({'from_date': None, 'to_date': None, 'type': 'percentage', 'value': 100})
    now = at('2025-01-05T00:00:00Z')

    assert resolve_refund(make_booking(status='verified'), event, now).eligible
    decision = resolve_refund(make_booking(status='pending'), event, now)
    assert not decision.eligible
    assert decision.reason == "Only confirmed or verified bookings can be refunded"


def test_existing_refund_blocks_new_request():
    event = make_event({'from_date': None, 'to_date': None, 'type': 'percentage', 'value': 100})

    decision = resolve_refund(make_booking(refund_status='requested'), event, at('2025-01-05T00:00:00Z'))

    assert not decision.eligible
    assert decision.reason == "Refund already requested or processed"


def test_event_without_refund_timeline():
    decision = resolve_refund(make_booking(), {'start_date': '2025-01-20', 'timeline': {}}, at('2025-01-05'))
    assert decision.reason == "This event does not allow refunds"


def test_zero_percent_window_is_quoted_but_later_window_pays():
    event = make_event(
        {'from_date': None, 'to_date': '2025-01-10T00:00:00Z', 'type': 'percentage', 'value': 0},
        {'from_date': None, 'to_date': None, 'type': 'percentage', 'value': 50},
    )
    now = at('2025-01-05T00:00:00Z')

    quote = calculate_current_refund(make_booking(), event, now)
    assert quote.amount == Decimal('0.00')

    decision = resolve_refund(make_booking(), event, now)
    assert decision.eligible
    assert decision.quote.amount == Decimal('50.00')
    assert decision.quote.percentage == Decimal('50')
    assert can_request_refund(make_booking(), event, now)


def test_only_zero_percent_windows_active():
    event = make_event(
        {'from_date': None, 'to_date': '2025-01-10T00:00:00Z', 'type': 'percentage', 'value': 0},
        {'from_date': '2025-01-08T00:00:00Z', 'to_date': None, 'type': 'percentage', 'value': 50},
    )

    decision = resolve_refund(make_booking(), event, at('2025-01-05T00:00:00Z'))

    assert not decision.eligible
    assert decision.reason == "No refund available for this booking at this time"


def test_unreadable_timeline_value_refunds_nothing():
    event = make_event({'from_date': None, 'to_date': None, 'type': 'percentage', 'value': 'ten'})
    now = at('2025-01-05T00:00:00Z')

    assert calculate_current_refund(make_booking(), event, now).amount == Decimal('0.00')
    assert not can_request_refund(make_booking(), event, now)
    assert to_decimal('NaN') == Decimal('0')
    assert to_decimal({'value': 3}) == Decimal('0')


def test_participant_refund_uses_price_paid():
    event = make_event({'from_date': None, 'to_date': None, 'type': 'fixed', 'value': 30})
    now = at('2025-01-05T00:00:00Z')

    quote = quote_participant_refund({'price_paid': Decimal('20.00')}, event, now)
    assert quote.amount == Decimal('20.00')
    assert quote.percentage == Decimal('100.00')

    assert quote_participant_refund({'price_paid': None}, event, now).amount == Decimal('0.00')
    assert quote_participant_refund({'price_paid': 20}, event, at('2025-01-25T00:00:00Z')).type == 'none'


def test_no_active_window():
    event = make_event({'from_date': None, 'to_date': '2025-01-10T00:00:00Z', 'type': 'percentage', 'value': 100})
    now = at('2025-01-12T00:00:00Z')

    assert calculate_current_refund(make_booking(), event, now) is None
    assert not resolve_refund(make_booking(), event, now).eligible


def test_parse_instant_normalizes_to_utc():
    assert parse_instant('2025-01-05T10:00:00Z') == datetime(2025, 1, 5, 10, tzinfo=timezone.utc)
    assert parse_instant('2025-01-05T10:00:00') == datetime(2025, 1, 5, 10, tzinfo=timezone.utc)
    assert parse_instant(None) is None

import pytest

import booking_db

SEAT_DISCOUNT = {
    'id': 'd-seat', 'name': 'Team entry', 'discount_type': 'seat_based',
    'value_type': 'fixed', 'value': 0, 'start_date': None, 'end_date': None,
    'min_quantity': 1, 'max_quantity': 0, 'max_uses': 0, 'current_uses': 0,
    'rules': [],
    'seat_rules': [
        {'id': 's-1', 'min_seats': 2, 'max_seats': 4, 'discount_amount': 10, 'discount_percentage': None},
        {'id': 's-2', 'min_seats': 5, 'max_seats': None, 'discount_amount': 20, 'discount_percentage': None},
    ],
}

CODE_DISCOUNT = {
    'id': 'd-code', 'name': 'Club members', 'description': '10% off', 'code': 'CLUB10',
    'discount_type': 'code', 'value_type': 'percentage', 'value': 10,
    'start_date': None, 'end_date': None, 'min_quantity': 1, 'max_quantity': 0,
    'max_uses': 0, 'current_uses': 0,
}


def test_calculate_discounts_picks_seat_rule(client, monkeypatch):
    monkeypatch.setattr(booking_db, 'get_active_discounts', lambda event_id: [SEAT_DISCOUNT])

    response = client.post('/api/events/event-1/calculate-discounts', json={
        'participants': [{'first_name': f'P{i}', 'last_name': 'X'} for i in range(6)],
        'baseAmount': 300,
        'quantity': 6,
    })

    body = response.get_json()
    assert response.status_code == 200
    assert body['totalDiscount'] == 20.0
    assert body['finalAmount'] == 280.0
    assert body['appliedDiscounts'][0]['matched_rule_id'] == 's-2'


@pytest.mark.parametrize('payload,error', [
    ({'baseAmount': 100, 'quantity': 1}, "Participants array is required"),
    ({'participants': [], 'baseAmount': -5, 'quantity': 1}, "Valid base amount is required"),
    ({'participants': [], 'baseAmount': 100, 'quantity': 0}, "Valid quantity is required"),
    ({'participants': [], 'baseAmount': 100, 'quantity': 1.5}, "Valid quantity is required"),
])
def test_calculate_discounts_validation(client, payload, error):
    response = client.post('/api/events/event-1/calculate-discounts', json=payload)
    assert response.status_code == 400
    assert response.get_json()['error'] == error


def test_calculate_discounts_database_error(client, monkeypatch):
    monkeypatch.setattr(booking_db, 'get_active_discounts', lambda event_id: None)
    response = client.post('/api/events/event-1/calculate-discounts',
                           json={'participants': [], 'baseAmount': 10, 'quantity': 1})
    assert response.status_code == 500


def test_apply_discount_code(client, monkeypatch):
    looked_up = []
    monkeypatch.setattr(booking_db, 'get_code_discount',
                        lambda event_id, code: looked_up.append(code) or CODE_DISCOUNT)

    response = client.post('/api/events/event-1/apply-discount-code',
                           json={'code': 'club10', 'baseAmount': 80, 'quantity': 2})

    body = response.get_json()
    assert body['discountAmount'] == 8.0
    assert body['finalAmount'] == 72.0
    assert body['discount']['name'] == 'Club members'
    assert looked_up == ['club10']


def test_unknown_discount_code(client, monkeypatch):
    monkeypatch.setattr(booking_db, 'get_code_discount', lambda event_id, code: None)

    response = client.post('/api/events/event-1/apply-discount-code',
                           json={'code': 'NOPE', 'baseAmount': 80, 'quantity': 2})

    assert response.status_code == 404
    assert response.get_json()['error'] == "Invalid or expired discount code"


@pytest.fixture
def saved(monkeypatch, event):
    store = {}

    def fake_create(event_id, data, rules, seat_rules):
        store['created'] = (event_id, data, rules, seat_rules)
        return 'd-new'

    def fake_update(discount_id, data, rules, seat_rules):
        store['updated'] = (discount_id, data, rules, seat_rules)
        return 1

    monkeypatch.setattr(booking_db, 'get_event', lambda event_id: event if event_id == 'event-1' else None)
    monkeypatch.setattr(booking_db, 'create_discount', fake_create)
    monkeypatch.setattr(booking_db, 'update_discount', fake_update)
    monkeypatch.setattr(booking_db, 'delete_discount', lambda discount_id: store.setdefault('deleted', discount_id))
    monkeypatch.setattr(booking_db, 'get_discount',
                        lambda discount_id: {'id': discount_id, 'event_id': 'event-1', 'name': 'Returning players'})
    return store


def test_create_participant_discount(client, login, saved):
    login('org-1')

    response = client.post('/api/organizer/events/event-1/discounts', json={
        'name': 'Returning players',
        'discount_type': 'participant_based',
        'value_type': 'fixed',
        'value': 5,
        'rules': [{'rule_type': 'previous_event', 'related_event_id': 'event-0', 'field_value': 'confirmed'}],
    })

    assert response.status_code == 201
    event_id, data, rules, seat_rules = saved['created']
    assert event_id == 'event-1'
    assert data['is_active'] is True
    assert data['code'] is None
    assert data['min_quantity'] == 1
    assert rules == [{'rule_type': 'previous_event', 'related_event_id': 'event-0',
                      'field_name': None, 'operator': None, 'field_value': 'confirmed'}]
    assert seat_rules == []


def test_create_seat_discount_keeps_open_ended_rule(client, login, saved):
    login('org-1')

    response = client.post('/api/organizer/events/event-1/discounts', json={
        'name': 'Team entry',
        'discount_type': 'seat_based',
        'value_type': 'fixed',
        'value': 0,
        'is_active': False,
        'seat_rules': [
            {'min_seats': 2, 'max_seats': 4, 'discount_amount': 10},
            {'min_seats': 5, 'discount_amount': 20},
        ],
    })

    assert response.status_code == 201
    _, data, _, seat_rules = saved['created']
    assert data['is_active'] is False
    assert seat_rules[1]['max_seats'] is None
    assert seat_rules[1]['min_seats'] == 5


@pytest.mark.parametrize('payload,field', [
    ({'name': 'Promo', 'discount_type': 'code', 'value_type': 'fixed', 'value': 5}, 'code'),
    ({'name': 'Promo', 'discount_type': 'seat_based', 'value_type': 'percentage', 'value': 150}, 'value'),
    ({'name': 'Promo', 'discount_type': 'bogus', 'value_type': 'fixed', 'value': 5}, 'discount_type'),
    ({'name': 'Promo', 'discount_type': 'seat_based', 'value_type': 'fixed', 'value': 5,
      'seat_rules': [{'min_seats': 5, 'max_seats': 3, 'discount_amount': 5}]}, 'seat_rules[0]'),
    ({'name': 'Promo', 'discount_type': 'participant_based', 'value_type': 'fixed', 'value': 5,
      'rules': [{'rule_type': 'custom', 'field_name': 'club'}]}, 'rules[0]'),
    ({'name': 'Promo', 'discount_type': 'participant_based', 'value_type': 'fixed', 'value': 5,
      'rules': [{'rule_type': 'custom', 'field_name': 'club', 'operator': 'regex'}]}, 'rules[0]'),
])
def test_discount_validation(client, login, saved, payload, field):
    login('org-1')

    response = client.post('/api/organizer/events/event-1/discounts', json=payload)

    assert response.status_code == 400
    assert field in response.get_json()['errors']
    assert 'created' not in saved


def test_discounts_managed_by_event_organizer_only(client, login, saved):
    login('org-2')
    assert client.post('/api/organizer/events/event-1/discounts', json={}).status_code == 403

    login('user-1')
    assert client.get('/api/organizer/events/event-1/discounts').status_code == 403


def test_discounts_for_unknown_event(client, login, saved):
    login('org-1')
    assert client.get('/api/organizer/events/missing/discounts').status_code == 404


def test_list_discounts(client, login, saved, monkeypatch):
    login('org-1')
    monkeypatch.setattr(booking_db, 'list_discounts', lambda event_id: [SEAT_DISCOUNT, CODE_DISCOUNT])

    body = client.get('/api/organizer/events/event-1/discounts').get_json()

    assert [d['id'] for d in body['discounts']] == ['d-seat', 'd-code']


def test_update_leaves_rules_alone_when_not_sent(client, login, saved):
    login('org-1')

    response = client.put('/api/organizer/discounts/d-1', json={
        'name': 'Returning players', 'discount_type': 'participant_based',
        'value_type': 'percentage', 'value': 15,
    })

    assert response.status_code == 200
    discount_id, data, rules, seat_rules = saved['updated']
    assert discount_id == 'd-1'
    assert rules is None
    assert seat_rules is None


def test_delete_discount(client, login, saved):
    login('admin-1')

    response = client.delete('/api/organizer/discounts/d-1')

    assert response.status_code == 200
    assert saved['deleted'] == 'd-1'

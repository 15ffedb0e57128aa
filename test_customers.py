import pytest
from datetime import datetime
from portal import create_app, db
from portal.auth.models import User, RoleEnum
from portal.customers.models import Customer
from portal.loyalty.models import CustomerStats
from portal.loyalty.service import CLOCK_EXTENSION, FixedClock
from portal.visits.models import Visit

NOW = datetime(2024, 6, 1, 12, 0, 0)


@pytest.fixture
def client():
    app = create_app(config_name='testing')
    app.extensions[CLOCK_EXTENSION] = FixedClock(NOW)
    with app.test_client() as client:
        with app.app_context():
            db.create_all()

            admin = User(username='admin', name='Admin User', role=RoleEnum.admin)
            admin.set_password('admin123')
            barber = User(username='barber', name='Barber Bob', role=RoleEnum.barber)
            barber.set_password('barber123')
            db.session.add_all([admin, barber])
            db.session.commit()

        yield client

        with app.app_context():
            db.drop_all()


def login(client, username='admin', password=None):
    password = password or f'{username}123'
    return client.post('/auth/login', json={'username': username, 'password': password})


def create_customer(client, **fields):
    fields.setdefault('full_name', 'John Doe')
    resp = client.post('/customers/', json=fields)
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()['customer']['customer_id']


def add_visits(client, customer_id, count, day=1):
    for i in range(count):
        resp = client.post(f'/customers/{customer_id}/visits',
                           json={'start_at': f'2024-03-{day + i:02d}T10:00:00Z'})
        assert resp.status_code == 201, resp.get_json()


# ── Access control ────────────────────────────────────────────────

def test_anonymous_requests_get_401(client):
    resp = client.get('/customers/')
    assert resp.status_code == 401
    body = resp.get_json()
    assert body['ok'] is False
    assert body['error'] == 'unauthorized'


def test_barber_cannot_edit_or_delete(client):
    login(client)
    cid = create_customer(client)
    client.post('/auth/logout')

    login(client, 'barber')
    assert client.patch(f'/customers/{cid}', json={'full_name': 'X'}).status_code == 403
    assert client.delete(f'/customers/{cid}').status_code == 403
    # Barbers can still look customers up
    assert client.get(f'/customers/{cid}').status_code == 200


# ── Create ────────────────────────────────────────────────────────

def test_create_normalises_fields(client):
    login(client)
    resp = client.post('/customers/', json={
        'full_name': '  John Doe ',
        'phone_norm': '(987) 654-3210',
        'birthdate': '30/05/1990',
    })
    assert resp.status_code == 201
    customer = resp.get_json()['customer']
    assert customer['full_name'] == 'John Doe'
    assert customer['phone_norm'] == '9876543210'
    assert customer['birthdate'] == '1990-05-30'
    assert len(customer['token_prefix']) == 10
    assert customer['token_prefix'] == customer['customer_id'].replace('-', '')[:10]
    assert customer['discount_credits'] == 0
    assert customer['birthday_eligible_today'] is True


@pytest.mark.parametrize('payload, field', [
    ({'full_name': ''}, 'full_name'),
    ({'full_name': 'A', 'phone_norm': '12345'}, 'phone_norm'),
    ({'full_name': 'A', 'birthdate': '2023-02-30'}, 'birthdate'),
    ({'full_name': 'A', 'birthdate': 'May 3rd'}, 'birthdate'),
])
def test_create_rejects_invalid_fields(client, payload, field):
    login(client)
    resp = client.post('/customers/', json=payload)
    assert resp.status_code == 400
    body = resp.get_json()
    assert body['error'] == 'invalid_input'
    assert field in body['fields']


# ── Listing ───────────────────────────────────────────────────────

def test_search_by_phone_name_and_token(client):
    login(client)
    cid = create_customer(client, full_name='John Doe', phone_norm='9876543210')
    create_customer(client, full_name='Mary Major', phone_norm='1112223333')

    items = client.get('/customers/?q=9876').get_json()['items']
    assert [c['customer_id'] for c in items] == [cid]

    items = client.get('/customers/?q=mary').get_json()['items']
    assert [c['full_name'] for c in items] == ['Mary Major']

    token = cid.replace('-', '')[:10]
    items = client.get(f'/customers/?q={token.upper()}').get_json()['items']
    assert [c['customer_id'] for c in items] == [cid]


def test_list_flags_and_star_filter(client):
    login(client)
    regular = create_customer(client, full_name='Regular')
    create_customer(client, full_name='Newcomer')
    add_visits(client, regular, 5)

    body = client.get('/customers/?sort_by=total_visits&sort_dir=desc').get_json()
    assert body['total'] == 2
    first = body['items'][0]
    assert first['full_name'] == 'Regular'
    assert first['total_visits'] == 5
    assert first['discount_credits'] == 1
    assert first['discount_progress'] == 1
    assert first['discount_pending'] is True
    assert first['last_visit_at'] == '2024-03-05T10:00:00Z'

    starred = client.get('/customers/?filter_star=1').get_json()
    assert [c['full_name'] for c in starred['items']] == ['Regular']


def test_sort_by_last_visit_keeps_customers_without_visits_last(client):
    login(client)
    create_customer(client, full_name='Adam Never')
    early = create_customer(client, full_name='Early')
    late = create_customer(client, full_name='Late')
    add_visits(client, early, 1, day=1)
    add_visits(client, late, 1, day=5)

    body = client.get('/customers/?sort_by=last_visit_at&sort_dir=asc').get_json()
    assert [c['full_name'] for c in body['items']] == ['Early', 'Late', 'Adam Never']

    body = client.get('/customers/?sort_by=last_visit_at&sort_dir=desc').get_json()
    assert [c['full_name'] for c in body['items']] == ['Late', 'Early', 'Adam Never']


def test_star_filter_drops_customers_who_redeemed(client):
    login(client)
    cid = create_customer(client, full_name='Regular')
    add_visits(client, cid, 4)
    resp = client.post(f'/customers/{cid}/visits', json={'promo_kind': 'promo50'})
    assert resp.status_code == 201

    starred = client.get('/customers/?filter_star=true').get_json()
    assert starred['items'] == []


def test_birthday_filter(client):
    login(client)
    create_customer(client, full_name='Birthday Boy', birthdate='1990-05-30')
    create_customer(client, full_name='Winter Baby', birthdate='1990-01-15')
    create_customer(client, full_name='Unknown')

    body = client.get('/customers/?filter_birthday=1').get_json()
    assert body['total'] == 1
    assert body['items'][0]['full_name'] == 'Birthday Boy'
    assert body['items'][0]['birthday_eligible_today'] is True


def test_paging_is_clamped(client):
    login(client)
    for name in ('A', 'B', 'C'):
        create_customer(client, full_name=name)

    body = client.get('/customers/?limit=0').get_json()
    assert body['limit'] == 1
    assert [c['full_name'] for c in body['items']] == ['A']

    body = client.get('/customers/?limit=5000&offset=-4').get_json()
    assert (body['limit'], body['offset']) == (200, 0)

    body = client.get('/customers/?limit=2&offset=2&sort_by=bogus').get_json()
    assert [c['full_name'] for c in body['items']] == ['C']


# ── Detail / edit / delete ────────────────────────────────────────

def test_detail_unknown_customer(client):
    login(client)
    resp = client.get('/customers/does-not-exist')
    assert resp.status_code == 404
    assert resp.get_json()['error'] == 'not_found'


def test_update_customer(client):
    login(client)
    cid = create_customer(client, phone_norm='9876543210')

    resp = client.patch(f'/customers/{cid}', json={'phone_norm': '', 'birthdate': '1990-06-01'})
    assert resp.status_code == 200
    customer = resp.get_json()['customer']
    assert customer['phone_norm'] is None
    assert customer['birthdate'] == '1990-06-01'
    assert customer['birthday_eligible_today'] is True


def test_update_with_nothing_to_change(client):
    login(client)
    cid = create_customer(client)
    resp = client.patch(f'/customers/{cid}', json={'status': 'vip'})
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'invalid_input'


def test_update_unknown_customer(client):
    login(client)
    resp = client.patch('/customers/nope', json={'full_name': 'X'})
    assert resp.status_code == 404


def test_delete_cascades_to_visits(client):
    login(client)
    cid = create_customer(client)
    add_visits(client, cid, 3)

    resp = client.delete(f'/customers/{cid}')
    assert resp.status_code == 200
    assert resp.get_json()['deleted_visits'] == 3

    with client.application.app_context():
        assert db.session.get(Customer, cid) is None
        assert Visit.query.filter_by(customer_id=cid).count() == 0
        assert db.session.get(CustomerStats, cid) is None

    assert client.delete(f'/customers/{cid}').status_code == 404


def test_row_color(client):
    login(client, 'barber')
    with client.application.app_context():
        customer = Customer(full_name='Colourful')
        db.session.add(customer)
        db.session.commit()
        cid = customer.id

    resp = client.post(f'/customers/{cid}/row-color', json={'row_color': '#AABBCC'})
    assert resp.status_code == 200
    assert resp.get_json()['row_color'] == '#aabbcc'

    resp = client.post(f'/customers/{cid}/row-color', json={'row_color': 'red'})
    assert resp.status_code == 400

    resp = client.post(f'/customers/{cid}/row-color', json={'row_color': ''})
    assert resp.get_json()['row_color'] is None

import pytest
from datetime import date, datetime
from portal import create_app, db
from portal.auth.models import User, RoleEnum
from portal.customers.models import Customer
from portal.loyalty.engine import PROMO_50, PROMO_BIRTHDAY
from portal.loyalty.models import CustomerStats
from portal.loyalty.service import CLOCK_EXTENSION, FixedClock, loyalty_service
from portal.visits.models import Visit


@pytest.fixture
def app():
    app = create_app(config_name='testing')
    app.extensions[CLOCK_EXTENSION] = FixedClock(datetime(2025, 1, 2, 9, 0, 0))
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def runner(app):
    return app.test_cli_runner()


def _customer(**fields):
    customer = Customer(**fields)
    db.session.add(customer)
    db.session.commit()
    return customer.id


def _write_csv(tmp_path, lines):
    path = tmp_path / 'visits.csv'
    path.write_text('\n'.join(lines) + '\n', encoding='utf-8')
    return str(path)


def test_import_visits(runner, tmp_path):
    cid = _customer(full_name='Old Regular', phone_norm='9876543210')
    path = _write_csv(tmp_path, [
        'customer_id,phone,start_at,promo_kind,notes',
        f'{cid},,2023-01-05T10:00:00,,',
        ',(987) 654-3210,2023-01-06T10:00:00,none,walk-in',
        f'{cid},,2023-01-07T10:00:00,promo50,',
        f'{cid},,2023-01-05T10:00:00,,',            # duplicate
        'no-such-customer,,2023-01-08T10:00:00,,',
        f'{cid},,not-a-date,,',
        f'{cid},,2023-01-09T10:00:00,vip,',
    ])

    result = runner.invoke(args=['import-visits', path])
    assert result.exit_code == 0, result.output
    assert 'Imported 3 visit(s) for 1 customer(s)' in result.output
    assert 'Skipped 4 row(s)' in result.output
    assert 'line 5' in result.output

    visits = Visit.query.filter_by(customer_id=cid).order_by(Visit.start_at).all()
    assert len(visits) == 3
    assert {v.source for v in visits} == {'import'}
    assert all(v.staff_user_id is None and v.added_by is None for v in visits)
    assert visits[1].notes == 'walk-in'
    assert visits[2].promo_kind == PROMO_50
    assert visits[2].redemption_slot == 1

    stats = db.session.get(CustomerStats, cid)
    assert (stats.total_visits, stats.normal_visits, stats.promo50_visits) == (3, 2, 1)

    # History with more redemptions than earned never shows negative credit
    assert loyalty_service().evaluate(cid).credits_available == 0


def test_import_birthday_rows_use_window_year(runner, tmp_path):
    cid = _customer(full_name='December Kid', birthdate=date(1990, 12, 28))
    path = _write_csv(tmp_path, [
        'customer_id,start_at,promo_kind',
        f'{cid},2025-01-01T10:00:00,birthday',
        f'{cid},2024-12-30T10:00:00,birthday',     # same window occurrence
    ])

    result = runner.invoke(args=['import-visits', path])
    assert result.exit_code == 0, result.output
    assert 'Imported 1 visit(s)' in result.output
    assert 'Skipped 1 row(s)' in result.output

    visit = Visit.query.filter_by(customer_id=cid, promo_kind=PROMO_BIRTHDAY).one()
    assert visit.redemption_slot == 2024
    # Today (2 Jan 2025) is inside the same occurrence, already consumed
    assert loyalty_service().evaluate(cid).birthday_eligible_today is False


def test_import_ambiguous_phone_is_skipped(runner, tmp_path):
    _customer(full_name='Twin A', phone_norm='5550001111')
    _customer(full_name='Twin B', phone_norm='5550001111')
    path = _write_csv(tmp_path, [
        'phone,start_at',
        '5550001111,2023-03-01T10:00:00',
    ])

    result = runner.invoke(args=['import-visits', path])
    assert 'Imported 0 visit(s)' in result.output
    assert 'more than one customer' in result.output
    assert Visit.query.count() == 0


def test_recompute_stats_command(runner):
    cid = _customer(full_name='Legacy')
    db.session.add(Visit(customer_id=cid, start_at=datetime(2023, 1, 1, 10, 0, 0), source='import'))
    db.session.commit()

    result = runner.invoke(args=['recompute-stats'])
    assert result.exit_code == 0, result.output
    assert 'Stats rebuilt for 1 customer(s)' in result.output
    assert db.session.get(CustomerStats, cid).total_visits == 1


def test_seed_users(runner):
    result = runner.invoke(args=['seed-barber', '--name', 'Bob', '--username', 'bob', '--password', 'pw'])
    assert result.exit_code == 0, result.output

    user = User.query.filter_by(username='bob').one()
    assert user.role == RoleEnum.barber
    assert user.check_password('pw')

    result = runner.invoke(args=['seed-barber', '--name', 'Bob', '--username', 'bob', '--password', 'pw'])
    assert 'already exists' in result.output

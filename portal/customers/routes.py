import re

from flask import request, jsonify, current_app, session
from sqlalchemy import or_, func

from portal import db
from portal.customers import customers
from portal.customers.models import Customer
from portal.customers.validators import validate_customer_form, normalize_row_color
from portal.auth.decorators import login_required, admin_required
from portal.loyalty.engine import VISITS_PER_CREDIT
from portal.loyalty.errors import InvalidInput
from portal.loyalty.models import CustomerStats
from portal.visits.validators import parse_paging, parse_flag


DEFAULT_PAGE_SIZE = 50

SORT_COLUMNS = {
    'full_name':          Customer.full_name,
    'total_visits':       func.coalesce(CustomerStats.total_visits, 0),
    'promo_50_ok_cycles': func.coalesce(CustomerStats.promo50_visits, 0),
    'last_visit_at':      CustomerStats.last_visit_at,
}


def _service():
    from portal.loyalty.service import loyalty_service
    return loyalty_service()


def _payload() -> dict:
    return request.get_json(silent=True) or request.form.to_dict()


def _form_error(errors: dict):
    field = next(iter(errors))
    return jsonify({'ok': False, 'error': 'invalid_input',
                    'details': errors[field], 'fields': errors}), 400


def _list_item(customer, stats, state) -> dict:
    item = customer.to_dict()
    item.update({
        'total_visits':       stats.total_visits if stats else 0,
        'promo_50_ok_cycles': stats.promo50_visits if stats else 0,
        'last_visit_at':      stats.last_visit_at.isoformat() + 'Z' if stats and stats.last_visit_at else None,
    })
    item.update(state.as_flags())
    return item


# ── Listing ───────────────────────────────────────────────────────

@customers.route('/', methods=['GET'])
@login_required
def list_customers():
    """
    Admin list: search, sort, paging and the star / birthday filters.
    Loyalty flags come from the cached stats through the same rule the
    scanner and registration use.
    """
    service = _service()
    limit, offset = parse_paging(request.args, DEFAULT_PAGE_SIZE,
                                 current_app.config['CUSTOMERS_PAGE_MAX'])

    query = (db.session.query(Customer, CustomerStats)
             .outerjoin(CustomerStats, CustomerStats.customer_id == Customer.id))

    q = request.args.get('q', '').strip()
    if q:
        like = f'%{q}%'
        conditions = [Customer.full_name.ilike(like), Customer.token_prefix.ilike(like)]
        digits = re.sub(r'[\s()+.-]', '', q)
        if digits.isdigit():
            conditions.append(Customer.phone_norm.like(f'%{digits}%'))
        query = query.filter(or_(*conditions))

    if parse_flag(request.args.get('filter_star')):
        normal  = func.coalesce(CustomerStats.normal_visits, 0)
        promo50 = func.coalesce(CustomerStats.promo50_visits, 0)
        query = query.filter(normal // VISITS_PER_CREDIT > promo50)

    sort_by = request.args.get('sort_by', 'full_name')
    if sort_by not in SORT_COLUMNS:
        sort_by = 'full_name'
    column = SORT_COLUMNS[sort_by]
    descending = request.args.get('sort_dir', 'asc').lower() == 'desc'
    # Customers without visits (NULL last_visit_at) stay at the bottom either way
    query = query.order_by((column.desc() if descending else column.asc()).nulls_last(),
                           Customer.full_name.asc(), Customer.id.asc())

    if parse_flag(request.args.get('filter_birthday')):
        # Eligibility depends on today's date, so this filter runs in Python
        rows = [(c, s, service.state_from_stats(c, s))
                for c, s in query.filter(Customer.birthdate.isnot(None)).all()]
        rows = [r for r in rows if r[2].birthday_eligible_today]
        total = len(rows)
        page = rows[offset:offset + limit]
    else:
        total = query.count()
        page = [(c, s, service.state_from_stats(c, s))
                for c, s in query.offset(offset).limit(limit).all()]

    return jsonify({
        'ok':     True,
        'items':  [_list_item(c, s, state) for c, s, state in page],
        'total':  total,
        'limit':  limit,
        'offset': offset,
    })


# ── Create / read / update / delete ───────────────────────────────

@customers.route('/', methods=['POST'])
@login_required
def create():
    cleaned, errors = validate_customer_form(_payload(), creating=True)
    if errors:
        return _form_error(errors)

    customer = Customer(**cleaned)
    db.session.add(customer)
    db.session.commit()
    current_app.logger.info(f"Customer {customer.id} created by user {session.get('user_id')}.")

    state = _service().evaluate(customer.id)
    body = customer.to_dict()
    body.update(state.as_flags())
    return jsonify({'ok': True, 'customer': body}), 201


@customers.route('/<customer_id>', methods=['GET'])
@login_required
def detail(customer_id):
    service = _service()
    customer = service.directory.get(customer_id)
    state = service.evaluate(customer.id)

    body = _list_item(customer, customer.stats, state)
    body['normal_visits'] = state.normal_count
    return jsonify({'ok': True, 'customer': body})


@customers.route('/<customer_id>', methods=['PATCH'])
@admin_required
def update(customer_id):
    service = _service()
    customer = service.directory.get(customer_id)

    cleaned, errors = validate_customer_form(_payload(), creating=False)
    if errors:
        return _form_error(errors)
    if not cleaned:
        raise InvalidInput('Nothing to update.')

    for field, value in cleaned.items():
        setattr(customer, field, value)
    db.session.commit()
    current_app.logger.info(f"Customer {customer.id} updated ({', '.join(sorted(cleaned))}).")

    body = customer.to_dict()
    body.update(service.evaluate(customer.id).as_flags())
    return jsonify({'ok': True, 'customer': body})


@customers.route('/<customer_id>', methods=['DELETE'])
@admin_required
def delete(customer_id):
    deleted_customers, deleted_visits = _service().delete_customer(customer_id)
    current_app.logger.info(
        f"Customer {customer_id} deleted by user {session.get('user_id')} "
        f"({deleted_visits} visit(s))."
    )
    return jsonify({'ok': True, 'deleted_customers': deleted_customers,
                    'deleted_visits': deleted_visits})


@customers.route('/<customer_id>/row-color', methods=['POST'])
@login_required
def row_color(customer_id):
    """Set (or clear, with an empty value) the highlight colour of a list row."""
    customer = _service().directory.get(customer_id)
    raw = _payload().get('row_color')

    if raw in (None, ''):
        customer.row_color = None
    else:
        try:
            customer.row_color = normalize_row_color(raw)
        except ValueError as e:
            raise InvalidInput(str(e)) from None
    db.session.commit()
    return jsonify({'ok': True, 'customer_id': customer.id, 'row_color': customer.row_color})

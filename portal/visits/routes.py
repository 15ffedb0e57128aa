"""
portal/visits/routes.py
-----------------------
Visit history modal and manual registration / correction by admins.
Every write goes through LoyaltyService, which locks the customer,
re-checks the loyalty rule and refreshes the cached stats in one
transaction.
"""
from flask import request, jsonify, current_app, session

from portal.visits import visits
from portal.visits.models import SOURCE_MANUAL
from portal.visits.validators import parse_paging, parse_flag, parse_notes, parse_promo_kind
from portal.auth.decorators import login_required, admin_required
from portal.loyalty.errors import InvalidInput


DEFAULT_PAGE_SIZE = 10


def _service():
    from portal.loyalty.service import loyalty_service
    return loyalty_service()


def _payload() -> dict:
    return request.get_json(silent=True) or request.form.to_dict()


@visits.route('/<customer_id>/visits', methods=['GET'])
@login_required
def list_visits(customer_id):
    """Newest first, with who recorded each visit."""
    service = _service()
    customer = service.directory.get(customer_id)
    limit, offset = parse_paging(request.args, DEFAULT_PAGE_SIZE,
                                 current_app.config['VISITS_PAGE_MAX'])

    items = service.ledger.list_visits(customer.id, limit=limit, offset=offset)
    return jsonify({
        'ok':      True,
        'items':   [v.to_dict() for v in items],
        'total':   service.ledger.count_visits(customer.id),
        'limit':   limit,
        'offset':  offset,
        'loyalty': service.evaluate(customer.id).as_flags(),
    })


@visits.route('/<customer_id>/visits', methods=['POST'])
@admin_required
def register(customer_id):
    """
    Manual registration. `dry_run` only checks the reward and returns the
    balances it was checked against, so the modal can warn before saving.
    """
    data = _payload()
    dry_run = parse_flag(data.get('dry_run'))

    result = _service().register_visit(
        customer_id,
        promo_kind=data.get('promo_kind'),
        start_at=data.get('start_at'),
        notes=parse_notes(data.get('notes')),
        staff_user_id=session.get('user_id'),
        source=SOURCE_MANUAL,
        dry_run=dry_run,
    )

    if result.dry_run:
        return jsonify({'ok': True, 'dry_run': True, 'loyalty': result.authorized.as_flags()})

    current_app.logger.info(
        f"Manual visit {result.visit.id} ({result.visit.promo_kind}) recorded "
        f"for customer {customer_id} by user {session.get('user_id')}."
    )
    return jsonify({'ok': True, 'visit': result.visit.to_dict(),
                    'loyalty': result.state.as_flags()}), 201


@visits.route('/<customer_id>/visits/<visit_id>', methods=['PATCH'])
@admin_required
def update(customer_id, visit_id):
    """Correct the timestamp or the notes. The reward consumed never changes."""
    service = _service()
    data = _payload()
    visit = service.ledger.get_visit(visit_id, customer_id)

    if 'promo_kind' in data and parse_promo_kind(data['promo_kind']) != visit.promo_kind:
        raise InvalidInput('promo_kind cannot be changed. Delete the visit and register it again.')

    changes = {}
    if 'start_at' in data:
        changes['start_at'] = data['start_at']
    if 'notes' in data:
        changes['notes'] = parse_notes(data['notes'])
    if not changes:
        raise InvalidInput('Nothing to update.')

    visit = service.update_visit(visit_id, customer_id, **changes)
    return jsonify({'ok': True, 'visit': visit.to_dict(),
                    'loyalty': service.evaluate(customer_id).as_flags()})


@visits.route('/<customer_id>/visits/<visit_id>', methods=['DELETE'])
@admin_required
def delete(customer_id, visit_id):
    service = _service()
    service.delete_visit(visit_id, customer_id)
    current_app.logger.info(
        f"Visit {visit_id} of customer {customer_id} deleted by user {session.get('user_id')}."
    )
    return jsonify({'ok': True, 'deleted': visit_id,
                    'loyalty': service.evaluate(customer_id).as_flags()})

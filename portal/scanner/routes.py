from flask import request, jsonify, current_app, session

from portal.scanner import scanner
from portal.visits.models import SOURCE_QR
from portal.visits.validators import parse_flag, parse_notes
from portal.auth.decorators import login_required


def _service():
    from portal.loyalty.service import loyalty_service
    return loyalty_service()


def _payload() -> dict:
    return request.get_json(silent=True) or request.form.to_dict()


def _summary(customer) -> dict:
    return {
        'customer_id':  customer.id,
        'full_name':    customer.full_name,
        'token_prefix': customer.token_prefix,
        'birthdate':    customer.birthdate.isoformat() if customer.birthdate else None,
    }


@scanner.route('/resolve', methods=['POST'])
@login_required
def resolve():
    """Look up the customer behind a scanned QR code (bare token, t=… or URL)."""
    service = _service()
    customer = service.directory.resolve_token(_payload().get('token'))
    state = service.evaluate(customer.id)
    return jsonify({'ok': True, 'customer': _summary(customer), 'loyalty': state.as_flags()})


@scanner.route('/redeem', methods=['POST'])
@login_required
def redeem():
    """Record a visit for the scanned customer, stamped with the current time."""
    service = _service()
    data = _payload()
    customer = service.directory.resolve_token(data.get('token'))

    result = service.register_visit(
        customer.id,
        promo_kind=data.get('promo_kind'),
        notes=parse_notes(data.get('notes')),
        staff_user_id=session.get('user_id'),
        source=SOURCE_QR,
        dry_run=parse_flag(data.get('dry_run')),
    )

    if result.dry_run:
        return jsonify({'ok': True, 'dry_run': True, 'customer': _summary(customer),
                        'loyalty': result.authorized.as_flags()})

    current_app.logger.info(
        f"QR visit {result.visit.id} ({result.visit.promo_kind}) for customer "
        f"{customer.id} by user {session.get('user_id')}."
    )
    return jsonify({'ok': True, 'customer': _summary(customer),
                    'visit': result.visit.to_dict(),
                    'loyalty': result.state.as_flags()}), 201

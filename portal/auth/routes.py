from flask import request, session, jsonify, abort, current_app
from portal import db
from portal.auth import auth
from portal.auth.decorators import login_required
from portal.auth.models import User


def _credentials():
    """Accept JSON bodies (portal UI) and classic form posts."""
    data = request.get_json(silent=True) or request.form
    return str(data.get('username', '')).strip(), str(data.get('password', ''))


@auth.route('/login', methods=['POST'])
def login():
    """Validate credentials and populate the session."""
    username, password = _credentials()

    if not username or not password:
        return jsonify({'ok': False, 'error': 'invalid_input',
                        'details': 'Username and password are required.'}), 400

    user = User.query.filter_by(username=username).first()
    if user is None or not user.check_password(password):
        # Same message for unknown user and wrong password
        current_app.logger.warning(f"Failed login attempt for username: {username}")
        return jsonify({'ok': False, 'error': 'unauthorized',
                        'details': 'Invalid username or password.'}), 401

    session.clear()
    session['user_id'] = user.id
    session['role']    = user.role.value  # 'admin' or 'barber'
    session.permanent  = True             # respect PERMANENT_SESSION_LIFETIME

    current_app.logger.info(f"User {user.username} logged in ({user.role.value}).")
    return jsonify({'ok': True, 'user': user.to_dict()})


@auth.route('/logout', methods=['POST'])
def logout():
    session.clear()
    return jsonify({'ok': True})


@auth.route('/me')
@login_required
def me():
    user = db.session.get(User, session['user_id'])
    if user is None:
        session.clear()
        abort(401)
    return jsonify({'ok': True, 'user': user.to_dict()})

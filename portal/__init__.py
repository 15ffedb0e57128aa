import click
from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from werkzeug.exceptions import HTTPException
from config import config

db = SQLAlchemy()

# HTTP status → machine code used in JSON error bodies
HTTP_ERROR_CODES = {
    400: 'invalid_input',
    401: 'unauthorized',
    403: 'forbidden',
    404: 'not_found',
    405: 'method_not_allowed',
    409: 'conflict',
    500: 'server_error',
}


def create_app(config_name='default', test_config=None):
    """Application factory: creates and configures the Flask app."""
    app = Flask(__name__)
    app.config.from_object(config[config_name])
    if test_config:
        app.config.update(test_config)

    # ── Logging ───────────────────────────────────────────────────
    from portal.utils.logging import setup_logging
    setup_logging(app)

    # ── Extensions ────────────────────────────────────────────────
    db.init_app(app)

    from portal.loyalty.service import CLOCK_EXTENSION, SystemClock
    app.extensions.setdefault(CLOCK_EXTENSION, SystemClock())

    # ── Blueprints ────────────────────────────────────────────────
    from portal.main import main as main_blueprint
    app.register_blueprint(main_blueprint)

    from portal.auth import auth as auth_blueprint
    app.register_blueprint(auth_blueprint, url_prefix='/auth')

    from portal.customers import customers as customers_blueprint
    app.register_blueprint(customers_blueprint, url_prefix='/customers')

    from portal.visits import visits as visits_blueprint
    app.register_blueprint(visits_blueprint, url_prefix='/customers')

    from portal.scanner import scanner as scanner_blueprint
    app.register_blueprint(scanner_blueprint, url_prefix='/scanner')

    # Make sure every table is known to create_all()
    from portal.loyalty import models as _loyalty_models  # noqa: F401

    # ── Error Handlers ────────────────────────────────────────────
    register_error_handlers(app)

    # ── CLI Commands ──────────────────────────────────────────────
    register_commands(app)

    # ── ProxyFix (HTTPS termination at the platform edge) ────────
    from werkzeug.middleware.proxy_fix import ProxyFix
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_prefix=1)

    return app


def register_error_handlers(app):
    """Every failure leaves the API as {"ok": false, "error": code, "details": msg}."""
    from portal.loyalty.errors import LedgerError

    @app.errorhandler(LedgerError)
    def ledger_error(e):
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def http_error(e):
        code = HTTP_ERROR_CODES.get(e.code, 'http_error')
        return jsonify({'ok': False, 'error': code, 'details': e.description}), e.code

    @app.errorhandler(500)
    def internal_error(e):
        db.session.rollback()
        app.logger.error("Unhandled error: %r", getattr(e, "original_exception", None) or e)
        return jsonify({'ok': False, 'error': 'server_error',
                        'details': 'Unexpected server error.'}), 500


def register_commands(app):
    """Register custom Flask CLI commands."""

    @app.cli.command('init-db')
    def init_db():
        """Create all database tables."""
        db.create_all()
        click.echo('✅  Database tables created.')

    def _create_user(name, username, password, role):
        from portal.auth.models import User

        if User.query.filter_by(username=username).first():
            click.echo(f'⚠️  User "{username}" already exists.')
            return

        user = User(name=name, username=username, role=role)
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        click.echo(f'✅  {role.value.capitalize()} user "{username}" created successfully.')

    @app.cli.command('seed-admin')
    @click.option('--name',     prompt='Full name',  help='Admin full name')
    @click.option('--username', prompt='Username',   help='Admin username')
    @click.option('--password', prompt=True, hide_input=True,
                  confirmation_prompt=True, help='Admin password')
    def seed_admin(name, username, password):
        """Create the initial admin user."""
        from portal.auth.models import RoleEnum
        _create_user(name, username, password, RoleEnum.admin)

    @app.cli.command('seed-barber')
    @click.option('--name',     prompt='Full name',  help='Barber full name')
    @click.option('--username', prompt='Username',   help='Barber username')
    @click.option('--password', prompt=True, hide_input=True,
                  confirmation_prompt=True, help='Barber password')
    def seed_barber(name, username, password):
        """Create a barber user."""
        from portal.auth.models import RoleEnum
        _create_user(name, username, password, RoleEnum.barber)

    @app.cli.command('import-visits')
    @click.argument('csv_file', type=click.File('r', encoding='utf-8-sig'))
    def import_visits_command(csv_file):
        """Bulk-load historical visits from a CSV file."""
        from portal.loyalty.importer import import_visits
        from portal.loyalty.service import loyalty_service

        summary = import_visits(loyalty_service(), csv_file)
        click.echo(f'✅  Imported {summary.imported} visit(s) '
                   f'for {len(summary.customers)} customer(s).')
        if summary.skipped:
            click.echo(f'⚠️  Skipped {len(summary.skipped)} row(s):')
            for line_no, reason in summary.skipped:
                click.echo(f'    line {line_no}: {reason}')

    @app.cli.command('recompute-stats')
    def recompute_stats():
        """Rebuild the cached listing stats for every customer."""
        from portal.loyalty.service import loyalty_service

        count = loyalty_service().rebuild_stats()
        click.echo(f'✅  Stats rebuilt for {count} customer(s).')

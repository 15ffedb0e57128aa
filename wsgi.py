import os

from portal import create_app, db

config_name = os.environ.get('FLASK_ENV', 'production')
app = create_app(config_name)

# ── Schema bootstrap ──
# Creates missing tables on startup; staff users are seeded with
# `flask seed-admin` / `flask seed-barber`.
with app.app_context():
    db.create_all()

if __name__ == "__main__":
    app.run()

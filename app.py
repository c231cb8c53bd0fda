from flask import Flask, jsonify
from datetime import date
import logging
import os

import click

from config import config
from models import db, User, init_default_data
from blueprints.auth import load_current_user
from blueprints import auth_bp, organizer_bp, player_bp, admin_bp
from settlement.errors import SettlementError
from settlement.payouts import sweep_overdue


def configure_logging(app):
    level = getattr(logging, str(app.config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
    )
    app.logger.setLevel(level)
    logging.getLogger('settlement').setLevel(level)


def register_error_handlers(app):
    @app.errorhandler(SettlementError)
    def handle_settlement_error(error):
        app.logger.warning('%s: %s %s', error.code, error.message, error.details)
        return jsonify(error.to_dict()), error.status_code


def register_commands(app):
    @app.cli.command('sweep-payouts')
    @click.option('--as-of', default=None, help='Evaluate overdue payouts as of YYYY-MM-DD.')
    def sweep_payouts(as_of):
        """Notify admins about overdue organizer payouts."""
        as_of_date = date.fromisoformat(as_of) if as_of else None
        queued = sweep_overdue(as_of_date)
        click.echo(f'{queued} overdue payout notification(s) queued.')

    @app.cli.command('init-db')
    def init_db_command():
        """Create tables and seed the admin account."""
        db.create_all()
        init_default_data()
        click.echo('Database initialized.')


def create_app(config_name=None, overrides=None):
    app = Flask(__name__)

    config_name = config_name or os.environ.get('FLASK_CONFIG', 'default')
    app.config.from_object(config[config_name])
    if overrides:
        app.config.update(overrides)

    configure_logging(app)

    db.init_app(app)

    with app.app_context():
        db.create_all()
        # Seed defaults only if critical records are missing
        if not app.config.get('TESTING') and not User.query.filter_by(username='admin').first():
            init_default_data()
            app.logger.info('Seeded default admin account')

    # Register blueprints
    app.register_blueprint(auth_bp)
    app.register_blueprint(organizer_bp)
    app.register_blueprint(player_bp)
    app.register_blueprint(admin_bp)

    @app.before_request
    def before_request():
        """Load current user before every request to ANY route"""
        load_current_user()

    @app.route('/health')
    def health():
        return jsonify({'status': 'ok'})

    register_error_handlers(app)
    register_commands(app)

    return app


if __name__ == "__main__":
    create_app().run(debug=True, port=5000)

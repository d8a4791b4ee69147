import logging
import time

from flask import Flask, jsonify
from flask_wtf.csrf import CSRFProtect, generate_csrf
from postgrest.exceptions import APIError
from werkzeug.exceptions import HTTPException

import config
from balance_service import BalanceService
from db import get_supabase
from errors import PlatformError
from finance import utcnow
from investment_service import InvestmentService
from network_health import check_store_health
from routes.admin import admin_bp
from routes.balance import balance_bp
from routes.investments import investments_bp

logging.basicConfig(
    level=config.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

csrf = CSRFProtect()


def create_app(supabase=None, clock=utcnow, sleep=time.sleep, test_config=None):
    app = Flask(__name__)
    app.secret_key = config.FLASK_SECRET_KEY
    if test_config:
        app.config.update(test_config)

    csrf.init_app(app)

    supabase = supabase if supabase is not None else get_supabase()
    balances = BalanceService(supabase, clock=clock, sleep=sleep)
    app.extensions['balance_service'] = balances
    app.extensions['investment_service'] = InvestmentService(supabase, balance_service=balances, clock=clock)

    # Register blueprints
    app.register_blueprint(balance_bp)
    app.register_blueprint(investments_bp)
    app.register_blueprint(admin_bp)

    register_error_handlers(app)
    register_commands(app)

    @app.route('/health')
    def health():
        status = check_store_health(supabase)
        return jsonify(status), 200 if status['is_healthy'] else 503

    @app.route('/api/csrf-token')
    def csrf_token():
        return jsonify({'csrf_token': generate_csrf()})

    return app


def register_error_handlers(app):
    @app.errorhandler(PlatformError)
    def handle_platform_error(e):
        if e.status_code >= 500:
            logger.error("%s: %s", type(e).__name__, e)
        return jsonify({'success': False, 'message': e.user_message}), e.status_code

    @app.errorhandler(APIError)
    def handle_api_error(e):
        logger.exception("Supabase error: %s", e.message)
        return jsonify({'success': False, 'message': 'An error occurred. Please try again.'}), 500

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        if isinstance(e, HTTPException):
            return e
        logger.exception("Unhandled error")
        return jsonify({'success': False, 'message': 'An unexpected error occurred.'}), 500


def register_commands(app):
    """Entry points for the external scheduler (cron, Supabase schedule...)."""

    @app.cli.command('apply-compounding')
    def apply_compounding():
        result = app.extensions['investment_service'].apply_weekly_compounding()
        print(f"Processed {result['processed_count']} investments, "
              f"{result['total_profit_applied']} profit applied, {len(result['errors'])} errors")
        for error in result['errors']:
            print(f"  {error}")

    @app.cli.command('process-maturities')
    def process_maturities():
        result = app.extensions['investment_service'].run_maturity_workflow()
        print(f"Flagged {result['status_updated']}, paid out {result['investments_processed']} "
              f"investments totalling {result['total_payout']}, {len(result['errors'])} errors")
        for error in result['errors']:
            print(f"  {error}")


if __name__ == '__main__':
    from waitress import serve

    port = config.PORT
    logger.info("Serving on port %d", port)
    serve(create_app(), host="0.0.0.0", port=port)

import logging
import uuid

from flask import Blueprint, jsonify, request, session

from errors import ValidationError
from routes.helpers import admin_required, balance_service, investment_service, parse_amount

logger = logging.getLogger(__name__)

# Create Blueprint
admin_bp = Blueprint('admin', __name__, url_prefix='/api/admin')


# Compounding

@admin_bp.route('/compounding/run', methods=['POST'])
@admin_required
def run_compounding():
    result = investment_service().apply_weekly_compounding()
    logger.info("Compounding triggered by %s: %d processed", session['user_id'], result['processed_count'])
    return jsonify({'success': True, **result})


@admin_bp.route('/compounding/run-server', methods=['POST'])
@admin_required
def run_server_compounding():
    results = investment_service().run_server_compounding()
    return jsonify({'success': True, 'results': results})


@admin_bp.route('/compounding/stats')
@admin_required
def compounding_stats():
    return jsonify({'success': True, 'stats': investment_service().get_compounding_stats()})


# Maturity

@admin_bp.route('/maturity/run', methods=['POST'])
@admin_required
def run_maturity():
    result = investment_service().run_maturity_workflow()
    logger.info("Maturity workflow triggered by %s: %d processed",
                session['user_id'], result['investments_processed'])
    return jsonify({'success': True, **result})


@admin_bp.route('/maturity/stats')
@admin_required
def maturity_stats():
    return jsonify({'success': True, 'stats': investment_service().get_maturity_stats()})


# Balance adjustments

@admin_bp.route('/balances/<user_id>/adjust', methods=['POST'])
@admin_required
def adjust_balance(user_id):
    """Deposit, withdrawal, referral bonus or manual correction for one user."""
    data = request.get_json(silent=True) or {}
    amount = parse_amount(data.get('amount'))
    transaction_type = data.get('transaction_type', 'admin_adjustment')
    reference_id = data.get('reference_id') or str(uuid.uuid4())
    description = data.get('description')

    service = balance_service()
    if transaction_type == 'deposit':
        new_balance = service.add_deposit(user_id, amount, reference_id, description)
    elif transaction_type == 'withdrawal':
        new_balance = service.process_withdrawal(user_id, amount, reference_id, description)
    elif transaction_type == 'referral_bonus':
        new_balance = service.add_referral_bonus(user_id, amount, reference_id, description)
    elif transaction_type == 'admin_adjustment':
        new_balance = service.record_external_adjustment(
            user_id, amount, 'admin_adjustment', reference_id,
            description or f"Manual adjustment by {session['user_id']}"
        )
    else:
        raise ValidationError(f'Unsupported transaction type: {transaction_type}')

    return jsonify({
        'success': True,
        'message': 'Balance updated successfully',
        'available_balance': new_balance,
        'reference_id': reference_id
    })

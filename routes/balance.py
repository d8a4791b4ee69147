from flask import Blueprint, jsonify, request, session

from routes.helpers import balance_service, login_required, parse_int

# Create Blueprint
balance_bp = Blueprint('balance', __name__, url_prefix='/api/balance')


@balance_bp.route('/summary')
@login_required
def summary():
    """Balance plus active investment totals; falls back to a recalculation."""
    data = balance_service().get_balance_summary(session['user_id'])
    return jsonify({'success': True, 'summary': data})


@balance_bp.route('/')
@login_required
def current_balance():
    data = balance_service().get_user_balance(session['user_id'])
    return jsonify({'success': True, 'balance': data})


@balance_bp.route('/transactions')
@login_required
def transactions():
    limit = min(max(parse_int(request.args.get('limit'), 50), 1), 200)
    offset = max(parse_int(request.args.get('offset'), 0), 0)

    history = balance_service().get_transaction_history(session['user_id'], limit=limit, offset=offset)
    return jsonify({'success': True, 'transactions': history, 'limit': limit, 'offset': offset})


@balance_bp.route('/history')
@login_required
def history():
    days = min(max(parse_int(request.args.get('days'), 30), 1), 365)
    points = balance_service().get_balance_history(session['user_id'], days=days)
    return jsonify({'success': True, 'history': points})

from flask import Blueprint, jsonify, request, session

import config
from errors import InvalidAmount, InvalidDuration, InvestmentNotFound, PlanNotFound, ValidationError
from finance import (
    calculate_projected_maturity_value,
    calculate_projected_returns,
    duration_options,
    money,
    to_decimal,
)
from routes.helpers import investment_service, login_required, parse_amount, parse_int

# Create Blueprint
investments_bp = Blueprint('investments', __name__, url_prefix='/api/investments')


def _payload():
    return request.get_json(silent=True) or {}


# Plans and calculator

@investments_bp.route('/plans')
@login_required
def plans():
    return jsonify({'success': True, 'plans': investment_service().get_investment_plans()})


@investments_bp.route('/durations')
@login_required
def durations():
    return jsonify({'success': True, 'durations': duration_options()})


@investments_bp.route('/calculator', methods=['POST'])
@login_required
def calculator():
    """Projected value and week-by-week schedule for a plan (or a raw rate)."""
    data = _payload()
    amount = parse_amount(data.get('amount'))
    if amount <= 0:
        raise InvalidAmount()

    weeks = parse_int(data.get('duration_weeks'), config.DEFAULT_DURATION_WEEKS, InvalidDuration)
    if weeks < 1:
        raise InvalidDuration()

    if data.get('plan_id'):
        plan = investment_service().get_plan(data['plan_id'])
        if not plan:
            raise PlanNotFound()
        weekly_rate = to_decimal(plan['weekly_profit_percent'])
    elif data.get('weekly_profit_percent') is not None:
        weekly_rate = parse_amount(data['weekly_profit_percent'])
    else:
        raise ValidationError('Select a plan or enter a weekly profit rate')

    projected = calculate_projected_maturity_value(amount, weekly_rate, weeks)
    return jsonify({
        'success': True,
        'amount': amount,
        'duration_weeks': weeks,
        'weekly_profit_percent': weekly_rate,
        'projected_maturity_value': projected,
        'total_profit': money(projected - amount),
        'schedule': calculate_projected_returns(amount, weekly_rate, weeks)
    })


# Investments

@investments_bp.route('/')
@login_required
def list_investments():
    status = request.args.get('status') or None
    investments = investment_service().get_user_investments(session['user_id'], status=status)
    return jsonify({'success': True, 'investments': investments})


@investments_bp.route('/', methods=['POST'])
@login_required
def create_investment():
    data = _payload()
    plan_id = data.get('plan_id')
    if not plan_id:
        raise ValidationError('Please select an investment plan')

    investment = investment_service().create_investment(
        plan_id,
        parse_amount(data.get('amount')),
        session['user_id'],
        parse_int(data.get('duration_weeks'), None, InvalidDuration)
    )
    return jsonify({
        'success': True,
        'message': 'Investment created successfully',
        'investment': investment
    }), 201


@investments_bp.route('/stats')
@login_required
def stats():
    return jsonify({'success': True, 'stats': investment_service().get_user_investment_stats(session['user_id'])})


@investments_bp.route('/<investment_id>')
@login_required
def get_investment(investment_id):
    investment = investment_service().get_investment(investment_id, session['user_id'])
    if not investment:
        raise InvestmentNotFound()
    return jsonify({'success': True, 'investment': investment})


@investments_bp.route('/<investment_id>/compounds')
@login_required
def compounds(investment_id):
    history = investment_service().get_investment_compounds(investment_id, session['user_id'])
    return jsonify({'success': True, 'compounds': history})


# Status changes

@investments_bp.route('/<investment_id>/pause', methods=['POST'])
@login_required
def pause(investment_id):
    investment = investment_service().pause_investment(investment_id, session['user_id'])
    return jsonify({'success': True, 'message': 'Investment paused', 'investment': investment})


@investments_bp.route('/<investment_id>/resume', methods=['POST'])
@login_required
def resume(investment_id):
    investment = investment_service().resume_investment(investment_id, session['user_id'])
    return jsonify({'success': True, 'message': 'Investment resumed', 'investment': investment})


@investments_bp.route('/<investment_id>/early-withdrawal', methods=['POST'])
@login_required
def early_withdrawal(investment_id):
    result = investment_service().process_early_withdrawal(investment_id, session['user_id'])
    return jsonify({
        'success': True,
        'message': f"Withdrawal successful. {result['withdrawal_amount']} added to your balance.",
        **result
    })


@investments_bp.route('/<investment_id>/mature', methods=['POST'])
@login_required
def mature(investment_id):
    result = investment_service().process_maturity(investment_id, session['user_id'])
    return jsonify({
        'success': True,
        'message': f"Investment matured. {result['maturity_amount']} added to your balance.",
        **result
    })


@investments_bp.route('/<investment_id>/reinvest', methods=['POST'])
@login_required
def reinvest(investment_id):
    data = _payload()
    investment = investment_service().reinvest(
        investment_id,
        session['user_id'],
        data.get('option', 'full'),
        new_plan_id=data.get('plan_id'),
        duration_weeks=parse_int(data.get('duration_weeks'), None, InvalidDuration)
    )
    return jsonify({
        'success': True,
        'message': 'Reinvestment created successfully',
        'investment': investment
    }), 201

import logging
from decimal import Decimal, InvalidOperation
from functools import wraps

from flask import current_app, jsonify, session

from db import execute
from errors import InvalidAmount, ValidationError
from finance import money

logger = logging.getLogger(__name__)


def balance_service():
    return current_app.extensions['balance_service']


def investment_service():
    return current_app.extensions['investment_service']


# Member login required decorator
def login_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not session.get('user_id'):
            return jsonify({'success': False, 'message': 'Please login to continue'}), 401
        return f(*args, **kwargs)
    return decorated_function


# Admin required decorator; the role is checked on the server every time
def admin_required(f):
    @wraps(f)
    @login_required
    def decorated_function(*args, **kwargs):
        user_id = session['user_id']
        supabase = investment_service().supabase
        response = execute(supabase.rpc('has_role', {'_user_id': user_id, '_role': 'admin'}))
        if response.data is not True:
            logger.warning("Admin access denied for %s", user_id)
            return jsonify({'success': False, 'message': 'Admin access required'}), 403
        return f(*args, **kwargs)
    return decorated_function


def parse_amount(value):
    """Read a money amount from request JSON, rejecting junk with InvalidAmount."""
    try:
        return money(value)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidAmount('Please enter a valid amount')


def parse_int(value, default, error=ValidationError):
    """Whole number from a query string or JSON body; fractions are rejected, not truncated."""
    if value is None or value == '':
        return default
    if isinstance(value, bool):
        raise error(f'Invalid number: {value}')
    try:
        number = Decimal(str(value).strip())
    except InvalidOperation:
        raise error(f'Invalid number: {value}')
    if not number.is_finite() or number != number.to_integral_value():
        raise error(f'Whole number expected: {value}')
    return int(number)

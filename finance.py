"""Pure money and date helpers for investments and balances.

Nothing in here talks to Supabase. Amounts are ``Decimal`` rounded to cents
with ROUND_HALF_UP, timestamps are timezone-aware UTC datetimes. Functions that
depend on the current time accept an optional ``now`` so callers (and tests)
can pin it.
"""
import math
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP

CENT = Decimal('0.01')
HUNDRED = Decimal('100')

TRANSACTION_TYPES = (
    'deposit',
    'withdrawal',
    'investment_deduction',
    'maturity_payout',
    'early_withdrawal',
    'referral_bonus',
    'admin_adjustment',
)

TRANSACTION_TYPE_LABELS = {
    'deposit': 'Deposit',
    'withdrawal': 'Withdrawal',
    'investment_deduction': 'Investment',
    'investment_return': 'Investment Return',
    'early_withdrawal': 'Early Withdrawal',
    'maturity_payout': 'Maturity Payout',
    'referral_bonus': 'Referral Bonus',
    'admin_adjustment': 'Admin Adjustment',
}

DURATION_OPTIONS = (
    (4, '1 Month'),
    (12, '3 Months'),
    (24, '6 Months'),
    (48, '12 Months'),
)

REINVEST_OPTIONS = ('full', 'principal', 'profit')


def to_decimal(value) -> Decimal:
    """Parse whatever PostgREST hands back (float, int, str or None)."""
    if value is None or value == '':
        return Decimal('0')
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def money(value) -> Decimal:
    """Always return 2-decimal Decimal with HALF_UP rounding."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value):
    if value is None or value == '':
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


# Compounding

def calculate_compound_profit(balance, weekly_profit_percent) -> Decimal:
    return money(to_decimal(balance) * to_decimal(weekly_profit_percent) / HUNDRED)


def calculate_projected_maturity_value(amount, weekly_profit_percent, duration_weeks) -> Decimal:
    """
    Compound ``amount`` once per week, rounding to cents after every period.

    Example:
      amount=800, rate=10, weeks=4 => 1171.28
    """
    balance = money(amount)
    for _ in range(int(duration_weeks)):
        balance = balance + calculate_compound_profit(balance, weekly_profit_percent)
    return balance


def calculate_projected_returns(amount, weekly_profit_percent, weeks):
    """Week-by-week schedule: [{'week', 'balance', 'profit'}, ...]"""
    results = []
    balance = money(amount)
    for week in range(1, int(weeks) + 1):
        profit = calculate_compound_profit(balance, weekly_profit_percent)
        balance = balance + profit
        results.append({'week': week, 'balance': balance, 'profit': profit})
    return results


# Maturity and progress

def is_matured(maturity_date, now=None) -> bool:
    maturity = parse_timestamp(maturity_date)
    if maturity is None:
        return False
    return (now or utcnow()) >= maturity


def _days_until(target, now=None) -> int:
    target = parse_timestamp(target)
    if target is None:
        return 0
    seconds = (target - (now or utcnow())).total_seconds()
    return max(0, math.ceil(seconds / 86400))


def days_until_maturity(maturity_date, now=None) -> int:
    return _days_until(maturity_date, now)


def days_until_next_compound(next_compound_date, now=None) -> int:
    return _days_until(next_compound_date, now)


def progress_percent(start_date, maturity_date, now=None) -> float:
    """Elapsed share of the term, clamped to [0, 100]."""
    start = parse_timestamp(start_date)
    maturity = parse_timestamp(maturity_date)
    now = now or utcnow()

    total = (maturity - start).total_seconds()
    if total <= 0:
        return 100.0 if now >= maturity else 0.0

    elapsed = (now - start).total_seconds()
    return min(100.0, max(0.0, elapsed / total * 100))


# Early withdrawal

def early_withdrawal_amount(current_balance, penalty_percent) -> Decimal:
    amount = money(to_decimal(current_balance) * (1 - to_decimal(penalty_percent) / HUNDRED))
    return max(Decimal('0.00'), amount)


def early_withdrawal_penalty(current_balance, penalty_percent) -> Decimal:
    # Whatever is not paid out is the penalty, so the two always add up
    return money(current_balance) - early_withdrawal_amount(current_balance, penalty_percent)


# Reinvestment

def reinvestment_options(investment):
    """Amounts a completed investment can be redeployed with."""
    full = money(investment.get('current_balance'))
    principal = money(investment.get('invested_amount'))
    profit = max(Decimal('0.00'), full - principal)
    return {'full': full, 'principal': principal, 'profit': profit}


def duration_options():
    return [{'value': weeks, 'label': label, 'weeks': weeks} for weeks, label in DURATION_OPTIONS]


# Formatting (en-US, USD)

def format_currency(amount) -> str:
    value = money(amount)
    sign = '-' if value < 0 else ''
    return f"{sign}${abs(value):,.2f}"


def format_percentage(percent) -> str:
    value = to_decimal(percent).normalize()
    return f"{value:f}%"


def format_transaction_type(transaction_type) -> str:
    return TRANSACTION_TYPE_LABELS.get(transaction_type, transaction_type)

"""User balance ledger.

Each user has one ``user_balances`` row holding two buckets, available and
invested, and every change to it is mirrored by an append-only
``balance_transactions`` row carrying the available balance before and after.

Investment deductions use an optimistic read-modify-write: the update only
matches while ``available_balance`` still equals the value we read, and a
miss is retried with a growing delay. Every other mutation goes through the
``apply_balance_delta`` RPC, which updates the row and writes the audit entry
in one server-side transaction.
"""
import logging
import time
from datetime import timedelta
from decimal import Decimal

from postgrest.exceptions import APIError

import config
from db import get_supabase, execute
from errors import (
    BalanceConflict,
    InsufficientBalance,
    InvalidAmount,
    StoreUnavailable,
    ValidationError,
    is_conflict_error,
    is_insufficient_funds_error,
)
from finance import (
    early_withdrawal_amount,
    early_withdrawal_penalty,
    money,
    parse_timestamp,
    utcnow,
)
from signals import balance_changed

logger = logging.getLogger(__name__)

BALANCE_FIELDS = ('available_balance', 'invested_balance')

# Adjustments that come from outside the investment lifecycle
EXTERNAL_ADJUSTMENT_TYPES = ('deposit', 'withdrawal', 'referral_bonus', 'admin_adjustment')


def empty_summary():
    zero = Decimal('0.00')
    return {
        'available_balance': zero,
        'invested_balance': zero,
        'total_balance': zero,
        'active_investments_count': 0,
        'total_invested': zero,
        'total_profit_earned': zero,
    }


class BalanceService:
    def __init__(self, supabase=None, clock=utcnow, sleep=time.sleep,
                 max_retries=None, retry_delay=None):
        self.supabase = supabase if supabase is not None else get_supabase()
        self.clock = clock
        self.sleep = sleep
        self.max_retries = config.BALANCE_WRITE_MAX_RETRIES if max_retries is None else max_retries
        self.retry_delay = config.BALANCE_RETRY_BASE_DELAY_SECONDS if retry_delay is None else retry_delay
        if self.max_retries < 1:
            raise ValueError('max_retries must be at least 1')

    # Reads

    def _fetch_balance_row(self, user_id):
        response = execute(
            self.supabase.table('user_balances')
            .select('*')
            .eq('user_id', user_id)
            .limit(1)
        )
        return response.data[0] if response.data else None

    def get_user_balance(self, user_id):
        row = self._fetch_balance_row(user_id) or {}
        available = money(row.get('available_balance'))
        invested = money(row.get('invested_balance'))
        return {
            'available': available,
            'invested': invested,
            'total': available + invested,
        }

    def has_sufficient_balance(self, user_id, amount):
        return self.get_user_balance(user_id)['available'] >= money(amount)

    def get_balance_summary(self, user_id):
        """
        Balance plus totals over active investments.

        If Supabase times out or cannot be reached, the summary is rebuilt from
        deposits, withdrawals and investments instead. If that fails too an
        all-zero summary is returned so the dashboard still renders.
        """
        try:
            return self._fetch_balance_summary(user_id)
        except StoreUnavailable:
            logger.warning("Balance read for %s failed, recalculating from source tables", user_id)

        try:
            return self.recalculate_user_balance(user_id)
        except Exception:
            logger.exception("Fallback balance calculation also failed for %s", user_id)
            return empty_summary()

    def _fetch_balance_summary(self, user_id):
        row = self._fetch_balance_row(user_id) or {}

        investments = execute(
            self.supabase.table('investments')
            .select('invested_amount, total_profit_earned, status')
            .eq('user_id', user_id)
        ).data or []
        active = [inv for inv in investments if inv.get('status') == 'active']

        available = money(row.get('available_balance'))
        invested = money(row.get('invested_balance'))
        return {
            'available_balance': available,
            'invested_balance': invested,
            'total_balance': available + invested,
            'active_investments_count': len(active),
            'total_invested': sum((money(inv['invested_amount']) for inv in active), Decimal('0.00')),
            'total_profit_earned': sum((money(inv['total_profit_earned']) for inv in active), Decimal('0.00')),
        }

    def recalculate_user_balance(self, user_id):
        """
        Estimate the balance from approved deposits, wallet withdrawals and
        active investments.

        Read-only: the estimate is returned and never written back.
        """
        deposits = execute(
            self.supabase.table('deposits')
            .select('amount')
            .eq('user_id', user_id)
            .eq('status', 'approved')
        ).data or []

        withdrawals = execute(
            self.supabase.table('withdrawals')
            .select('amount')
            .eq('user_id', user_id)
            .eq('status', 'completed')
            .eq('withdrawal_type', 'wallet')
        ).data or []

        investments = execute(
            self.supabase.table('investments')
            .select('invested_amount, total_profit_earned, status')
            .eq('user_id', user_id)
            .eq('status', 'active')
        ).data or []

        total_deposits = sum((money(d['amount']) for d in deposits), Decimal('0.00'))
        total_withdrawals = sum((money(w['amount']) for w in withdrawals), Decimal('0.00'))
        available = max(Decimal('0.00'), total_deposits - total_withdrawals)
        invested = sum((money(inv['invested_amount']) for inv in investments), Decimal('0.00'))
        total_profit = sum((money(inv['total_profit_earned']) for inv in investments), Decimal('0.00'))

        return {
            'available_balance': available,
            'invested_balance': invested,
            'total_balance': available + invested,
            'active_investments_count': len(investments),
            'total_invested': invested,
            'total_profit_earned': total_profit,
        }

    def get_transaction_history(self, user_id, limit=50, offset=0):
        response = execute(
            self.supabase.table('balance_transactions')
            .select('*')
            .eq('user_id', user_id)
            .order('created_at', desc=True)
            .range(offset, offset + limit - 1)
        )
        return response.data or []

    def get_balance_history(self, user_id, days=30):
        since = (self.clock() - timedelta(days=days)).isoformat()
        response = execute(
            self.supabase.table('balance_transactions')
            .select('created_at, balance_after')
            .eq('user_id', user_id)
            .gte('created_at', since)
            .order('created_at')
        )
        return [
            {
                'date': parse_timestamp(t['created_at']).date().isoformat(),
                'balance': money(t['balance_after']),
            }
            for t in response.data or []
        ]

    def calculate_total_profit(self, user_id):
        response = execute(
            self.supabase.table('investments')
            .select('total_profit_earned')
            .eq('user_id', user_id)
            .eq('status', 'active')
        )
        return sum((money(inv['total_profit_earned']) for inv in response.data or []), Decimal('0.00'))

    # Optimistic deduction

    def _ensure_balance_row(self, user_id):
        row = self._fetch_balance_row(user_id)
        if row is not None:
            return row

        now = self.clock().isoformat()
        execute(
            self.supabase.table('user_balances').upsert({
                'user_id': user_id,
                'available_balance': 0,
                'invested_balance': 0,
                'created_at': now,
                'updated_at': now
            }, on_conflict='user_id', ignore_duplicates=True)
        )
        logger.info("Created empty balance row for %s", user_id)
        return self._fetch_balance_row(user_id) or {'available_balance': 0, 'invested_balance': 0}

    def _compare_and_set(self, user_id, witness, new_available, new_invested):
        """Write the new balances only if available_balance still equals ``witness``."""
        response = execute(
            self.supabase.table('user_balances')
            .update({
                'available_balance': float(new_available),
                'invested_balance': float(new_invested),
                'updated_at': self.clock().isoformat()
            })
            .eq('user_id', user_id)
            .eq('available_balance', str(witness))
        )
        return bool(response.data)

    def _record_transaction(self, user_id, transaction_type, amount, balance_before,
                            balance_after, reference_id, description):
        transaction_data = {
            'user_id': user_id,
            'transaction_type': transaction_type,
            'amount': float(amount),
            'balance_before': float(balance_before),
            'balance_after': float(balance_after),
            'reference_id': reference_id,
            'description': description,
            'created_at': self.clock().isoformat()
        }
        try:
            response = execute(self.supabase.table('balance_transactions').insert(transaction_data))
            return response.data[0] if response.data else None
        except (APIError, StoreUnavailable) as e:
            # The balance row has already moved; leave enough in the log to reconcile by hand
            logger.critical("Balance updated but audit row missing: %s (%s)", transaction_data, e)
            return None

    def deduct_for_investment(self, user_id, amount, investment_ref):
        """
        Move ``amount`` from available to invested for a new investment.

        Returns {'new_balance', 'transaction_id'}. Raises InsufficientBalance
        before touching anything, or BalanceConflict once every retry lost
        the race against another writer.
        """
        amount = money(amount)
        if amount <= 0:
            raise InvalidAmount()

        if not self.has_sufficient_balance(user_id, amount):
            raise InsufficientBalance()

        for attempt in range(1, self.max_retries + 1):
            row = self._ensure_balance_row(user_id)
            available = money(row.get('available_balance'))
            invested = money(row.get('invested_balance'))

            if available < amount:
                raise InsufficientBalance()

            new_available = available - amount
            new_invested = invested + amount

            try:
                updated = self._compare_and_set(user_id, available, new_available, new_invested)
            except APIError as e:
                if not is_conflict_error(e):
                    raise
                updated = False

            if updated:
                transaction = self._record_transaction(
                    user_id, 'investment_deduction', -amount, available, new_available,
                    investment_ref, 'Investment deduction for new investment'
                )
                logger.info("Deducted %s from %s for investment %s", amount, user_id, investment_ref)
                balance_changed.send(user_id, transaction_type='investment_deduction',
                                     amount=-amount, reference_id=investment_ref)
                return {
                    'new_balance': new_available,
                    'transaction_id': transaction.get('id') if transaction else None,
                }

            logger.warning("Balance update conflict for %s, retrying... (%d/%d)",
                           user_id, attempt, self.max_retries)
            if attempt < self.max_retries:
                self.sleep(self.retry_delay * attempt)

        raise BalanceConflict(f"Balance for {user_id} kept changing after {self.max_retries} attempts")

    # Atomic deltas

    def apply_deltas(self, user_id, transaction_type, reference_id, available_delta=0,
                     invested_delta=0, description=None, amount=None):
        """
        Apply signed deltas to both buckets in one server-side call.

        The RPC floors invested_balance at zero, refuses to take
        available_balance below zero and appends the audit row. Returns the
        RPC row: available_balance, invested_balance, balance_before,
        balance_after, transaction_id.
        """
        available_delta = money(available_delta)
        invested_delta = money(invested_delta)
        if amount is None:
            amount = available_delta if available_delta else invested_delta

        params = {
            'p_user_id': user_id,
            'p_available_delta': float(available_delta),
            'p_invested_delta': float(invested_delta),
            'p_transaction_type': transaction_type,
            'p_amount': float(money(amount)),
            'p_reference_id': reference_id,
            'p_description': description,
        }

        for attempt in range(1, self.max_retries + 1):
            try:
                response = execute(self.supabase.rpc('apply_balance_delta', params))
                break
            except APIError as e:
                if is_insufficient_funds_error(e):
                    raise InsufficientBalance() from e
                if not is_conflict_error(e):
                    raise
                if attempt == self.max_retries:
                    raise BalanceConflict() from e
                logger.warning("apply_balance_delta conflict for %s, retrying... (%d/%d)",
                               user_id, attempt, self.max_retries)
                self.sleep(self.retry_delay * attempt)

        row = response.data[0] if isinstance(response.data, list) else response.data
        logger.info("Applied %s for %s: available %+.2f, invested %+.2f (ref %s)",
                    transaction_type, user_id, available_delta, invested_delta, reference_id)
        balance_changed.send(user_id, transaction_type=transaction_type,
                             amount=money(amount), reference_id=reference_id)
        return row

    def apply_signed_delta(self, user_id, field, delta, transaction_type, reference_id, description=None):
        """Atomically add ``delta`` to one balance field and return its new value."""
        if field not in BALANCE_FIELDS:
            raise ValidationError(f"Unknown balance field: {field}")

        key = 'available_delta' if field == 'available_balance' else 'invested_delta'
        row = self.apply_deltas(user_id, transaction_type, reference_id,
                                description=description, **{key: delta})
        return money(row[field])

    # Lifecycle credits

    def credit_maturity_payout(self, user_id, maturity_amount, original_principal, investment_ref):
        maturity_amount = money(maturity_amount)
        row = self.apply_deltas(
            user_id, 'maturity_payout', investment_ref,
            available_delta=maturity_amount,
            invested_delta=-money(original_principal),
            description='Investment maturity payout'
        )
        return {
            'payout_amount': maturity_amount,
            'new_balance': money(row['available_balance']),
            'transaction_id': row.get('transaction_id'),
        }

    def credit_early_withdrawal(self, user_id, current_investment_balance, penalty_percent, investment_ref):
        """
        Pay out an investment closed before maturity.

        The penalty is simply not credited anywhere; invested_balance drops by
        the whole current investment balance.
        """
        current_investment_balance = money(current_investment_balance)
        withdrawal_amount = early_withdrawal_amount(current_investment_balance, penalty_percent)
        penalty_amount = early_withdrawal_penalty(current_investment_balance, penalty_percent)

        row = self.apply_deltas(
            user_id, 'early_withdrawal', investment_ref,
            available_delta=withdrawal_amount,
            invested_delta=-current_investment_balance,
            description=f'Early withdrawal with {penalty_percent}% penalty applied'
        )
        return {
            'withdrawal_amount': withdrawal_amount,
            'penalty_amount': penalty_amount,
            'transaction_id': row.get('transaction_id'),
        }

    def reverse_investment_deduction(self, user_id, amount, investment_ref):
        """Compensate a deduction whose investment row was never created."""
        amount = money(amount)
        return self.apply_deltas(
            user_id, 'admin_adjustment', investment_ref,
            available_delta=amount,
            invested_delta=-amount,
            description='Reversal of investment deduction (investment not created)'
        )

    # External adjustments

    def record_external_adjustment(self, user_id, amount, transaction_type, reference_id, description=None):
        """Signed change to available_balance for deposits, withdrawals, bonuses and admin fixes."""
        if transaction_type not in EXTERNAL_ADJUSTMENT_TYPES:
            raise ValidationError(f"Unsupported adjustment type: {transaction_type}")

        amount = money(amount)
        if amount == 0:
            raise InvalidAmount()
        if transaction_type in ('deposit', 'referral_bonus') and amount < 0:
            raise InvalidAmount(f"{transaction_type} amount must be positive")
        if transaction_type == 'withdrawal' and amount > 0:
            raise InvalidAmount('withdrawal amount must be negative')

        row = self.apply_deltas(user_id, transaction_type, reference_id,
                                available_delta=amount, description=description)
        return money(row['available_balance'])

    def add_deposit(self, user_id, amount, deposit_id, description=None):
        return self.record_external_adjustment(
            user_id, money(amount), 'deposit', deposit_id,
            description or 'Deposit added to balance'
        )

    def process_withdrawal(self, user_id, amount, withdrawal_id, description=None):
        amount = money(amount)
        if amount <= 0:
            raise InvalidAmount()
        if not self.has_sufficient_balance(user_id, amount):
            raise InsufficientBalance('Insufficient balance for withdrawal')
        return self.record_external_adjustment(
            user_id, -amount, 'withdrawal', withdrawal_id,
            description or 'Withdrawal processed'
        )

    def add_referral_bonus(self, user_id, amount, referral_id, description=None):
        return self.record_external_adjustment(
            user_id, money(amount), 'referral_bonus', referral_id,
            description or 'Referral bonus earned'
        )

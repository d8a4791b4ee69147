"""Investment lifecycle.

States::

    active -> paused | cancelled | completed
    paused -> active

``cancelled`` is reached only through early withdrawal and ``completed`` only
through maturity processing; neither is ever left. Funds move through the
balance ledger: the deduction happens before the investment row exists, and a
failed insert is compensated with an explicit reversal.
"""
import logging
import uuid
from datetime import timedelta
from decimal import Decimal

from postgrest.exceptions import APIError

import config
from balance_service import BalanceService
from db import get_supabase, execute
from errors import (
    AlreadyMatured,
    BelowMinimumAmount,
    InvalidAmount,
    InvalidDuration,
    InvalidTransition,
    InvestmentCreationFailed,
    InvestmentNotFound,
    InvestmentStateError,
    NotActive,
    NotYetMatured,
    PlanNotFound,
    PlatformError,
    StoreUnavailable,
    ValidationError,
)
from finance import (
    REINVEST_OPTIONS,
    calculate_compound_profit,
    calculate_projected_maturity_value,
    days_until_maturity,
    days_until_next_compound,
    early_withdrawal_amount,
    early_withdrawal_penalty,
    is_matured,
    money,
    parse_timestamp,
    progress_percent,
    reinvestment_options,
    utcnow,
)
from signals import investment_changed

logger = logging.getLogger(__name__)

STATUSES = ('active', 'paused', 'completed', 'cancelled')

# Transitions a user may request directly
USER_TRANSITIONS = {
    'active': ('paused',),
    'paused': ('active',),
}


class InvestmentService:
    def __init__(self, supabase=None, balance_service=None, clock=utcnow):
        self.supabase = supabase if supabase is not None else get_supabase()
        self.clock = clock
        self.balances = balance_service or BalanceService(self.supabase, clock=clock)

    # Plans

    def get_investment_plans(self):
        response = execute(
            self.supabase.table('investment_plans')
            .select('*')
            .eq('is_active', True)
            .order('min_amount')
        )
        return response.data or []

    def get_plan(self, plan_id):
        response = execute(
            self.supabase.table('investment_plans')
            .select('*')
            .eq('id', plan_id)
            .eq('is_active', True)
            .limit(1)
        )
        return response.data[0] if response.data else None

    def _get_plan_any_state(self, plan_id):
        response = execute(
            self.supabase.table('investment_plans')
            .select('*')
            .eq('id', plan_id)
            .limit(1)
        )
        return response.data[0] if response.data else None

    # Reads

    def _enrich(self, investment, now=None):
        """Recompute the time-derived fields instead of trusting stored flags."""
        now = now or self.clock()
        investment = dict(investment)
        investment['is_matured'] = is_matured(investment.get('maturity_date'), now)
        investment['days_until_maturity'] = days_until_maturity(investment.get('maturity_date'), now)
        investment['days_until_next_compound'] = days_until_next_compound(investment.get('next_compound_date'), now)
        if investment.get('start_date') and investment.get('maturity_date'):
            investment['progress_percent'] = progress_percent(
                investment['start_date'], investment['maturity_date'], now
            )
        return investment

    def get_user_investments(self, user_id, status=None):
        query = self.supabase.table('investments')\
            .select('*')\
            .eq('user_id', user_id)\
            .order('created_at', desc=True)
        if status:
            query = query.eq('status', status)

        now = self.clock()
        return [self._enrich(inv, now) for inv in execute(query).data or []]

    def get_investment(self, investment_id, user_id, now=None):
        response = execute(
            self.supabase.table('investments')
            .select('*')
            .eq('id', investment_id)
            .eq('user_id', user_id)
            .limit(1)
        )
        return self._enrich(response.data[0], now) if response.data else None

    def _require_investment(self, investment_id, user_id, now=None):
        investment = self.get_investment(investment_id, user_id, now)
        if investment is None:
            raise InvestmentNotFound()
        return investment

    def get_investment_compounds(self, investment_id, user_id):
        self._require_investment(investment_id, user_id)
        response = execute(
            self.supabase.table('investment_compounds')
            .select('*')
            .eq('investment_id', investment_id)
            .order('compound_date', desc=True)
        )
        return response.data or []

    def get_user_investment_stats(self, user_id):
        response = execute(
            self.supabase.table('investments')
            .select('invested_amount, current_balance, total_profit_earned, status')
            .eq('user_id', user_id)
        )
        stats = {
            'total_invested': Decimal('0.00'),
            'total_profit': Decimal('0.00'),
            'current_balance': Decimal('0.00'),
            'active_investments': 0,
        }
        for investment in response.data or []:
            stats['total_invested'] += money(investment['invested_amount'])
            stats['total_profit'] += money(investment['total_profit_earned'])
            stats['current_balance'] += money(investment['current_balance'])
            if investment['status'] == 'active':
                stats['active_investments'] += 1
        return stats

    # Creation

    def create_investment(self, plan_id, amount, user_id, duration_weeks=None):
        """
        Debit the ledger, then insert the investment row.

        If the insert fails after the debit went through, the debit is
        reversed and InvestmentCreationFailed is raised; ``compensated`` on the
        error says whether the reversal itself succeeded.
        """
        amount = money(amount)
        if amount <= 0:
            raise InvalidAmount()

        weeks = config.DEFAULT_DURATION_WEEKS if duration_weeks is None else int(duration_weeks)
        if weeks < 1:
            raise InvalidDuration()

        plan = self.get_plan(plan_id)
        if not plan:
            raise PlanNotFound()

        min_amount = money(plan['min_amount'])
        if amount < min_amount:
            raise BelowMinimumAmount(min_amount)

        weekly_rate = plan['weekly_profit_percent']
        penalty_percent = plan.get('early_withdrawal_penalty_percent')
        if penalty_percent is None:
            penalty_percent = config.DEFAULT_EARLY_WITHDRAWAL_PENALTY_PERCENT

        start_date = self.clock()
        maturity_date = start_date + timedelta(weeks=weeks)
        next_compound_date = start_date + timedelta(days=config.COMPOUNDING_PERIOD_DAYS)

        investment_id = str(uuid.uuid4())
        deduction = self.balances.deduct_for_investment(user_id, amount, investment_id)

        investment_data = {
            'id': investment_id,
            'user_id': user_id,
            'plan_id': plan_id,
            'invested_amount': float(amount),
            'current_balance': float(amount),
            'total_profit_earned': 0,
            'status': 'active',
            'start_date': start_date.isoformat(),
            'last_compound_date': start_date.isoformat(),
            'next_compound_date': next_compound_date.isoformat(),
            'end_date': maturity_date.isoformat(),
            'maturity_date': maturity_date.isoformat(),
            'user_selected_duration_weeks': weeks,
            'early_withdrawal_penalty_percent': float(money(penalty_percent)),
            'is_matured': False,
            'projected_maturity_value': float(
                calculate_projected_maturity_value(amount, weekly_rate, weeks)
            ),
            'created_at': start_date.isoformat(),
            'updated_at': start_date.isoformat()
        }

        try:
            response = execute(self.supabase.table('investments').insert(investment_data))
            if not response.data:
                raise InvestmentCreationFailed('Investment insert returned no row')
        except (APIError, StoreUnavailable, InvestmentCreationFailed) as e:
            logger.error("Error creating investment %s for %s: %s", investment_id, user_id, e)
            self._compensate_deduction(user_id, amount, investment_id, e)

        investment = response.data[0]
        logger.info("✅ Investment %s created for %s: %s over %d weeks (balance now %s)",
                    investment_id, user_id, amount, weeks, deduction['new_balance'])
        investment_changed.send(user_id, investment_id=investment_id, status='active')
        return self._enrich(investment, start_date)

    def _compensate_deduction(self, user_id, amount, investment_id, cause):
        try:
            self.balances.reverse_investment_deduction(user_id, amount, investment_id)
        except (APIError, PlatformError) as rollback_error:
            logger.critical(
                "Failed to reverse deduction of %s for %s (investment %s): %s",
                amount, user_id, investment_id, rollback_error
            )
            raise InvestmentCreationFailed(str(cause), compensated=False) from cause

        logger.warning("Reversed deduction of %s for %s after failed investment insert", amount, user_id)
        raise InvestmentCreationFailed(str(cause), compensated=True) from cause

    # Status transitions

    def _transition(self, investment, new_status, extra=None):
        """Move to ``new_status`` only if nobody changed the status since we read it."""
        update = {'status': new_status, 'updated_at': self.clock().isoformat()}
        if extra:
            update.update(extra)

        response = execute(
            self.supabase.table('investments')
            .update(update)
            .eq('id', investment['id'])
            .eq('user_id', investment['user_id'])
            .eq('status', investment['status'])
        )
        if not response.data:
            raise InvalidTransition(
                f"Investment {investment['id']} is no longer {investment['status']}"
            )

        investment_changed.send(investment['user_id'], investment_id=investment['id'], status=new_status)
        return response.data[0]

    def update_investment_status(self, investment_id, status, user_id):
        if status not in STATUSES:
            raise ValidationError(f"Unknown status: {status}")

        investment = self._require_investment(investment_id, user_id)
        if status not in USER_TRANSITIONS.get(investment['status'], ()):
            raise InvalidTransition(f"Cannot move investment from {investment['status']} to {status}")

        return self._enrich(self._transition(investment, status))

    def pause_investment(self, investment_id, user_id):
        return self.update_investment_status(investment_id, 'paused', user_id)

    def resume_investment(self, investment_id, user_id):
        return self.update_investment_status(investment_id, 'active', user_id)

    def process_early_withdrawal(self, investment_id, user_id):
        investment = self._require_investment(investment_id, user_id)

        if investment['status'] != 'active':
            raise NotActive('Investment is not active')
        if investment['is_matured']:
            raise AlreadyMatured()

        current_balance = money(investment['current_balance'])
        penalty_percent = investment['early_withdrawal_penalty_percent']
        withdrawal_amount = early_withdrawal_amount(current_balance, penalty_percent)
        penalty_amount = early_withdrawal_penalty(current_balance, penalty_percent)

        self._transition(investment, 'cancelled')

        try:
            credit = self.balances.credit_early_withdrawal(
                user_id, current_balance, penalty_percent, investment_id
            )
        except (APIError, PlatformError) as e:
            logger.critical("Investment %s cancelled but early withdrawal credit of %s failed: %s",
                            investment_id, withdrawal_amount, e)
            raise

        logger.info("Early withdrawal for %s: paid %s, penalty %s", investment_id, withdrawal_amount, penalty_amount)
        return {
            'withdrawal_amount': withdrawal_amount,
            'penalty_amount': penalty_amount,
            'transaction_id': credit.get('transaction_id'),
        }

    def process_maturity(self, investment_id, user_id, now=None):
        investment = self._require_investment(investment_id, user_id, now)

        if investment['status'] != 'active':
            raise NotActive('Investment is not active')
        if not investment['is_matured']:
            raise NotYetMatured()

        maturity_amount = money(investment['current_balance'])

        self._transition(investment, 'completed', {'is_matured': True})

        try:
            payout = self.balances.credit_maturity_payout(
                user_id, maturity_amount, investment['invested_amount'], investment_id
            )
        except (APIError, PlatformError) as e:
            logger.critical("Investment %s completed but maturity payout of %s failed: %s",
                            investment_id, maturity_amount, e)
            raise

        logger.info("Investment %s matured, paid %s to %s", investment_id, maturity_amount, user_id)
        return {
            'maturity_amount': maturity_amount,
            'transaction_id': payout.get('transaction_id'),
        }

    def reinvest(self, source_investment_id, user_id, option, new_plan_id=None, duration_weeks=None):
        """
        Start a new investment from a completed one.

        The payout already sits in available_balance, so this is an ordinary
        create funded from there; nothing is transferred directly.
        """
        if option not in REINVEST_OPTIONS:
            raise ValidationError(f"Reinvest option must be one of: {', '.join(REINVEST_OPTIONS)}")

        source = self._require_investment(source_investment_id, user_id)
        if source['status'] != 'completed':
            raise InvestmentStateError('Only completed investments can be reinvested')

        amount = reinvestment_options(source)[option]
        if amount <= 0:
            raise InvalidAmount('Nothing to reinvest for the selected option')

        return self.create_investment(
            new_plan_id or source['plan_id'],
            amount,
            user_id,
            source.get('user_selected_duration_weeks') if duration_weeks is None else duration_weeks
        )

    # Batch jobs

    def apply_weekly_compounding(self, now=None):
        """
        Credit one week of profit to every active investment that is due.

        Due means next_compound_date has passed and still falls within the
        term. Each update is filtered on the next_compound_date we read, so a
        second run, or a concurrent one, cannot apply the same period twice.
        """
        now = now or self.clock()
        result = {
            'processed_count': 0,
            'total_profit_applied': Decimal('0.00'),
            'errors': [],
            'results': [],
        }

        logger.info("Starting weekly compounding process...")
        investments = execute(
            self.supabase.table('investments')
            .select('*')
            .eq('status', 'active')
            .lte('next_compound_date', now.isoformat())
        ).data or []

        plans = {}
        for investment in investments:
            next_compound = parse_timestamp(investment['next_compound_date'])
            maturity = parse_timestamp(investment.get('maturity_date'))
            if maturity is not None and next_compound > maturity:
                continue

            try:
                plan_id = investment['plan_id']
                if plan_id not in plans:
                    plans[plan_id] = self._get_plan_any_state(plan_id)
                plan = plans[plan_id]
                if not plan:
                    raise PlanNotFound(f"Plan {plan_id} not found")

                compounded = self._compound_investment(investment, plan, next_compound, now)
            except (APIError, PlatformError) as e:
                logger.error("Error compounding investment %s: %s", investment['id'], e)
                result['errors'].append(f"Investment {investment['id']}: {e}")
                continue

            if compounded:
                result['processed_count'] += 1
                result['total_profit_applied'] += compounded['profit_amount']
                result['results'].append(compounded)

        logger.info("Weekly compounding completed. Processed: %d, Errors: %d",
                    result['processed_count'], len(result['errors']))
        return result

    def _compound_investment(self, investment, plan, next_compound, now):
        balance_before = money(investment['current_balance'])
        profit = calculate_compound_profit(balance_before, plan['weekly_profit_percent'])
        balance_after = balance_before + profit
        total_profit = money(investment['total_profit_earned']) + profit
        following = next_compound + timedelta(days=config.COMPOUNDING_PERIOD_DAYS)

        response = execute(
            self.supabase.table('investments')
            .update({
                'current_balance': float(balance_after),
                'total_profit_earned': float(total_profit),
                'last_compound_date': now.isoformat(),
                'next_compound_date': following.isoformat(),
                'updated_at': now.isoformat()
            })
            .eq('id', investment['id'])
            .eq('status', 'active')
            .eq('next_compound_date', investment['next_compound_date'])
        )
        if not response.data:
            # Another run got there first
            return None

        try:
            execute(
                self.supabase.table('investment_compounds').insert({
                    'investment_id': investment['id'],
                    'compound_date': now.isoformat(),
                    'balance_before': float(balance_before),
                    'profit_amount': float(profit),
                    'balance_after': float(balance_after)
                })
            )
        except (APIError, StoreUnavailable):
            self._undo_compound(investment, following)
            raise

        investment_changed.send(investment['user_id'], investment_id=investment['id'], status='active')
        return {
            'investment_id': investment['id'],
            'profit_amount': profit,
            'new_balance': balance_after,
        }

    def _undo_compound(self, investment, following):
        """Put back the values read before a period whose compound record could not be written."""
        try:
            execute(
                self.supabase.table('investments')
                .update({
                    'current_balance': investment['current_balance'],
                    'total_profit_earned': investment['total_profit_earned'],
                    'last_compound_date': investment.get('last_compound_date'),
                    'next_compound_date': investment['next_compound_date'],
                    'updated_at': self.clock().isoformat()
                })
                .eq('id', investment['id'])
                .eq('next_compound_date', following.isoformat())
            )
        except (APIError, StoreUnavailable) as e:
            logger.critical("Investment %s compounded but no compound record written and rollback failed: %s",
                            investment['id'], e)

    def run_server_compounding(self):
        """Ask Supabase to run the apply_weekly_compounding procedure itself."""
        response = execute(self.supabase.rpc('apply_weekly_compounding', {}))
        return response.data or []

    def update_maturity_status(self, now=None):
        """Persist is_matured for investments past maturity so they can be filtered on."""
        now = now or self.clock()
        result = {'updated': 0, 'errors': []}

        investments = execute(
            self.supabase.table('investments')
            .select('id, user_id, maturity_date, status')
            .eq('status', 'active')
            .eq('is_matured', False)
            .lte('maturity_date', now.isoformat())
        ).data or []

        for investment in investments:
            try:
                execute(
                    self.supabase.table('investments')
                    .update({'is_matured': True, 'updated_at': now.isoformat()})
                    .eq('id', investment['id'])
                )
                result['updated'] += 1
            except (APIError, StoreUnavailable) as e:
                result['errors'].append(f"Failed to update maturity status for investment {investment['id']}: {e}")

        logger.info("Maturity status update completed: %d investments updated", result['updated'])
        return result

    def process_matured_investments(self, now=None):
        """Pay out every active investment whose maturity date has passed."""
        now = now or self.clock()
        result = {'processed': 0, 'total_payout': Decimal('0.00'), 'errors': []}

        investments = execute(
            self.supabase.table('investments')
            .select('id, user_id, maturity_date')
            .eq('status', 'active')
            .lte('maturity_date', now.isoformat())
        ).data or []

        for investment in investments:
            try:
                payout = self.process_maturity(investment['id'], investment['user_id'], now)
            except (APIError, PlatformError) as e:
                message = f"Failed to process investment {investment['id']}: {e}"
                logger.error(message)
                result['errors'].append(message)
                continue

            result['processed'] += 1
            result['total_payout'] += payout['maturity_amount']

        logger.info("Maturity processing completed: %d investments processed, %s total payout",
                    result['processed'], result['total_payout'])
        return result

    def run_maturity_workflow(self, now=None):
        now = now or self.clock()
        status_result = self.update_maturity_status(now)
        processing_result = self.process_matured_investments(now)
        return {
            'status_updated': status_result['updated'],
            'investments_processed': processing_result['processed'],
            'total_payout': processing_result['total_payout'],
            'errors': status_result['errors'] + processing_result['errors'],
        }

    def get_compounding_stats(self):
        now = self.clock()
        investments = execute(
            self.supabase.table('investments')
            .select('invested_amount, current_balance, total_profit_earned, next_compound_date')
            .eq('status', 'active')
        ).data or []

        return {
            'total_active_investments': len(investments),
            'due_for_compounding': sum(
                1 for inv in investments
                if parse_timestamp(inv['next_compound_date']) <= now
            ),
            'total_invested': sum((money(inv['invested_amount']) for inv in investments), Decimal('0.00')),
            'total_profit': sum((money(inv['total_profit_earned']) for inv in investments), Decimal('0.00')),
        }

    def get_maturity_stats(self):
        now = self.clock()
        active = execute(
            self.supabase.table('investments')
            .select('current_balance, maturity_date')
            .eq('status', 'active')
            .lte('maturity_date', now.isoformat())
        ).data or []
        completed = execute(
            self.supabase.table('investments')
            .select('current_balance')
            .eq('status', 'completed')
        ).data or []

        return {
            'total_matured': len(active) + len(completed),
            'pending_processing': len(active),
            'total_payout': sum((money(inv['current_balance']) for inv in active + completed), Decimal('0.00')),
        }

import uuid
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation

import pytest
from postgrest.exceptions import APIError

from app import create_app
from balance_service import BalanceService
from finance import money, parse_timestamp
from investment_service import InvestmentService

NOW = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
USER_ID = 'user-1'
ADMIN_ID = 'admin-1'


def api_error(message, code='P0001'):
    return APIError({'message': message, 'code': code, 'hint': None, 'details': None})


def _comparable(left, right):
    """Compare numbers as Decimal and timestamps as datetimes, like Postgres would."""
    if isinstance(left, bool) or isinstance(right, bool) or left is None or right is None:
        return left, right
    try:
        return Decimal(str(left)), Decimal(str(right))
    except InvalidOperation:
        pass
    try:
        return parse_timestamp(left), parse_timestamp(right)
    except (TypeError, ValueError):
        return str(left), str(right)


OPERATORS = {
    'eq': lambda a, b: a == b,
    'neq': lambda a, b: a != b,
    'lt': lambda a, b: a is not None and a < b,
    'lte': lambda a, b: a is not None and a <= b,
    'gt': lambda a, b: a is not None and a > b,
    'gte': lambda a, b: a is not None and a >= b,
}


class FakeResponse:
    def __init__(self, data):
        self.data = data
        self.count = None


class FakeQuery:
    """The subset of the postgrest request builder the services use."""

    def __init__(self, db, table):
        self.db = db
        self.table = table
        self.op = 'select'
        self.payload = None
        self.filters = []
        self.orders = []
        self.row_range = None
        self.row_limit = None
        self.on_conflict = None
        self.ignore_duplicates = False

    def select(self, *columns, **kwargs):
        self.op = 'select'
        return self

    def insert(self, data):
        self.op = 'insert'
        self.payload = data
        return self

    def update(self, data):
        self.op = 'update'
        self.payload = data
        return self

    def upsert(self, data, on_conflict='', ignore_duplicates=False, **kwargs):
        self.op = 'upsert'
        self.payload = data
        self.on_conflict = on_conflict or 'id'
        self.ignore_duplicates = ignore_duplicates
        return self

    def _filter(self, op, column, value):
        self.filters.append((column, op, value))
        return self

    def eq(self, column, value):
        return self._filter('eq', column, value)

    def neq(self, column, value):
        return self._filter('neq', column, value)

    def lt(self, column, value):
        return self._filter('lt', column, value)

    def lte(self, column, value):
        return self._filter('lte', column, value)

    def gt(self, column, value):
        return self._filter('gt', column, value)

    def gte(self, column, value):
        return self._filter('gte', column, value)

    def order(self, column, desc=False, **kwargs):
        self.orders.append((column, desc))
        return self

    def range(self, start, end):
        self.row_range = (start, end)
        return self

    def limit(self, size):
        self.row_limit = size
        return self

    def matches(self, row):
        for column, op, value in self.filters:
            left, right = _comparable(row.get(column), value)
            if not OPERATORS[op](left, right):
                return False
        return True

    def execute(self):
        return self.db.execute_query(self)


class FakeRpc:
    def __init__(self, db, name, params):
        self.db = db
        self.name = name
        self.params = params

    def execute(self):
        return self.db.execute_rpc(self)


class FakeSupabase:
    """
    In-memory stand-in for the Supabase client.

    ``intercept(name, op, fn)`` runs ``fn(query)`` right before the next
    matching call; it can raise to simulate a failure or change stored rows to
    simulate a concurrent writer.
    """

    def __init__(self, clock):
        self.clock = clock
        self.tables = defaultdict(list)
        self.roles = set()
        self.rpc_results = {}
        self.calls = []
        self._intercepts = defaultdict(list)

    def table(self, name):
        return FakeQuery(self, name)

    def rpc(self, name, params=None):
        return FakeRpc(self, name, params or {})

    def intercept(self, name, op, fn, times=1):
        self._intercepts[(name, op)].extend([fn] * times)

    def fail(self, name, op, exc, times=1):
        def raiser(query):
            raise exc
        self.intercept(name, op, raiser, times)

    def _run_intercepts(self, name, op, query):
        queue = self._intercepts.get((name, op))
        if queue:
            queue.pop(0)(query)

    # Tables

    def rows(self, table, **filters):
        return [
            row for row in self.tables[table]
            if all(row.get(k) == v for k, v in filters.items())
        ]

    def execute_query(self, query):
        self.calls.append((query.table, query.op))
        self._run_intercepts(query.table, query.op, query)
        rows = self.tables[query.table]

        if query.op == 'select':
            result = [dict(row) for row in rows if query.matches(row)]
            for column, desc in reversed(query.orders):
                result.sort(key=lambda r: _comparable(r.get(column), r.get(column))[0], reverse=desc)
            if query.row_range:
                start, end = query.row_range
                result = result[start:end + 1]
            if query.row_limit is not None:
                result = result[:query.row_limit]
            return FakeResponse(result)

        if query.op == 'insert':
            payload = query.payload if isinstance(query.payload, list) else [query.payload]
            inserted = []
            for data in payload:
                row = {'id': str(uuid.uuid4()), **data}
                rows.append(row)
                inserted.append(dict(row))
            return FakeResponse(inserted)

        if query.op == 'update':
            updated = []
            for row in rows:
                if query.matches(row):
                    row.update(query.payload)
                    updated.append(dict(row))
            return FakeResponse(updated)

        if query.op == 'upsert':
            key = query.on_conflict
            existing = [row for row in rows if row.get(key) == query.payload.get(key)]
            if existing:
                if query.ignore_duplicates:
                    return FakeResponse([])
                existing[0].update(query.payload)
                return FakeResponse([dict(existing[0])])
            row = dict(query.payload)
            rows.append(row)
            return FakeResponse([dict(row)])

        raise AssertionError(f'unsupported operation {query.op}')

    # RPCs

    def execute_rpc(self, rpc):
        self.calls.append((rpc.name, 'rpc'))
        self._run_intercepts(rpc.name, 'rpc', rpc)

        if rpc.name == 'apply_balance_delta':
            return FakeResponse(self._apply_balance_delta(rpc.params))
        if rpc.name == 'has_role':
            return FakeResponse((rpc.params['_user_id'], rpc.params['_role']) in self.roles)
        if rpc.name in self.rpc_results:
            return FakeResponse(self.rpc_results[rpc.name])
        raise api_error(f'function {rpc.name} does not exist', code='42883')

    def _apply_balance_delta(self, params):
        user_id = params['p_user_id']
        matching = self.rows('user_balances', user_id=user_id)
        if matching:
            row = matching[0]
        else:
            row = {'user_id': user_id, 'available_balance': 0.0, 'invested_balance': 0.0}
            self.tables['user_balances'].append(row)

        before = money(row['available_balance'])
        new_available = before + money(params['p_available_delta'])
        if new_available < 0:
            raise api_error('Insufficient balance')
        new_invested = max(Decimal('0.00'), money(row['invested_balance']) + money(params['p_invested_delta']))

        row.update({
            'available_balance': float(new_available),
            'invested_balance': float(new_invested),
            'updated_at': self.clock().isoformat(),
        })
        transaction = {
            'id': str(uuid.uuid4()),
            'user_id': user_id,
            'transaction_type': params['p_transaction_type'],
            'amount': params['p_amount'],
            'balance_before': float(before),
            'balance_after': float(new_available),
            'reference_id': params['p_reference_id'],
            'description': params['p_description'],
            'created_at': self.clock().isoformat(),
        }
        self.tables['balance_transactions'].append(transaction)

        return [{
            'available_balance': float(new_available),
            'invested_balance': float(new_invested),
            'balance_before': float(before),
            'balance_after': float(new_available),
            'transaction_id': transaction['id'],
        }]


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def set_balance(db, user_id, available, invested=0):
    db.tables['user_balances'] = [r for r in db.tables['user_balances'] if r['user_id'] != user_id]
    db.tables['user_balances'].append({
        'user_id': user_id,
        'available_balance': float(available),
        'invested_balance': float(invested),
    })


def stored_balance(db, user_id):
    row = db.rows('user_balances', user_id=user_id)[0]
    return money(row['available_balance']), money(row['invested_balance'])


@pytest.fixture
def clock():
    return Clock(NOW)


@pytest.fixture
def fake_db(clock):
    return FakeSupabase(clock)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def balances(fake_db, clock, sleeps):
    return BalanceService(fake_db, clock=clock, sleep=sleeps.append, max_retries=3, retry_delay=0.1)


@pytest.fixture
def investments(fake_db, balances, clock):
    return InvestmentService(fake_db, balance_service=balances, clock=clock)


@pytest.fixture
def plan(fake_db):
    row = {
        'id': 'plan-weekly',
        'name': 'Weekly Growth',
        'min_amount': 100.0,
        'weekly_profit_percent': 10.0,
        'early_withdrawal_penalty_percent': None,
        'is_active': True,
    }
    fake_db.tables['investment_plans'].append(row)
    return row


@pytest.fixture
def funded_user(fake_db):
    set_balance(fake_db, USER_ID, 1000)
    return USER_ID


@pytest.fixture
def app(fake_db, clock, sleeps):
    return create_app(
        fake_db,
        clock=clock,
        sleep=sleeps.append,
        test_config={'TESTING': True, 'WTF_CSRF_ENABLED': False, 'SECRET_KEY': 'test-secret'}
    )


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def member_client(client):
    with client.session_transaction() as sess:
        sess['user_id'] = USER_ID
    return client


@pytest.fixture
def admin_client(client, fake_db):
    fake_db.roles.add((ADMIN_ID, 'admin'))
    with client.session_transaction() as sess:
        sess['user_id'] = ADMIN_ID
    return client

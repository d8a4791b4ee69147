from blinker import Namespace

_signals = Namespace()

# Sent with sender=user_id after every successful ledger mutation.
# Keyword args: transaction_type, amount, reference_id
balance_changed = _signals.signal('balance-changed')

# Sent with sender=user_id whenever an investment row changes.
# Keyword args: investment_id, status
investment_changed = _signals.signal('investment-changed')

import os
from decimal import Decimal
from dotenv import load_dotenv

# Load environment variables early
load_dotenv()

# Supabase
SUPABASE_URL = os.getenv('SUPABASE_URL')
SUPABASE_KEY = os.getenv('SUPABASE_KEY')

# Flask
FLASK_SECRET_KEY = os.getenv('FLASK_SECRET_KEY', 'your-secret-key-change-this-in-production')
PORT = int(os.getenv('PORT', 5555))
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()

# Balance ledger
BALANCE_READ_TIMEOUT_SECONDS = float(os.getenv('BALANCE_READ_TIMEOUT_SECONDS', 10))
BALANCE_WRITE_MAX_RETRIES = int(os.getenv('BALANCE_WRITE_MAX_RETRIES', 3))
BALANCE_RETRY_BASE_DELAY_SECONDS = float(os.getenv('BALANCE_RETRY_BASE_DELAY_SECONDS', 0.1))

# Investments
DEFAULT_EARLY_WITHDRAWAL_PENALTY_PERCENT = Decimal(os.getenv('DEFAULT_EARLY_WITHDRAWAL_PENALTY_PERCENT', '50.00'))
DEFAULT_DURATION_WEEKS = int(os.getenv('DEFAULT_DURATION_WEEKS', 12))
COMPOUNDING_PERIOD_DAYS = int(os.getenv('COMPOUNDING_PERIOD_DAYS', 7))

import logging
import time

from postgrest.exceptions import APIError

from db import get_supabase, execute
from errors import StoreUnavailable
from finance import utcnow

logger = logging.getLogger(__name__)


def check_store_health(supabase=None):
    """Time a one-row read against Supabase."""
    supabase = supabase if supabase is not None else get_supabase()
    started = time.perf_counter()
    error = None

    try:
        execute(supabase.table('investment_plans').select('id').limit(1))
    except (APIError, StoreUnavailable) as e:
        logger.warning("Store health check failed: %s", e)
        error = getattr(e, 'message', None) or str(e)

    return {
        'is_healthy': error is None,
        'latency_ms': round((time.perf_counter() - started) * 1000),
        'error': error,
        'timestamp': utcnow().isoformat(),
    }

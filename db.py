import logging
from supabase import create_client, Client
from supabase.client import ClientOptions

import config
from errors import StoreUnavailable, is_network_error

logger = logging.getLogger(__name__)

_client = None


def get_supabase() -> Client:
    """Return the shared Supabase client, creating it on first use."""
    global _client
    if _client is None:
        if not config.SUPABASE_URL or not config.SUPABASE_KEY:
            raise RuntimeError('SUPABASE_URL and SUPABASE_KEY must be set in the environment')

        # Reads give up after the configured timeout so the ledger can fall back
        _client = create_client(
            config.SUPABASE_URL,
            config.SUPABASE_KEY,
            options=ClientOptions(postgrest_client_timeout=config.BALANCE_READ_TIMEOUT_SECONDS)
        )
        logger.info("Supabase client initialised for %s", config.SUPABASE_URL)
    return _client


def execute(query):
    """Run a PostgREST query, turning timeouts and dropped connections into StoreUnavailable."""
    try:
        return query.execute()
    except Exception as e:
        if is_network_error(e):
            logger.warning("Supabase request failed: %s", e)
            raise StoreUnavailable() from e
        raise

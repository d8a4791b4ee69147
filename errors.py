"""Typed failures returned by the ledger and the investment lifecycle.

Every error carries a ``user_message`` that can be shown as-is and a
``status_code`` the HTTP layer uses for the response.
"""
import httpx
from postgrest.exceptions import APIError


class PlatformError(Exception):
    status_code = 500
    user_message = 'Something went wrong. Please try again.'

    def __init__(self, message=None, user_message=None):
        super().__init__(message or user_message or self.user_message)
        if user_message:
            self.user_message = user_message
        elif message:
            self.user_message = message


# Validation
class ValidationError(PlatformError):
    status_code = 400
    user_message = 'Invalid request.'


class InvalidAmount(ValidationError):
    user_message = 'Amount must be greater than zero.'


class BelowMinimumAmount(ValidationError):
    def __init__(self, min_amount):
        self.min_amount = min_amount
        super().__init__(f'Minimum investment amount is ${min_amount}')


class InvalidDuration(ValidationError):
    user_message = 'Minimum investment duration is 1 week.'


class PlanNotFound(PlatformError):
    status_code = 404
    user_message = 'Investment plan not found.'


class InvestmentNotFound(PlatformError):
    status_code = 404
    user_message = 'Investment not found.'


# Funds and concurrency
class InsufficientBalance(PlatformError):
    status_code = 400
    user_message = 'Insufficient balance. Please deposit funds before investing.'


class BalanceConflict(PlatformError):
    status_code = 409
    user_message = 'Balance update conflict. Please try again in a moment.'


class StoreUnavailable(PlatformError):
    status_code = 503
    user_message = 'Unable to reach the server. Please refresh and try again.'


# State machine
class InvestmentStateError(PlatformError):
    status_code = 409
    user_message = "This action is not available for this investment's current status."


class NotActive(InvestmentStateError):
    pass


class AlreadyMatured(InvestmentStateError):
    user_message = 'Investment has already matured.'


class NotYetMatured(InvestmentStateError):
    user_message = 'Investment has not matured yet.'


class InvalidTransition(InvestmentStateError):
    pass


class InvestmentCreationFailed(PlatformError):
    status_code = 500
    user_message = 'Failed to create investment. Please try again.'

    def __init__(self, message=None, compensated=True):
        self.compensated = compensated
        super().__init__(message)
        self.user_message = InvestmentCreationFailed.user_message


CONFLICT_CODES = {'40001', '40P01', '409'}


def is_network_error(exc):
    """Timeouts and unreachable hosts surface as httpx transport errors."""
    return isinstance(exc, (httpx.TransportError, TimeoutError, ConnectionError))


def is_conflict_error(exc):
    if not isinstance(exc, APIError):
        return False
    code = str(getattr(exc, 'code', '') or '')
    message = str(getattr(exc, 'message', '') or exc).lower()
    return code in CONFLICT_CODES or 'conflict' in message


def is_insufficient_funds_error(exc):
    if not isinstance(exc, APIError):
        return False
    message = str(getattr(exc, 'message', '') or exc).lower()
    return 'insufficient' in message

import logging
from functools import wraps

import stripe

from app.core.circuit_breaker import CircuitBreakerError
from app.exceptions import APIError, PaymentGatewayError, PaymentGatewayRejectedError

logger = logging.getLogger(__name__)

# Stripe received and refused these requests; nothing was processed
REJECTED_STRIPE_ERRORS = (
    stripe.CardError,
    stripe.InvalidRequestError,
    stripe.IdempotencyError,
)

# Mapping of Stripe SDK exceptions to our application exceptions
STRIPE_ERROR_MAP = {
    stripe.CardError: PaymentGatewayRejectedError,
    stripe.InvalidRequestError: PaymentGatewayRejectedError,
    stripe.IdempotencyError: PaymentGatewayRejectedError,
    stripe.AuthenticationError: PaymentGatewayError,
    stripe.PermissionError: PaymentGatewayError,
    stripe.RateLimitError: PaymentGatewayError,
    stripe.APIError: PaymentGatewayError,
}


def describe_stripe_error(e: stripe.StripeError) -> str:
    code = e.code or type(e).__name__
    return f"({code}): {e.user_message or 'no message'}"


def map_gateway_errors(func):
    """
    Decorator to catch Stripe and circuit breaker exceptions and re-raise them as PaymentGatewayError.
    Definite refusals become PaymentGatewayRejectedError.
    """
    @wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except APIError:
            raise
        except CircuitBreakerError as e:
            raise PaymentGatewayError(f"Payment gateway temporarily unavailable. Retry in {e.time_until_retry:.0f}s.") from e
        except stripe.APIConnectionError as e:
            raise PaymentGatewayError(f"Payment gateway connection failed during {func.__name__}: {e.user_message}") from e
        except stripe.StripeError as e:
            for stripe_exception, app_exception in STRIPE_ERROR_MAP.items():
                if isinstance(e, stripe_exception):
                    logger.warning(f"Payment gateway call {func.__name__} failed {describe_stripe_error(e)}")
                    raise app_exception(f"Payment gateway error {describe_stripe_error(e)}") from e
            # Fallback for any unmapped Stripe error
            raise PaymentGatewayError(f"Unexpected payment gateway error {describe_stripe_error(e)}") from e
    return wrapper

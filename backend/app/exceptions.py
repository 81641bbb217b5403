class APIError(Exception):
    """
    Base exception for all API-related errors.
    """
    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)

class DuplicateEntryError(APIError):
    """
    The business already holds a pending or active boost in this category.
    Admission is rejected before any state is mutated or any charge is made.
    """
    def __init__(self, message: str = "Business already has a pending or active boost in this category.", status_code: int = 409):
        super().__init__(message, status_code)

class CategoryNotFoundError(APIError):
    def __init__(self, message: str = "Category not found or not configured for boosts.", status_code: int = 404):
        super().__init__(message, status_code)

class BusinessNotFoundError(APIError):
    def __init__(self, message: str = "Business not found.", status_code: int = 404):
        super().__init__(message, status_code)

class SubscriptionNotFoundError(APIError):
    def __init__(self, message: str = "Boost subscription not found.", status_code: int = 404):
        super().__init__(message, status_code)

class EntryNotFoundError(APIError):
    def __init__(self, message: str = "No boost queue entry found for this business.", status_code: int = 404):
        super().__init__(message, status_code)

class AlreadyTerminalError(APIError):
    """
    Cancellation requested on a boost that already expired or was canceled.
    Reported distinctly from success; no refund is issued.
    """
    def __init__(self, message: str = "Boost has already expired or been canceled. No refund issued.", status_code: int = 409):
        super().__init__(message, status_code)

class InvalidTransitionError(APIError):
    def __init__(self, message: str = "Invalid boost status transition.", status_code: int = 409):
        super().__init__(message, status_code)

class PaymentGatewayError(APIError):
    """
    Any failure from the payment collaborator during admission or refund.
    """
    def __init__(self, message: str = "Payment gateway request failed.", status_code: int = 502):
        super().__init__(message, status_code)

class PaymentNotCompletedError(APIError):
    def __init__(self, message: str = "Payment has not been completed.", status_code: int = 402):
        super().__init__(message, status_code)

class ConcurrencyConflictError(APIError):
    """
    A per-category update lost a race. The caller should retry the whole operation.
    """
    def __init__(self, message: str = "Boost queue was modified concurrently. Please retry.", status_code: int = 409):
        super().__init__(message, status_code)

class PaymentGatewayRejectedError(PaymentGatewayError):
    """
    The gateway received the request and definitely refused it (a 4xx reply).
    Unlike a timeout or connection failure, nothing was processed.
    """
    def __init__(self, message: str = "Payment gateway rejected the request.", status_code: int = 402):
        super().__init__(message, status_code)

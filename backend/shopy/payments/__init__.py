PROVIDER_CODES = ("adyen", "paymee", "konnect")


class PaymentProviderError(Exception):
    """Raised when a payment provider rejects a request or cannot be reached."""

    def __init__(self, message: str, details=None, status_code: int = 500):
        super().__init__(message)
        self.message = message
        self.details = details
        self.status_code = status_code

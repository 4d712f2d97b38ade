# src/kraken_ledger/connection/exceptions.py

class KrakenAPIError(Exception):
    """Base exception for all Kraken API related errors."""
    pass

class AuthError(KrakenAPIError):
    """Raised when authentication fails (invalid API key, signature, or nonce)."""
    pass

class TransientGatewayError(KrakenAPIError):
    """Raised for failures that may succeed on a later attempt (network, timeout, overload)."""
    pass

class RateLimitError(TransientGatewayError):
    """Raised when API rate limits are exceeded."""
    pass

class ServiceUnavailableError(TransientGatewayError):
    """Raised when Kraken API is down, in maintenance, or the request timed out."""
    pass

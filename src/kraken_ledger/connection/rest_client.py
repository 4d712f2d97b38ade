# src/kraken_ledger/connection/rest_client.py

import base64
import hashlib
import hmac
import urllib.parse
from typing import Any, Dict, List, Optional

import requests

from .exceptions import (
    AuthError,
    KrakenAPIError,
    RateLimitError,
    ServiceUnavailableError,
)
from .nonce import NonceGenerator
from .rate_limiter import RateLimiter

KRAKEN_API_URL = "https://api.kraken.com"
API_VERSION = "0"

# Counter cost per private endpoint. TradesHistory/Ledgers/ClosedOrders weigh 2,
# order placement and cancellation do not count against the REST counter.
ENDPOINT_COSTS: Dict[str, float] = {
    "TradesHistory": 2.0,
    "Ledgers": 2.0,
    "ClosedOrders": 2.0,
    "Balance": 1.0,
    "OpenOrders": 1.0,
    "AddOrder": 0.0,
    "CancelOrder": 0.0,
}
DEFAULT_PRIVATE_COST = 1.0


class KrakenRESTClient:
    def __init__(
        self,
        api_url: str = KRAKEN_API_URL,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        rate_limiter: Optional[RateLimiter] = None,
        request_timeout: float = 10.0,
        endpoint_costs: Optional[Dict[str, float]] = None,
    ):
        self.api_url = api_url
        # One limiter for every private call; public endpoints are not counted
        self.rate_limiter = rate_limiter or RateLimiter()
        self.request_timeout = request_timeout
        self.endpoint_costs = dict(ENDPOINT_COSTS)
        if endpoint_costs:
            self.endpoint_costs.update(endpoint_costs)

        self.api_key = api_key
        self.api_secret = api_secret

        self.session = requests.Session()
        self.session.headers.update({"User-Agent": "KrakenLedger/0.1.0"})

        self.nonce_generator = NonceGenerator()

    def _get_url(self, endpoint: str, private: bool = False) -> str:
        access_type = "private" if private else "public"
        return f"{self.api_url}/{API_VERSION}/{access_type}/{endpoint}"

    def _generate_signature(self, urlpath: str, data: Dict[str, Any], nonce: int) -> str:
        """
        Generates the API signature for private requests.
        API-Sign = HMAC-SHA512 of (URI path + SHA256(nonce + POST data)) keyed with the base64 decoded secret
        """
        if not self.api_secret:
            raise AuthError("API secret is required for signing requests.")

        postdata = urllib.parse.urlencode(data)
        encoded = (str(nonce) + postdata).encode()
        message = urlpath.encode() + hashlib.sha256(encoded).digest()

        mac = hmac.new(base64.b64decode(self.api_secret), message, hashlib.sha512)
        sigdigest = base64.b64encode(mac.digest())
        return sigdigest.decode()

    def cost_of(self, endpoint: str) -> float:
        return self.endpoint_costs.get(endpoint, DEFAULT_PRIVATE_COST)

    def _sign(self, endpoint: str, data: Dict[str, Any]) -> Dict[str, str]:
        nonce = self.nonce_generator.generate()
        data["nonce"] = nonce
        signature = self._generate_signature(f"/{API_VERSION}/private/{endpoint}", data, nonce)
        return {"API-Key": self.api_key or "", "API-Sign": signature}

    def _request(
        self, method: str, endpoint: str, params: Optional[dict] = None, private: bool = False
    ) -> Dict[str, Any]:
        """
        Send one request and return its ``result`` payload.

        Private calls are charged to the rate limiter before they are signed, so
        the nonce reflects the moment the request actually leaves.
        """
        url = self._get_url(endpoint, private)
        data = dict(params or {})
        headers: Dict[str, str] = {}

        if private:
            if not self.api_key or not self.api_secret:
                raise AuthError("API key and secret are required for private endpoints.")
            cost = self.cost_of(endpoint)
            if cost > 0:
                self.rate_limiter.reserve(cost)
            headers = self._sign(endpoint, data)

        if method not in ("get", "post"):
            raise ValueError(f"Unsupported method: {method}")

        try:
            if method == "get":
                response = self.session.get(url, params=data, headers=headers, timeout=self.request_timeout)
            else:
                response = self.session.post(url, data=data, headers=headers, timeout=self.request_timeout)
            _raise_for_status(response.status_code)
            response.raise_for_status()
            payload = response.json()
        except requests.exceptions.HTTPError as e:
            status_code = e.response.status_code if e.response is not None else None
            _raise_for_status(status_code, e)
            raise KrakenAPIError(f"HTTP Error: {e}") from e
        except requests.exceptions.Timeout as e:
            raise ServiceUnavailableError(f"Request timed out: {e}") from e
        except requests.exceptions.RequestException as e:
            raise ServiceUnavailableError(f"Network Error: {e}") from e

        _raise_for_errors(payload.get("error") or [])
        return payload.get("result", {})

    def get_public(self, endpoint: str, params: Optional[dict] = None) -> Dict[str, Any]:
        """Makes a GET request to a public Kraken API endpoint."""
        return self._request("get", endpoint, params=params, private=False)

    def get_private(self, endpoint: str, params: Optional[dict] = None) -> Dict[str, Any]:
        """
        Makes a POST request to a private Kraken API endpoint (most private endpoints use POST).
        """
        return self._request("post", endpoint, params=params, private=True)

    def get_trades_history(self, offset: int = 0) -> Dict[str, Any]:
        """
        Retrieves one page of account trades, newest first.
        Endpoint: TradesHistory
        """
        return self.get_private("TradesHistory", {"ofs": offset, "trades": "true"})

    def get_balance(self) -> Dict[str, Any]:
        return self.get_private("Balance")

    def get_open_orders(self, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Retrieves currently open orders. Endpoint: OpenOrders"""
        return self.get_private("OpenOrders", params=params)

    def get_ticker(self, pairs: list) -> Dict[str, Any]:
        return self.get_public("Ticker", {"pair": ",".join(pairs)})

    def add_order(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return self.get_private("AddOrder", params=params)

    def cancel_order(self, txid: str) -> Dict[str, Any]:
        return self.get_private("CancelOrder", {"txid": txid})


_AUTH_ERRORS = ("EAPI:Invalid key", "EAPI:Invalid signature", "EAPI:Invalid nonce")
_UNAVAILABLE_ERRORS = ("EService:Unavailable", "EService:Busy")


def _raise_for_status(status_code: Optional[int], cause: Optional[Exception] = None) -> None:
    if status_code == 429:
        raise RateLimitError("Rate limit exceeded") from cause
    if status_code is not None and 500 <= status_code < 600:
        raise ServiceUnavailableError(f"Kraken API Service Error: HTTP {status_code}") from cause


def _raise_for_errors(messages: List[str]) -> None:
    """Map Kraken's ``error`` array onto the client exception hierarchy."""
    if not messages:
        return
    error_msg = "; ".join(messages)
    if "EAPI:Rate limit exceeded" in error_msg:
        raise RateLimitError(error_msg)
    if any(code in error_msg for code in _AUTH_ERRORS):
        raise AuthError(error_msg)
    if any(code in error_msg for code in _UNAVAILABLE_ERRORS):
        raise ServiceUnavailableError(error_msg)
    raise KrakenAPIError(error_msg)

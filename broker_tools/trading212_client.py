"""
Trading212 API Client Wrapper

Provides a unified interface to the Trading212 equity REST API.
Supports both Practice (demo) and Live accounts.
"""

import asyncio
import logging
import os
import time
from typing import Any, Dict, List, Optional

import requests
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

DEMO_API_URL = "https://demo.trading212.com/api/v0"
LIVE_API_URL = "https://live.trading212.com/api/v0"


class Trading212ClientError(Exception):
    """Base exception for Trading212 client errors"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(Trading212ClientError):
    """Exception for rejected or under-privileged API keys"""
    pass


class RateLimitExceededError(Trading212ClientError):
    """Exception when the API keeps answering 429 after all retries"""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class Trading212Client:
    """
    Trading212 API Client Wrapper

    Encapsulates the read-only account operations the dashboard needs.
    Blocking HTTP calls run in a worker thread so the coroutine API can be
    awaited from the event loop.

    Usage:
        client = Trading212Client(api_key="...", is_practice=True)

        # Get account cash summary
        account = await client.get_account()

        # Get open positions and orders
        positions = await client.get_positions()
        orders = await client.get_orders()
    """

    def __init__(
        self,
        api_key: str,
        is_practice: bool = False,
        timeout: float = 15.0,
        max_retries: int = 3,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize Trading212 client.

        Args:
            api_key: Trading212 API key for one account
            is_practice: Use the demo environment
            timeout: HTTP timeout in seconds per request
            max_retries: Attempts on HTTP 429 before giving up
            session: Optional requests session (shared connection pool)
        """
        if not api_key:
            raise AuthenticationError("Trading212 API key is required")

        self.api_key = api_key
        self.is_practice = is_practice
        self.timeout = timeout
        self.max_retries = max_retries

        if is_practice:
            self.base_url = os.getenv("TRADING212_DEMO_API_URL", DEMO_API_URL)
        else:
            self.base_url = os.getenv("TRADING212_LIVE_API_URL", LIVE_API_URL)

        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": api_key,
            "Content-Type": "application/json",
        })

        # Spacing between consecutive requests of this client
        self._last_request_time = 0.0
        self._min_request_interval = 0.1  # 100ms between requests

    def _rate_limit(self):
        """Simple spacing to avoid API throttling"""
        elapsed = time.time() - self._last_request_time
        if elapsed < self._min_request_interval:
            time.sleep(self._min_request_interval - elapsed)
        self._last_request_time = time.time()

    def _retry_delay(self, response: requests.Response, attempt: int) -> float:
        retry_after = response.headers.get("Retry-After")
        if retry_after:
            try:
                return float(retry_after)
            except ValueError:
                pass
        return float(2 ** attempt)

    def _request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Perform one API call, retrying on HTTP 429.

        Raises:
            AuthenticationError: On 401/403
            RateLimitExceededError: When 429 persists after max_retries
            Trading212ClientError: On any other HTTP or network failure
        """
        url = f"{self.base_url}{path}"

        for attempt in range(1, self.max_retries + 1):
            self._rate_limit()
            try:
                response = self.session.request(method, url, params=params, timeout=self.timeout)
            except requests.RequestException as e:
                raise Trading212ClientError(f"Trading212 request failed for {path}: {e}") from e

            if response.status_code == 429:
                delay = self._retry_delay(response, attempt)
                if attempt == self.max_retries:
                    raise RateLimitExceededError(
                        f"Trading212 rate limit exceeded for {path}", retry_after=delay
                    )
                logger.warning(f"429 on {path} (attempt {attempt}), retrying in {delay:.1f}s")
                time.sleep(delay)
                continue

            if response.status_code in (401, 403):
                raise AuthenticationError(
                    f"Trading212 rejected API key for {path}: {response.status_code}",
                    status_code=response.status_code,
                )

            if response.status_code >= 400:
                raise Trading212ClientError(
                    f"Trading212 API error: {response.status_code} - {response.text}",
                    status_code=response.status_code,
                )

            try:
                return response.json()
            except ValueError as e:
                raise Trading212ClientError(f"Invalid JSON from Trading212 for {path}") from e

        raise RateLimitExceededError(f"Trading212 rate limit exceeded for {path}")

    # ==================== Account Operations ====================

    async def get_account(self) -> Dict[str, Any]:
        """
        Get account cash summary.

        Returns:
            Dictionary with account details:
            - free: Cash available to trade
            - total: Total account value
            - ppl: Unrealised profit/loss of open positions
            - result: Realised result
            - invested: Amount invested
            - pieCash: Cash held in pies
            - blocked: Cash blocked by pending orders
        """
        return await asyncio.to_thread(self._request, "GET", "/equity/account/cash")

    async def get_positions(self) -> List[Dict[str, Any]]:
        """
        Get all open positions.

        Returns:
            List of position dicts:
            [
                {
                    "ticker": "AAPL_US_EQ",
                    "quantity": 10,
                    "averagePrice": 150.0,
                    "currentPrice": 155.0,
                    "ppl": 50.0,
                    ...
                },
                ...
            ]
        """
        return await asyncio.to_thread(self._request, "GET", "/equity/portfolio")

    async def get_orders(self) -> List[Dict[str, Any]]:
        """Get all pending orders."""
        return await asyncio.to_thread(self._request, "GET", "/equity/orders")

    def close(self) -> None:
        """Release the pooled HTTP connections."""
        self.session.close()

    async def validate_connection(self) -> bool:
        """Check that the API key works against the configured environment."""
        mode = "Practice" if self.is_practice else "Live"
        logger.info(f"Testing Trading212 API connection to {self.base_url} ({mode})")

        try:
            await self.get_account()
        except AuthenticationError as e:
            logger.error(f"Trading212 authentication failed - check API key validity: {e}")
            return False
        except Trading212ClientError as e:
            logger.error(f"Trading212 API validation failed: {e}")
            return False

        logger.info("Trading212 API connection successful")
        return True

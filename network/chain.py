"""
Jig Ledger - Chain Data Provider Client

This module provides a resilient client for the chain data provider (the
WhatsOnChain REST API by default) with request timeouts, bounded retries with
exponential backoff, and an adaptive inter-request delay that backs off when
the provider throttles and recovers on success.

Retry and pacing are separate wrappers around one raw request primitive
(HTTPTransport.get), so each can be exercised against a fake transport.
"""

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter


SATOSHIS_PER_COIN = 100_000_000
TXID_PATTERN = re.compile(r"^[a-fA-F0-9]{64}$")

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Base exception for chain data provider errors."""

    def __init__(self, code: int, message: str, data: Optional[Any] = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"Provider error {code}: {message}")


class ProviderUnavailable(ProviderError):
    """Timeout, network failure or non-success HTTP status."""
    pass


class ProviderThrottled(ProviderError):
    """Provider answered with a rate-limit response."""
    pass


class ProviderDataError(ProviderError):
    """Provider answered with a malformed or unexpected payload."""
    pass


def coins_to_satoshis(value: Any) -> int:
    """Convert a provider coin amount (e.g. 0.00001) to integer satoshis."""
    return int(round(float(value) * SATOSHIS_PER_COIN))


@dataclass
class ChainConfig:
    """Configuration for the chain data provider connection."""
    base_url: str = "https://api.whatsonchain.com/v1/bsv"
    network: str = "main"
    timeout: float = 30.0
    max_retries: int = 3
    max_throttle_retries: int = 3
    backoff_base: float = 2.0
    initial_delay: float = 0.3
    min_delay: float = 0.2
    max_delay: float = 3.0
    delay_step: float = 0.05
    user_agent: str = "jig-ledger/0.1"

    def __post_init__(self):
        """Validate configuration after initialization."""
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")
        if self.max_retries < 0 or self.max_throttle_retries < 0:
            raise ValueError("retry budgets cannot be negative")
        if self.min_delay < 0 or self.min_delay > self.max_delay:
            raise ValueError("min_delay must be between 0 and max_delay")
        if not self.min_delay <= self.initial_delay <= self.max_delay:
            raise ValueError("initial_delay must lie within [min_delay, max_delay]")

    @property
    def api_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/{self.network}"


@dataclass
class TxOutput:
    """A single transaction output as reported by the provider."""
    n: int
    value: int
    script_type: Optional[str] = None
    asm: str = ""
    addresses: List[str] = field(default_factory=list)

    @property
    def address(self) -> Optional[str]:
        return self.addresses[0] if self.addresses else None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'TxOutput':
        script = data.get("scriptPubKey") or {}
        addresses = script.get("addresses") or []
        if not addresses and script.get("address"):
            addresses = [script["address"]]
        return cls(
            n=int(data["n"]),
            value=coins_to_satoshis(data.get("value", 0)),
            script_type=script.get("type"),
            asm=script.get("asm") or "",
            addresses=list(addresses),
        )


@dataclass
class Transaction:
    """A fetched transaction with its ordered outputs."""
    txid: str
    outputs: List[TxOutput]
    block_height: Optional[int] = None

    @classmethod
    def from_api(cls, data: Any, txid: Optional[str] = None) -> 'Transaction':
        """
        Build a transaction from a provider payload.

        Raises:
            ProviderDataError: If the payload does not look like a transaction
        """
        if not isinstance(data, dict) or not isinstance(data.get("vout"), list):
            raise ProviderDataError(-32700, f"Malformed transaction payload for {txid}")

        try:
            outputs = [TxOutput.from_api(vout) for vout in data["vout"]]
        except (KeyError, TypeError, ValueError) as e:
            raise ProviderDataError(-32700, f"Malformed output in transaction {txid}: {e}")

        height = data.get("blockheight")
        try:
            block_height = int(height) if height is not None else None
        except (TypeError, ValueError):
            raise ProviderDataError(-32700, f"Invalid block height {height!r} in transaction {txid}")
        if block_height is not None and block_height < 0:
            raise ProviderDataError(-32700, f"Invalid block height {height!r} in transaction {txid}")

        return cls(
            txid=data.get("txid") or data.get("hash") or txid,
            outputs=outputs,
            block_height=block_height,
        )


class HTTPTransport:
    """Raw HTTP GET primitive against the provider API."""

    def __init__(self, config: ChainConfig):
        self.config = config
        self.logger = logging.getLogger(__name__)

        # One connection at a time, closed after every response
        self.session = requests.Session()
        adapter = HTTPAdapter(max_retries=0, pool_connections=1, pool_maxsize=1)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)
        self.session.headers.update({
            "Accept": "application/json",
            "Connection": "close",
            "User-Agent": config.user_agent,
        })

        self._stats = {
            "total_requests": 0,
            "successful_requests": 0,
            "not_found": 0,
            "throttled": 0,
            "failed_requests": 0,
            "total_time": 0.0,
            "last_request_time": None
        }
        self._stats_lock = threading.Lock()

    def _count(self, key: str) -> None:
        with self._stats_lock:
            self._stats[key] += 1

    def get(self, path: str) -> Any:
        """
        GET a provider endpoint and decode its JSON body.

        Returns:
            Decoded JSON, or None when the provider answers 404

        Raises:
            ProviderThrottled: On HTTP 429
            ProviderUnavailable: On timeouts, connection errors and other statuses
            ProviderDataError: If a 200 response is not valid JSON
        """
        url = self.config.api_url + path
        start_time = time.time()

        try:
            response = self.session.get(url, timeout=self.config.timeout)
        except requests.exceptions.Timeout:
            self._count("failed_requests")
            raise ProviderUnavailable(-1, f"Request timed out after {self.config.timeout}s")
        except requests.exceptions.ConnectionError as e:
            self._count("failed_requests")
            raise ProviderUnavailable(-1, f"Connection error: {e}")
        except requests.exceptions.RequestException as e:
            self._count("failed_requests")
            raise ProviderUnavailable(-1, f"Request failed: {e}")

        with self._stats_lock:
            self._stats["total_requests"] += 1
            self._stats["total_time"] += time.time() - start_time
            self._stats["last_request_time"] = datetime.now(timezone.utc)

        if response.status_code == 404:
            self._count("not_found")
            return None

        if response.status_code == 429:
            self._count("throttled")
            raise ProviderThrottled(429, f"Rate limited on {path}")

        if response.status_code != 200:
            self._count("failed_requests")
            raise ProviderUnavailable(
                response.status_code,
                f"HTTP {response.status_code}: {response.text[:100]}"
            )

        try:
            payload = response.json()
        except ValueError as e:
            self._count("failed_requests")
            raise ProviderDataError(-32700, f"Invalid JSON response from {path}: {e}")

        self._count("successful_requests")
        return payload

    def get_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            stats = self._stats.copy()

        total = stats["total_requests"]
        return {
            **stats,
            "average_request_time": stats["total_time"] / total if total > 0 else 0,
        }

    def close(self):
        if self.session:
            self.session.close()


class AdaptivePacer:
    """
    Shared inter-request delay that self-tunes to the provider's tolerance.

    A success lowers the delay by a fixed step (floor min_delay); a throttle
    response doubles it (ceiling max_delay).
    """

    def __init__(
        self,
        initial_delay: float = 0.3,
        min_delay: float = 0.2,
        max_delay: float = 3.0,
        step: float = 0.05,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.min_delay = min_delay
        self.max_delay = max_delay
        self.step = step
        self._delay = min(max(initial_delay, min_delay), max_delay)
        self._sleep = sleep
        self._requested = False
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: ChainConfig, sleep: Callable[[float], None] = time.sleep) -> 'AdaptivePacer':
        return cls(config.initial_delay, config.min_delay, config.max_delay, config.delay_step, sleep=sleep)

    @property
    def delay(self) -> float:
        with self._lock:
            return self._delay

    def wait(self) -> None:
        """Sleep the current delay unless this is the first request."""
        with self._lock:
            delay = self._delay if self._requested else 0.0
            self._requested = True
        if delay > 0:
            self._sleep(delay)

    def on_success(self) -> None:
        with self._lock:
            if self._delay > self.min_delay:
                self._delay = max(self.min_delay, round(self._delay - self.step, 6))

    def on_throttle(self) -> float:
        with self._lock:
            self._delay = min(self.max_delay, self._delay * 2)
            delay = self._delay
        logger.info(f"[throttle] delay increased to {delay * 1000:.0f}ms")
        return delay

    def pace(self, func: Callable[[], Any]) -> Callable[[], Any]:
        """Wrap a request callable with pacing and delay adjustment."""
        def paced():
            self.wait()
            try:
                result = func()
            except ProviderThrottled:
                self.on_throttle()
                raise
            self.on_success()
            return result
        return paced


class RetryPolicy:
    """
    Bounded retries with exponential backoff.

    Throttle responses and hard failures draw from separate budgets, so a
    provider that is only rate limiting does not exhaust the failure budget.
    """

    def __init__(
        self,
        max_retries: int = 3,
        max_throttle_retries: int = 3,
        backoff_base: float = 2.0,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.max_retries = max_retries
        self.max_throttle_retries = max_throttle_retries
        self.backoff_base = backoff_base
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: ChainConfig, sleep: Callable[[float], None] = time.sleep) -> 'RetryPolicy':
        return cls(config.max_retries, config.max_throttle_retries, config.backoff_base, sleep=sleep)

    def backoff(self, retry_number: int) -> float:
        """Delay before the given retry (0-based): base, 2*base, 4*base, ..."""
        return self.backoff_base * (2 ** retry_number)

    def call(self, func: Callable[[], Any]) -> Any:
        failures = 0
        throttles = 0

        while True:
            try:
                return func()
            except ProviderThrottled:
                if throttles >= self.max_throttle_retries:
                    raise
                delay = self.backoff(throttles)
                throttles += 1
            except (ProviderUnavailable, ProviderDataError) as e:
                if failures >= self.max_retries:
                    raise
                delay = self.backoff(failures)
                failures += 1
                logger.warning(f"Provider request failed ({e}); retry {failures}/{self.max_retries} in {delay:.1f}s")

            self._sleep(delay)


class ChainClient:
    """
    High-level provider client: spend lookups and transaction fetches.

    "Not found" answers are returned as None rather than raised.
    """

    def __init__(
        self,
        config: Optional[ChainConfig] = None,
        transport: Optional[Any] = None,
        pacer: Optional[AdaptivePacer] = None,
        retry: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Initialize chain client.

        Args:
            config: Provider configuration (defaults if None)
            transport: Object exposing get(path) -> JSON or None
            pacer: Adaptive pacer shared by every request of this client
            retry: Retry policy applied around each paced request
            sleep: Sleep function used by the default pacer and retry policy
        """
        self.config = config or ChainConfig()
        self.transport = transport or HTTPTransport(self.config)
        self.pacer = pacer or AdaptivePacer.from_config(self.config, sleep=sleep)
        self.retry = retry or RetryPolicy.from_config(self.config, sleep=sleep)
        self.logger = logging.getLogger(__name__)

    def _request(self, path: str, parser: Callable[[Any], Any]) -> Any:
        def attempt():
            return parser(self.transport.get(path))
        return self.retry.call(self.pacer.pace(attempt))

    def get_spender(self, txid: str, output_index: int) -> Optional[str]:
        """Return the txid spending (txid, output_index), or None if unspent."""
        def parse(payload):
            if payload is None:
                return None
            if not isinstance(payload, dict):
                raise ProviderDataError(-32700, f"Unexpected spend payload for {txid}:{output_index}")
            spender = payload.get("txid")
            if spender:
                if not isinstance(spender, str) or not TXID_PATTERN.match(spender):
                    raise ProviderDataError(
                        -32700, f"Spend payload for {txid}:{output_index} has invalid txid {spender!r}"
                    )
                return spender.lower()
            if payload.get("spent") is False:
                return None
            raise ProviderDataError(-32700, f"Spend payload for {txid}:{output_index} has no txid")

        return self._request(f"/tx/{txid}/{output_index}/spent", parse)

    def get_transaction(self, txid: str) -> Optional[Transaction]:
        """Fetch a transaction, or None if the provider does not know it."""
        def parse(payload):
            if payload is None:
                return None
            return Transaction.from_api(payload, txid=txid)

        return self._request(f"/tx/hash/{txid}", parse)

    def get_stats(self) -> Dict[str, Any]:
        stats = {"delay": self.pacer.delay}
        if hasattr(self.transport, "get_stats"):
            stats["transport"] = self.transport.get_stats()
        return stats

    def close(self):
        if hasattr(self.transport, "close"):
            self.transport.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

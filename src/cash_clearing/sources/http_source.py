"""
HTTP transaction source.

Pages through a remote transactions API:

    GET {base_url}/transactions/unmatched?cursor=<cursor>&limit=<n>
        -> {"transactions": [...], "next_cursor": "...", "has_more": true}
    GET {base_url}/transactions/unmatched/count
        -> {"count": 123}

Records failing validation are reported on the page instead of aborting it.
"""

import logging
from typing import Any, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..errors import FatalError, TransientIOError, ValidationError
from ..schemas.transaction import Transaction, TransactionPage
from .base import TransactionSource

logger = logging.getLogger(__name__)


class HttpTransactionSource(TransactionSource):
    """
    Client for a remote unresolved-transactions API.

    Features:
    - Bearer token authentication
    - Automatic retry with backoff for 429/5xx
    - 401/403 map to FatalError, connection errors and 5xx to TransientIOError
    """

    DEFAULT_TIMEOUT = 30

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: int = DEFAULT_TIMEOUT,
        max_retries: int = 3,
        backoff_factor: float = 0.5,
    ):
        """
        Initialize the source.

        Args:
            base_url: API root (e.g., "https://recon.example.com/api")
            token: Bearer token, empty for unauthenticated APIs
            timeout: Request timeout in seconds
            max_retries: Maximum retry attempts for transient failures
            backoff_factor: Backoff factor for retries
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

        self.session = requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET"],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def _get(self, endpoint: str, params: Optional[dict] = None) -> Any:
        """GET an endpoint and decode JSON, mapping failures onto the error taxonomy."""
        url = f"{self.base_url}{endpoint}"

        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.exceptions.RetryError as e:
            raise TransientIOError(f"Transaction source kept failing: {e}") from e
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise TransientIOError(f"Failed to reach transaction source at {self.base_url}: {e}") from e
        except requests.exceptions.RequestException as e:
            raise TransientIOError(f"Request failed: {e}") from e

        if response.status_code in (401, 403):
            raise FatalError(
                f"Transaction source rejected credentials ({response.status_code} {response.reason})"
            )
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientIOError(
                f"Transaction source error {response.status_code}: {response.reason}"
            )
        if not response.ok:
            raise FatalError(f"Transaction source error {response.status_code}: {response.reason}")

        try:
            return response.json()
        except ValueError as e:
            raise TransientIOError(f"Invalid JSON from transaction source: {e}") from e

    def fetch_unmatched(self, cursor: Optional[str], page_size: int) -> TransactionPage:
        params: dict[str, Any] = {"limit": page_size}
        if cursor:
            params["cursor"] = cursor

        data = self._get("/transactions/unmatched", params=params)
        if not isinstance(data, dict) or not isinstance(data.get("transactions"), list):
            raise TransientIOError("Malformed page from transaction source")

        transactions: list[Transaction] = []
        rejected: list[tuple[str, str]] = []
        for position, record in enumerate(data["transactions"]):
            try:
                transactions.append(Transaction.from_dict(record))
            except (ValidationError, AttributeError, TypeError) as e:
                record_id = (record.get("id") or record.get("BT_ID")) if isinstance(record, dict) else None
                if not record_id:
                    # Unique per page so id-less rejects are each counted once
                    record_id = f"?{cursor or ''}:{position}"
                record_id = str(record_id)
                logger.warning("Rejected transaction record %s: %s", record_id, e)
                rejected.append((record_id, str(e)))

        return TransactionPage(
            transactions=transactions,
            next_cursor=data.get("next_cursor"),
            has_more=bool(data.get("has_more", False)),
            rejected=rejected,
        )

    def count(self) -> int:
        data = self._get("/transactions/unmatched/count")
        try:
            return int(data["count"])
        except (KeyError, TypeError, ValueError) as e:
            raise TransientIOError(f"Malformed count from transaction source: {data!r}") from e

    def close(self) -> None:
        self.session.close()

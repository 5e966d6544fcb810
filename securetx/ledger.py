"""
Backend ledger client.

The backend keeps its own copy of each transaction. From the SDK's point of
view it is a cache: useful for history across devices, never authoritative
over the chain.
"""
import logging
from typing import Any, Dict, List, Optional

import requests
from pydantic import ValidationError as PydanticValidationError

from ._http import build_session, validate_backend_url
from .exceptions import LedgerError, SessionExpiredError
from .models import LedgerEntry, Session

logger = logging.getLogger(__name__)


class LedgerClient:
    """
    Client for the backend transaction ledger.

    Args:
        base_url: Backend API root, e.g. "https://api.example.com/api"
        session: Authenticated session whose bearer token is attached
        retry_count: Number of retries for 5xx responses and connection errors
        timeout: Request timeout in seconds
    """

    def __init__(
        self,
        base_url: str,
        session: Optional[Session] = None,
        retry_count: int = 3,
        timeout: int = 30,
        logger: Optional[logging.Logger] = None
    ):
        self.base_url = validate_backend_url(base_url, "base_url")
        self.session = session
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)
        self.http = build_session(retry_count)

    def set_session(self, session: Optional[Session]) -> None:
        self.session = session

    def _headers(self) -> Dict[str, str]:
        if self.session is None:
            raise SessionExpiredError("No authenticated session")
        if self.session.is_expired():
            raise SessionExpiredError(f"Session for user {self.session.user_id} has expired")
        return self.session.authorization_header()

    def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.base_url}{path}"
        headers = self._headers()
        self.logger.debug(f"{method} {url}")
        try:
            response = self.http.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            self.logger.error(f"Ledger request failed: {e}")
            raise LedgerError(f"Ledger request failed: {e}") from e

        if response.status_code == 401:
            raise SessionExpiredError("Backend rejected the session token")
        if response.status_code >= 400:
            message = self._error_message(response)
            raise LedgerError(f"Ledger returned {response.status_code}: {message}", status_code=response.status_code)

        try:
            body = response.json()
        except ValueError as e:
            raise LedgerError(f"Invalid JSON response from ledger: {e}") from e

        # The backend wraps payloads as {"success": ..., "data": ...}
        if isinstance(body, dict) and "data" in body:
            if body.get("success") is False:
                raise LedgerError(f"Ledger reported failure: {body.get('message', 'unknown error')}")
            return body["data"]
        return body

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text
        if isinstance(body, dict):
            return str(body.get("message") or body.get("error") or body)
        return str(body)

    def create_transaction(self, to: str, amount_wei: int, tx_hash: Optional[str] = None) -> LedgerEntry:
        """
        Record a transaction in the backend ledger.

        Args:
            to: Recipient address
            amount_wei: Amount in wei
            tx_hash: Chain transaction hash, if already known

        Returns:
            The ledger entry as stored by the backend

        Raises:
            SessionExpiredError: If the session is missing, expired or rejected
            LedgerError: For any other failure
        """
        payload: Dict[str, Any] = {"to": to, "amount": str(amount_wei)}
        if tx_hash:
            payload["txHash"] = tx_hash
        data = self._request("POST", "/transactions", json=payload)
        try:
            return LedgerEntry.model_validate(data)
        except PydanticValidationError as e:
            raise LedgerError(f"Unexpected ledger entry: {e}") from e

    def list_transactions(self) -> List[LedgerEntry]:
        """
        Fetch the session user's transactions from the backend ledger.

        Rows that cannot be parsed are skipped with a warning.
        """
        data = self._request("GET", "/transactions")
        if not isinstance(data, list):
            raise LedgerError(f"Expected a list of transactions, got {type(data).__name__}")
        entries = []
        for row in data:
            try:
                entries.append(LedgerEntry.model_validate(row))
            except PydanticValidationError as e:
                self.logger.warning(f"Skipping malformed ledger row: {e}")
        return entries

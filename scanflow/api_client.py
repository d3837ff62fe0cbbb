"""HTTP client for the receipts backend."""
import asyncio
import logging
from typing import Any, Dict, Optional

import requests

from scanflow import config
from scanflow.errors import ReceiptApiError
from scanflow.models import CreateReceiptInput, Receipt


class ReceiptsApiClient:
    """Async helper around the backend's REST API used by scan sessions."""

    def __init__(
        self,
        base_url: str = config.RECEIPTS_API_BASE_URL,
        access_token: Optional[str] = config.RECEIPTS_API_TOKEN,
        timeout: int = config.RECEIPTS_API_TIMEOUT,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.timeout = timeout
        self._session = session or requests.Session()

    async def create_receipt(self, payload: CreateReceiptInput) -> Receipt:
        data = await asyncio.to_thread(self._post_json, "/receipts", payload.to_json())
        return Receipt.from_api(data)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    def _post_json(self, endpoint: str, body: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}{endpoint}"
        try:
            response = self._session.post(url, json=body, headers=self._headers(), timeout=self.timeout)
        except requests.exceptions.RequestException as exc:
            logging.warning(f"Receipts API unreachable ({url}): {exc}")
            raise ReceiptApiError(str(exc) or exc.__class__.__name__) from exc

        if response.status_code >= 400:
            message = _error_message(response)
            logging.warning(f"Receipts API returned {response.status_code}: {message[:200]}")
            raise ReceiptApiError(message, status=response.status_code)

        try:
            data = response.json()
        except ValueError as exc:
            raise ReceiptApiError(f"Receipts API returned invalid JSON: {exc}", status=response.status_code) from exc
        if not isinstance(data, dict):
            raise ReceiptApiError("Receipts API returned an unexpected payload", status=response.status_code)
        return data


def _error_message(response: requests.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        message = data.get("message")
        if isinstance(message, list):
            message = "; ".join(str(part) for part in message)
        if message:
            return str(message)
    return response.reason or f"Request failed with status code {response.status_code}"

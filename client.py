"""Thin REST client for the budget backend.

Doubles as a transaction source for ``RecurringMaterializer`` so the monthly
recurring check can run from another machine against a remote server.
"""
from datetime import date
from typing import Any, Dict, List, Optional

import requests

from recurring import TransactionSourceError

DEFAULT_TIMEOUT = 30
RANGE_QUERY_LIMIT = 1000


class ApiError(TransactionSourceError):
    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class ApiClient:
    def __init__(self, base_url: str, token: Optional[str] = None,
                 session: Optional[requests.Session] = None, timeout: float = DEFAULT_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.session = session or requests.Session()
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            r = self.session.request(method, self.base_url + path, headers=self._headers(),
                                     timeout=self.timeout, **kwargs)
            r.raise_for_status()
        except requests.HTTPError as e:
            try:
                body = e.response.json()
            except ValueError:
                body = None
            message = (body.get("error") if isinstance(body, dict) else None) or str(e)
            raise ApiError(message, status_code=e.response.status_code) from e
        except requests.RequestException as e:
            raise ApiError(str(e)) from e
        return r.json()

    def login(self, pin: str) -> str:
        data = self._request("POST", "/auth/login", json={"pin": pin})
        self.token = data["token"]
        return self.token

    def logout(self) -> None:
        self._request("POST", "/auth/logout")
        self.token = None

    def query_by_date_range(self, start: date, end: date) -> List[Dict[str, Any]]:
        params = {
            "dateFrom": start.isoformat(),
            "dateTo": end.isoformat(),
            "limit": RANGE_QUERY_LIMIT,
        }
        return self._request("GET", "/expenses", params=params)

    def create(self, record: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/expenses", json=record)

    def upload(self, filename: str, data: bytes, mime_type: str = "application/octet-stream") -> Dict[str, Any]:
        return self._request("POST", "/uploads", files={"file": (filename, data, mime_type)})

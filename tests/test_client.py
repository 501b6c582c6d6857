from datetime import date

import pytest
import requests

from client import ApiClient, ApiError


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self.payload = payload

    def json(self):
        if self.payload is None:
            raise ValueError("no JSON body")
        return self.payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def test_login_stores_token_for_later_requests():
    session = FakeSession(FakeResponse(payload={"token": "t-1", "expiresAt": "2024-07-01"}),
                          FakeResponse(payload=[]))
    api = ApiClient("http://budget.local/", session=session)

    assert api.login("4321") == "t-1"
    api.query_by_date_range(date(2024, 5, 1), date(2024, 5, 31))

    method, url, kwargs = session.calls[0]
    assert (method, url) == ("POST", "http://budget.local/auth/login")
    assert kwargs["json"] == {"pin": "4321"}
    assert kwargs["headers"] == {}
    assert session.calls[1][2]["headers"] == {"Authorization": "Bearer t-1"}


def test_query_by_date_range_sends_iso_bounds():
    session = FakeSession(FakeResponse(payload=[{"id": 1, "title": "Rent"}]))
    api = ApiClient("http://budget.local", token="t", session=session)

    rows = api.query_by_date_range(date(2024, 5, 1), date(2024, 5, 31))

    assert rows == [{"id": 1, "title": "Rent"}]
    method, url, kwargs = session.calls[0]
    assert (method, url) == ("GET", "http://budget.local/expenses")
    assert kwargs["params"] == {"dateFrom": "2024-05-01", "dateTo": "2024-05-31", "limit": 1000}


def test_http_error_carries_server_message():
    session = FakeSession(FakeResponse(400, {"error": "Amount must be greater than 0"}))
    api = ApiClient("http://budget.local", token="t", session=session)

    with pytest.raises(ApiError, match="Amount must be greater than 0") as excinfo:
        api.create({"title": "Rent", "amount": 0})

    assert excinfo.value.status_code == 400


def test_http_error_without_json_body():
    api = ApiClient("http://budget.local", session=FakeSession(FakeResponse(502)))

    with pytest.raises(ApiError) as excinfo:
        api.login("0000")

    assert excinfo.value.status_code == 502
    assert api.token is None


def test_connection_error_maps_to_api_error():
    session = FakeSession(requests.ConnectionError("connection refused"))
    api = ApiClient("http://budget.local", token="t", session=session)

    with pytest.raises(ApiError, match="connection refused") as excinfo:
        api.logout()

    assert excinfo.value.status_code is None
    assert api.token == "t"


def test_upload_posts_multipart_file():
    staged = {"id": "abc", "storagePath": "temp/abc.png", "isTemp": True}
    session = FakeSession(FakeResponse(201, staged))
    api = ApiClient("http://budget.local", token="t", session=session)

    assert api.upload("photo.png", b"png", "image/png") == staged
    assert session.calls[0][2]["files"] == {"file": ("photo.png", b"png", "image/png")}


def test_http_error_with_non_object_json_body():
    session = FakeSession(FakeResponse(500, ["unexpected", "list"]))
    api = ApiClient("http://budget.local", token="t", session=session)

    with pytest.raises(ApiError, match="500 Error") as excinfo:
        api.create({"title": "Rent", "amount": 10})

    assert excinfo.value.status_code == 500

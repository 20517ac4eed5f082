import pytest
import requests

from invoice_checker.gmail import GmailApiError, GmailAuthError, GmailClient, GmailSession


class FakeResponse:
    def __init__(self, payload=None, status_code: int = 200) -> None:
        self._payload = payload if payload is not None else {}
        self.status_code = status_code
        self.reason = "Error" if status_code >= 400 else "OK"

    def json(self):  # type: ignore[no-untyped-def]
        return self._payload

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} {self.reason}")


class FakeHttp:
    def __init__(self, responses: list[FakeResponse]) -> None:
        self._responses = list(responses)
        self.calls: list[dict] = []

    def get(self, url, params=None, headers=None, timeout=None):  # type: ignore[no-untyped-def]
        self.calls.append({"url": url, "params": dict(params or {}), "headers": dict(headers or {})})
        return self._responses.pop(0)


def test_session_lifecycle():
    session = GmailSession()
    assert session.active is False
    with pytest.raises(GmailAuthError):
        session.authorization_header()

    session.acquire("token-1")
    assert session.authorization_header() == {"Authorization": "Bearer token-1"}

    session.invalidate()
    assert session.active is False


def test_list_message_ids_follows_page_tokens():
    http = FakeHttp(
        [
            FakeResponse({"messages": [{"id": "a"}, {"id": "b"}], "nextPageToken": "t1"}),
            FakeResponse({"messages": [{"id": "c"}]}),
        ]
    )
    client = GmailClient(GmailSession("tok"), http=http)  # type: ignore[arg-type]

    ids = client.list_message_ids("label:電子發票", max_count=2000)

    assert ids == ["a", "b", "c"]
    assert http.calls[0]["params"] == {"q": "label:電子發票", "maxResults": 500}
    assert http.calls[1]["params"]["pageToken"] == "t1"
    assert http.calls[0]["headers"]["Authorization"] == "Bearer tok"


def test_list_message_ids_stops_at_max_count():
    http = FakeHttp(
        [
            FakeResponse({"messages": [{"id": "a"}, {"id": "b"}], "nextPageToken": "t1"}),
            FakeResponse({"messages": [{"id": "c"}, {"id": "d"}], "nextPageToken": "t2"}),
            FakeResponse({"messages": [{"id": "e"}], "nextPageToken": "t3"}),
        ]
    )
    client = GmailClient(GmailSession("tok"), http=http)  # type: ignore[arg-type]

    ids = client.list_message_ids("label:電子發票", max_count=3)

    assert ids == ["a", "b", "c"]
    assert len(http.calls) == 2


def test_unauthorized_invalidates_session():
    session = GmailSession("expired")
    client = GmailClient(session, http=FakeHttp([FakeResponse({}, status_code=401)]))  # type: ignore[arg-type]

    with pytest.raises(GmailAuthError):
        client.list_message_ids("label:電子發票")
    assert session.active is False


def test_list_message_ids_raises_on_server_error():
    client = GmailClient(GmailSession("tok"), http=FakeHttp([FakeResponse({}, status_code=500)]))  # type: ignore[arg-type]

    with pytest.raises(GmailApiError):
        client.list_message_ids("label:電子發票")


def test_get_message_detail_reads_subject():
    http = FakeHttp(
        [
            FakeResponse(
                {
                    "id": "m1",
                    "internalDate": "1694736000000",
                    "snippet": "發票號碼 AB12345678",
                    "payload": {"headers": [{"name": "Subject", "value": "電子發票開立通知"}]},
                }
            ),
            FakeResponse({"internalDate": "1694736000000", "payload": {"headers": []}}),
        ]
    )
    client = GmailClient(GmailSession("tok"), http=http)  # type: ignore[arg-type]

    detail = client.get_message_detail("m1")
    assert detail is not None
    assert detail.subject == "電子發票開立通知"
    assert detail.internal_date == "1694736000000"
    assert detail.snippet == "發票號碼 AB12345678"
    assert http.calls[0]["params"] == {"format": "full"}

    untitled = client.get_message_detail("m2")
    assert untitled is not None
    assert untitled.subject == "無主旨"


def test_get_message_detail_returns_none_on_failure():
    client = GmailClient(GmailSession("tok"), http=FakeHttp([FakeResponse({}, status_code=500)]))  # type: ignore[arg-type]
    assert client.get_message_detail("m1") is None


def test_get_message_detail_propagates_auth_failure():
    client = GmailClient(GmailSession("tok"), http=FakeHttp([FakeResponse({}, status_code=403)]))  # type: ignore[arg-type]
    with pytest.raises(GmailAuthError):
        client.get_message_detail("m1")

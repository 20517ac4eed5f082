from __future__ import annotations

import logging
from typing import Any, Dict, List

import requests

from .models import MessageDetail

LOGGER = logging.getLogger(__name__)

DEFAULT_SUBJECT = "無主旨"
PAGE_SIZE = 500
DEFAULT_MAX_MESSAGES = 2000


class GmailApiError(RuntimeError):
    pass


class GmailAuthError(GmailApiError):
    pass


class GmailSession:
    """Holds the OAuth access token for one signed-in user.

    Lifecycle is acquire -> use across calls -> invalidate. Token acquisition
    itself happens outside this package.
    """

    def __init__(self, access_token: str | None = None) -> None:
        self._access_token: str | None = None
        if access_token:
            self.acquire(access_token)

    @property
    def active(self) -> bool:
        return bool(self._access_token)

    def acquire(self, access_token: str) -> None:
        token = (access_token or "").strip()
        if not token:
            raise GmailAuthError("缺少 Gmail 存取權杖")
        self._access_token = token

    def invalidate(self) -> None:
        self._access_token = None

    def authorization_header(self) -> Dict[str, str]:
        if not self._access_token:
            raise GmailAuthError("尚未登入 Gmail")
        return {"Authorization": f"Bearer {self._access_token}"}


class GmailClient:
    BASE_URL = "https://gmail.googleapis.com/gmail/v1/users/me"

    def __init__(
        self,
        session: GmailSession,
        timeout_seconds: int = 15,
        http: requests.Session | None = None,
    ) -> None:
        self._auth = session
        self._timeout = timeout_seconds
        self._http = http or requests.Session()

    def list_message_ids(self, query: str, max_count: int = DEFAULT_MAX_MESSAGES) -> List[str]:
        ids: List[str] = []
        page_token: str | None = None

        while True:
            params: Dict[str, Any] = {"q": query, "maxResults": PAGE_SIZE}
            if page_token:
                params["pageToken"] = page_token
            data = self._get_json(f"{self.BASE_URL}/messages", params=params)

            messages = data.get("messages")
            if isinstance(messages, list):
                ids.extend(str(item["id"]) for item in messages if isinstance(item, dict) and item.get("id"))

            page_token = data.get("nextPageToken")
            if len(ids) >= max_count or not page_token:
                break

        LOGGER.info("Gmail query %r returned %d messages", query, len(ids))
        return ids[:max_count]

    def get_message_detail(self, message_id: str) -> MessageDetail | None:
        try:
            data = self._get_json(f"{self.BASE_URL}/messages/{message_id}", params={"format": "full"})
        except GmailAuthError:
            raise
        except GmailApiError as exc:
            LOGGER.warning("Failed to fetch message %s: %s", message_id, exc)
            return None

        payload = data.get("payload") if isinstance(data.get("payload"), dict) else {}
        return MessageDetail(
            id=message_id,
            internal_date=str(data.get("internalDate", "")),
            subject=self._subject(payload),
            snippet=str(data.get("snippet") or ""),
            payload=payload,
        )

    @staticmethod
    def _subject(payload: Dict[str, Any]) -> str:
        headers = payload.get("headers")
        for header in headers if isinstance(headers, list) else []:
            if isinstance(header, dict) and header.get("name") == "Subject":
                return str(header.get("value") or DEFAULT_SUBJECT)
        return DEFAULT_SUBJECT

    def _get_json(self, url: str, params: Dict[str, Any]) -> Dict[str, Any]:
        headers = self._auth.authorization_header()
        try:
            response = self._http.get(url, params=params, headers=headers, timeout=self._timeout)
        except requests.RequestException as exc:
            raise GmailApiError(f"Gmail API 連線失敗: {url}") from exc

        if response.status_code in (401, 403):
            self._auth.invalidate()
            raise GmailAuthError(f"Gmail 授權失效 ({response.status_code})")

        try:
            response.raise_for_status()
            data = response.json()
        except requests.HTTPError as exc:
            raise GmailApiError(f"Gmail API Error: {response.status_code} {response.reason}") from exc
        except ValueError as exc:
            raise GmailApiError(f"Gmail API 回應格式錯誤: {url}") from exc

        if not isinstance(data, dict):
            raise GmailApiError(f"Gmail API 回應格式錯誤: {url}")
        return data

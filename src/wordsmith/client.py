from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx

from wordsmith.errors import CONFLICT_MARKERS, ServerError, VersionConflictError
from wordsmith.models import (
    SessionListItem,
    TemplateRecord,
    ThemeRecord,
    WritingCapabilities,
    WritingSession,
)

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1/writing"


def _expected_version_headers(expected_version: int) -> dict[str, str]:
    return {"expected-version": str(expected_version)}


def _error_detail(response: httpx.Response) -> tuple[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return (response.text or response.reason_phrase or f"HTTP {response.status_code}"), None
    detail = body.get("detail") if isinstance(body, dict) else None
    if isinstance(detail, dict):
        return str(detail.get("message") or detail), detail
    if detail:
        return str(detail), body
    return str(body), body


def _current_version(body: Any) -> int | None:
    if not isinstance(body, dict):
        return None
    for key in ("current_version", "version"):
        value = body.get(key)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def raise_for_response(response: httpx.Response) -> None:
    if response.status_code < 400:
        return
    detail, body = _error_detail(response)
    lower = detail.lower()
    if response.status_code == 409 or any(marker in lower for marker in CONFLICT_MARKERS):
        raise VersionConflictError(
            detail, status=response.status_code, current_version=_current_version(body)
        )
    raise ServerError(detail, status=response.status_code)


class WritingClient:
    """Async client for the server-side writing API.

    Sessions are addressed by id; templates and themes by name. Every write
    that mutates an existing record carries the caller's last confirmed
    version in the ``expected-version`` header.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout_s: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_s = timeout_s
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_config(cls, config) -> "WritingClient":
        return cls(config.server_url, api_key=config.api_key, timeout_s=config.timeout_s)

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Accept": "application/json"}
            if self.api_key:
                headers["X-API-KEY"] = self.api_key
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout_s,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "WritingClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        url = f"{API_PREFIX}{path}"
        if params:
            params = {k: v for k, v in params.items() if v is not None}
        try:
            response = await self.client.request(
                method, url, json=json, params=params or None, headers=headers
            )
        except httpx.RequestError as e:
            logger.warning(f"{method} {url} failed: {e}")
            raise ServerError(f"Request failed: {e}") from e
        raise_for_response(response)
        logger.debug(f"{method} {url} -> {response.status_code}")
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def get_capabilities(
        self,
        provider: str | None = None,
        model: str | None = None,
        include_providers: bool = False,
        include_deprecated: bool = False,
    ) -> WritingCapabilities:
        data = await self._request(
            "GET",
            "/capabilities",
            params={
                "provider": provider,
                "model": model,
                "include_providers": str(include_providers).lower(),
                "include_deprecated": str(include_deprecated).lower(),
            },
        )
        return WritingCapabilities.model_validate(data or {})

    async def list_sessions(self, limit: int | None = None, offset: int | None = None) -> list[SessionListItem]:
        data = await self._request("GET", "/sessions", params={"limit": limit, "offset": offset})
        return [SessionListItem.model_validate(item) for item in (data or {}).get("sessions", [])]

    async def create_session(
        self, name: str, payload: dict, schema_version: int = 1
    ) -> WritingSession:
        data = await self._request(
            "POST",
            "/sessions",
            json={"name": name, "payload": payload, "schema_version": schema_version},
        )
        return WritingSession.model_validate(data)

    async def get_session(self, session_id: str) -> WritingSession:
        data = await self._request("GET", f"/sessions/{quote(session_id, safe='')}")
        return WritingSession.model_validate(data)

    async def update_session(
        self, session_id: str, fields: dict[str, Any], expected_version: int
    ) -> WritingSession:
        data = await self._request(
            "PATCH",
            f"/sessions/{quote(session_id, safe='')}",
            json=fields,
            headers=_expected_version_headers(expected_version),
        )
        return WritingSession.model_validate(data)

    async def delete_session(self, session_id: str, expected_version: int) -> None:
        await self._request(
            "DELETE",
            f"/sessions/{quote(session_id, safe='')}",
            headers=_expected_version_headers(expected_version),
        )

    async def clone_session(self, session_id: str, name: str | None = None) -> WritingSession:
        data = await self._request(
            "POST",
            f"/sessions/{quote(session_id, safe='')}/clone",
            json={"name": name} if name else {},
        )
        return WritingSession.model_validate(data)

    async def list_templates(self, limit: int | None = None, offset: int | None = None) -> list[TemplateRecord]:
        data = await self._request("GET", "/templates", params={"limit": limit, "offset": offset})
        return [TemplateRecord.model_validate(item) for item in (data or {}).get("templates", [])]

    async def create_template(
        self,
        name: str,
        payload: dict,
        schema_version: int = 1,
        is_default: bool = False,
    ) -> TemplateRecord:
        data = await self._request(
            "POST",
            "/templates",
            json={
                "name": name,
                "payload": payload,
                "schema_version": schema_version,
                "is_default": is_default,
            },
        )
        return TemplateRecord.model_validate(data)

    async def get_template(self, name: str) -> TemplateRecord:
        data = await self._request("GET", f"/templates/{quote(name, safe='')}")
        return TemplateRecord.model_validate(data)

    async def update_template(
        self, name: str, fields: dict[str, Any], expected_version: int
    ) -> TemplateRecord:
        data = await self._request(
            "PATCH",
            f"/templates/{quote(name, safe='')}",
            json=fields,
            headers=_expected_version_headers(expected_version),
        )
        return TemplateRecord.model_validate(data)

    async def delete_template(self, name: str, expected_version: int) -> None:
        await self._request(
            "DELETE",
            f"/templates/{quote(name, safe='')}",
            headers=_expected_version_headers(expected_version),
        )

    async def list_themes(self, limit: int | None = None, offset: int | None = None) -> list[ThemeRecord]:
        data = await self._request("GET", "/themes", params={"limit": limit, "offset": offset})
        return [ThemeRecord.model_validate(item) for item in (data or {}).get("themes", [])]

    async def create_theme(self, name: str, fields: dict[str, Any]) -> ThemeRecord:
        data = await self._request("POST", "/themes", json={"name": name, **fields})
        return ThemeRecord.model_validate(data)

    async def update_theme(
        self, name: str, fields: dict[str, Any], expected_version: int
    ) -> ThemeRecord:
        data = await self._request(
            "PATCH",
            f"/themes/{quote(name, safe='')}",
            json=fields,
            headers=_expected_version_headers(expected_version),
        )
        return ThemeRecord.model_validate(data)

    async def delete_theme(self, name: str, expected_version: int) -> None:
        await self._request(
            "DELETE",
            f"/themes/{quote(name, safe='')}",
            headers=_expected_version_headers(expected_version),
        )

    async def tokenize(
        self, provider: str, model: str, text: str, include_strings: bool = False
    ) -> dict:
        return await self._request(
            "POST",
            "/tokenize",
            json={
                "provider": provider,
                "model": model,
                "text": text,
                "options": {"include_strings": include_strings},
            },
        )

    async def count_tokens(self, provider: str, model: str, text: str) -> int:
        data = await self._request(
            "POST",
            "/token-count",
            json={"provider": provider, "model": model, "text": text},
        )
        return int((data or {}).get("count", 0))

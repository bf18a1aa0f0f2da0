"""HTTP gateways for a Supabase-style backend (auth, PostgREST tables, storage)."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import httpx

from optisync.errors import (
    DuplicateRegistrationError,
    GatewayError,
    InvalidCredentialsError,
)
from optisync.gateways.base import AuthUser, OrderBy
from optisync.utils.http import normalize_base_url, quote_key
from optisync.utils.masking import mask_token, redact_sensitive_fields

logger = logging.getLogger(__name__)

_STATUS_CODES = {
    400: "validation",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    408: "timeout",
    409: "conflict",
    422: "validation",
}


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(body, dict):
        for key in ("message", "msg", "error_description", "error"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    return response.reason_phrase


def error_from_response(response: httpx.Response) -> GatewayError:
    """Translate an HTTP error status into a ``GatewayError``."""
    status = response.status_code
    code = _STATUS_CODES.get(status, "server" if status >= 500 else "validation")
    return GatewayError(_error_message(response), code, status)


class BackendClient:
    """Shared ``httpx.AsyncClient`` carrying the API key and session token."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = normalize_base_url(base_url)
        self._api_key = api_key
        self._access_token: str | None = None
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
        )

    @property
    def access_token(self) -> str | None:
        return self._access_token

    def set_access_token(self, token: str | None) -> None:
        logger.debug("Backend access token set to %s", mask_token(token))
        self._access_token = token

    def _headers(self, extra: Mapping[str, str] | None = None) -> dict[str, str]:
        headers = {
            "apikey": self._api_key,
            "Authorization": f"Bearer {self._access_token or self._api_key}",
        }
        if extra:
            headers.update(extra)
        return headers

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, str] | None = None,
        json: Any = None,
        content: bytes | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> httpx.Response:
        if json is not None:
            logger.debug("%s %s %s", method, path, redact_sensitive_fields(json))
        else:
            logger.debug("%s %s", method, path)
        try:
            response = await self._client.request(
                method,
                path,
                params=params,
                json=json,
                content=content,
                headers=self._headers(headers),
            )
        except httpx.TimeoutException as exc:
            raise GatewayError(f"{method} {path} timed out", "timeout") from exc
        except httpx.HTTPError as exc:
            raise GatewayError(f"{method} {path} failed: {exc}", "network") from exc

        if response.status_code >= 400:
            error = error_from_response(response)
            logger.warning(
                "%s %s returned %s (%s)", method, path, response.status_code, error.code
            )
            raise error
        return response

    @staticmethod
    def decode(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise GatewayError("Response body is not JSON", "invalid_response") from exc

    async def aclose(self) -> None:
        await self._client.aclose()


def _auth_user(payload: Any) -> AuthUser:
    if not isinstance(payload, Mapping):
        raise GatewayError("Malformed auth response", "invalid_response")
    user = payload.get("user", payload)
    if not isinstance(user, Mapping) or not user.get("id"):
        raise GatewayError("Auth response has no user", "invalid_response")
    metadata = user.get("user_metadata") or {}
    return AuthUser(
        id=str(user["id"]),
        email=str(user.get("email") or ""),
        attributes=dict(metadata) if isinstance(metadata, Mapping) else {},
        access_token=payload.get("access_token"),
    )


class HttpIdentityGateway:
    def __init__(self, client: BackendClient) -> None:
        self._client = client

    async def sign_in(self, email: str, password: str) -> AuthUser:
        try:
            response = await self._client.request(
                "POST",
                "/auth/v1/token",
                params={"grant_type": "password"},
                json={"email": email, "password": password},
            )
        except GatewayError as exc:
            if exc.status_code in (400, 401):
                raise InvalidCredentialsError() from exc
            raise
        user = _auth_user(self._client.decode(response))
        self._client.set_access_token(user.access_token)
        return user

    async def sign_up(
        self, email: str, password: str, attributes: Mapping[str, Any]
    ) -> AuthUser:
        try:
            response = await self._client.request(
                "POST",
                "/auth/v1/signup",
                json={"email": email, "password": password, "data": dict(attributes)},
            )
        except GatewayError as exc:
            if exc.status_code == 422 or "already registered" in str(exc).lower():
                raise DuplicateRegistrationError() from exc
            raise
        user = _auth_user(self._client.decode(response))
        if user.access_token:
            self._client.set_access_token(user.access_token)
        return user

    async def sign_out(self) -> None:
        await self._client.request("POST", "/auth/v1/logout")
        self._client.set_access_token(None)


class HttpDataGateway:
    """PostgREST table access: one request per call, no transactions."""

    _RETURN_ROWS = {"Prefer": "return=representation"}

    def __init__(self, client: BackendClient) -> None:
        self._client = client

    async def query(
        self,
        table: str,
        filters: Mapping[str, Any] | None = None,
        order: OrderBy | None = None,
    ) -> list[dict[str, Any]]:
        params = {"select": "*"}
        for column, value in (filters or {}).items():
            params[column] = f"eq.{value}"
        if order is not None:
            params["order"] = order.to_param()
        response = await self._client.request("GET", f"/rest/v1/{table}", params=params)
        rows = self._client.decode(response)
        if not isinstance(rows, list):
            raise GatewayError(f"Expected a list of {table} rows", "invalid_response")
        return rows

    async def insert(self, table: str, row: Mapping[str, Any]) -> dict[str, Any]:
        response = await self._client.request(
            "POST", f"/rest/v1/{table}", json=[dict(row)], headers=self._RETURN_ROWS
        )
        return self._single_row(table, self._client.decode(response))

    async def update(
        self, table: str, record_id: str, patch: Mapping[str, Any]
    ) -> dict[str, Any]:
        response = await self._client.request(
            "PATCH",
            f"/rest/v1/{table}",
            params={"id": f"eq.{record_id}"},
            json=dict(patch),
            headers=self._RETURN_ROWS,
        )
        rows = self._client.decode(response)
        if isinstance(rows, list) and not rows:
            # Row-level security hides rows the caller does not own.
            raise GatewayError(f"No {table} row with id {record_id}", "not_found", 404)
        return self._single_row(table, rows)

    async def delete(self, table: str, record_id: str) -> None:
        response = await self._client.request(
            "DELETE",
            f"/rest/v1/{table}",
            params={"id": f"eq.{record_id}"},
            headers=self._RETURN_ROWS,
        )
        rows = self._client.decode(response)
        if not rows:
            # Row-level security answers 2xx without deleting foreign rows.
            raise GatewayError(
                f"No {table} row with id {record_id} was deleted", "not_found", 404
            )

    @staticmethod
    def _single_row(table: str, payload: Any) -> dict[str, Any]:
        if isinstance(payload, list):
            payload = payload[0] if payload else None
        if not isinstance(payload, dict):
            raise GatewayError(f"Expected a {table} row in response", "invalid_response")
        return payload


class HttpBlobStorage:
    def __init__(self, client: BackendClient) -> None:
        self._client = client

    async def upload(
        self,
        bucket: str,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> str:
        await self._client.request(
            "POST",
            f"/storage/v1/object/{bucket}/{quote_key(key)}",
            content=data,
            headers={"Content-Type": content_type, "x-upsert": "false"},
        )
        logger.info("Uploaded %d bytes to %s/%s", len(data), bucket, key)
        return key

    def public_url(self, bucket: str, key: str) -> str:
        return f"{self._client.base_url}/storage/v1/object/public/{bucket}/{quote_key(key)}"

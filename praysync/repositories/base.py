"""Abstract base for all PostgREST resource repositories.

Every repository talks to the Supabase REST API through a single
``httpx.AsyncClient`` (injectable for testing) and surfaces failures only as
the typed errors in ``praysync.errors``.  Payloads are decoded into pydantic
models here, at the boundary, so a malformed row never reaches the cache.
"""

from __future__ import annotations

import logging
from abc import ABC
from typing import Any, Mapping, TypeVar

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from praysync.config import get_settings
from praysync.errors import (
    PraySyncError,
    TransientNetworkError,
    ValidationError,
    classify_http_error,
)

logger = logging.getLogger("praysync.repositories")

ModelT = TypeVar("ModelT", bound=BaseModel)

# Returned by PostgREST when a single-object read matched no row
NO_ROW_CODE = "PGRST116"

_SINGLE_OBJECT = "application/vnd.pgrst.object+json"


def eq(value: Any) -> str:
    """PostgREST ``eq`` filter operand."""
    if isinstance(value, bool):
        return f"eq.{str(value).lower()}"
    return f"eq.{value}"


class BaseRepository(ABC):
    """Shared HTTP plumbing for one backend table.

    Subclasses set ``RESOURCE`` (cache resource name) and ``TABLE`` (backend
    table) and build their reads/writes from the ``_select`` / ``_insert`` /
    ``_update`` / ``_delete`` / ``_rpc`` helpers.
    """

    #: Cache resource name ('people', 'intentions', 'prayers').
    RESOURCE: str = "unknown"

    #: Backend table name.
    TABLE: str = "unknown"

    def __init__(
        self,
        base_url: str | None = None,
        anon_key: str | None = None,
        access_token: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ) -> None:
        """Initialize the repository.

        Args:
            base_url:     Supabase project URL (PRAYSYNC_SUPABASE_URL).
            anon_key:     Public anon key sent as ``apikey`` (PRAYSYNC_SUPABASE_ANON_KEY).
            access_token: Signed-in user's JWT; falls back to the anon key.
            http_client:  Optional pre-configured httpx client (for testing).
            timeout:      Per-request timeout in seconds.
        """
        settings = get_settings()
        self._base_url = (base_url or settings.supabase_url).rstrip("/")
        self._anon_key = anon_key if anon_key is not None else settings.supabase_anon_key
        self._access_token = access_token
        self._http_client = http_client
        self._timeout = timeout if timeout is not None else settings.request_timeout_seconds

    def set_access_token(self, token: str | None) -> None:
        """Swap the bearer token after a session refresh or sign-out."""
        self._access_token = token

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _build_headers(self, extra: Mapping[str, str] | None = None) -> dict[str, str]:
        headers = {
            "apikey": self._anon_key,
            "Authorization": f"Bearer {self._access_token or self._anon_key}",
            "Content-Type": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    def _url(self, path: str) -> str:
        return f"{self._base_url}/rest/v1/{path.lstrip('/')}"

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> httpx.Response:
        """Issue one request and translate transport failures.

        Raises:
            TransientNetworkError: Connection, timeout or protocol failure.
        """
        url = self._url(path)
        request_headers = self._build_headers(headers)
        try:
            if self._http_client is not None:
                return await self._http_client.request(
                    method, url, params=params, json=json, headers=request_headers, timeout=self._timeout
                )
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                return await client.request(method, url, params=params, json=json, headers=request_headers)
        except httpx.TransportError as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            raise TransientNetworkError(f"{self.RESOURCE}: {exc}") from exc

    @staticmethod
    def _body(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None

    def _error_for(self, response: httpx.Response, operation: str) -> PraySyncError:
        error = classify_http_error(response.status_code, self._body(response))
        logger.warning(
            "%s %s failed with %s (%s): %s",
            self.RESOURCE,
            operation,
            response.status_code,
            error.code,
            error.message,
        )
        return error

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        *,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
        headers: Mapping[str, str] | None = None,
        single: bool = False,
    ) -> Any:
        """Send a request and return the decoded JSON body.

        With ``single=True`` the response is requested as one object and a
        no-row result returns None instead of raising.
        """
        if single:
            headers = {**(headers or {}), "Accept": _SINGLE_OBJECT}
        response = await self._send(method, path, params=params, json=json, headers=headers)

        if response.is_success:
            if not response.content:
                return None
            try:
                return response.json()
            except ValueError as exc:
                raise ValidationError(f"{self.RESOURCE} {operation}: response is not JSON") from exc

        if single:
            body = self._body(response)
            if isinstance(body, dict) and body.get("code") == NO_ROW_CODE:
                return None
        raise self._error_for(response, operation)

    # ------------------------------------------------------------------
    # Table helpers
    # ------------------------------------------------------------------

    async def _select(self, params: Mapping[str, Any], operation: str) -> list[dict]:
        rows = await self._request("GET", self.TABLE, operation, params=params)
        if rows is None:
            return []
        if not isinstance(rows, list):
            raise ValidationError(f"{self.RESOURCE} {operation}: expected a list of rows")
        return rows

    async def _select_one(self, params: Mapping[str, Any], operation: str) -> dict | None:
        return await self._request("GET", self.TABLE, operation, params=params, single=True)

    async def _insert(self, row: Mapping[str, Any], operation: str, select: str = "*") -> dict:
        created = await self._request(
            "POST",
            self.TABLE,
            operation,
            params={"select": select},
            json=dict(row),
            headers={"Prefer": "return=representation"},
            single=True,
        )
        if created is None:
            raise ValidationError(f"{self.RESOURCE} {operation}: insert returned no row")
        return created

    async def _update(
        self,
        filters: Mapping[str, Any],
        changes: Mapping[str, Any],
        operation: str,
        select: str = "*",
    ) -> dict | None:
        return await self._request(
            "PATCH",
            self.TABLE,
            operation,
            params={**filters, "select": select},
            json=dict(changes),
            headers={"Prefer": "return=representation"},
            single=True,
        )

    async def _delete(self, filters: Mapping[str, Any], operation: str) -> None:
        await self._request("DELETE", self.TABLE, operation, params=filters)

    async def _rpc(self, function: str, args: Mapping[str, Any], operation: str) -> Any:
        return await self._request("POST", f"rpc/{function}", operation, json=dict(args))

    # ------------------------------------------------------------------
    # Decoding
    # ------------------------------------------------------------------

    def _decode(self, model: type[ModelT], payload: Any) -> ModelT:
        """Validate one row into ``model``.

        Raises:
            ValidationError: The row does not match the model.
        """
        try:
            return model.model_validate(payload)
        except PydanticValidationError as exc:
            raise ValidationError(
                f"{self.RESOURCE}: malformed {model.__name__} payload",
                details=exc.errors(include_url=False),
            ) from exc

    def _decode_list(self, model: type[ModelT], rows: list[Any]) -> list[ModelT]:
        return [self._decode(model, row) for row in rows]

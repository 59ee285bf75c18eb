"""
Persistence adapter for a PostgREST endpoint (``/rest/v1/<table>``) via httpx.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from .persistence import NETWORK_ERROR, NO_ROWS, Filters, Result

logger = logging.getLogger(__name__)


def _literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if hasattr(value, "value"):
        value = value.value
    return str(value)


def _quoted(value: Any) -> str:
    text = _literal(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{text}"'


def filter_params(filters: Optional[Filters]) -> List[Tuple[str, str]]:
    """Translate equality/IN filters into PostgREST query parameters."""
    params = []
    for column, value in (filters or {}).items():
        if isinstance(value, (list, tuple, set)):
            params.append((column, f"in.({','.join(_quoted(v) for v in value)})"))
        elif value is None:
            params.append((column, "is.null"))
        else:
            params.append((column, f"eq.{_literal(value)}"))
    return params


def _error_result(response: httpx.Response) -> Result:
    try:
        payload = response.json()
    except ValueError:
        payload = (response.text or "")[:500]
    if isinstance(payload, dict):
        message = payload.get("message") or payload.get("error") or f"HTTP {response.status_code}"
        code = payload.get("code") or str(response.status_code)
        details = {k: v for k, v in payload.items() if k in ("details", "hint")}
    else:
        message = payload or f"HTTP {response.status_code}"
        code = str(response.status_code)
        details = {}
    details["status_code"] = response.status_code
    return Result.failure(message, code, details)


class PostgrestPersistence:
    """
    Persistence over the REST interface of a hosted Postgres project.

    Every write asks for ``return=representation`` so the affected rows come
    back in ``data``, which the task cache uses as its confirmed state.
    """

    def __init__(self, rest_url: str, api_key: Optional[str] = None, *,
                 access_token: Optional[str] = None, schema: str = "public",
                 timeout: float = 30.0, client: Optional[httpx.AsyncClient] = None):
        headers = {"Accept": "application/json"}
        if api_key:
            headers["apikey"] = api_key
        token = access_token or api_key
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if schema != "public":
            headers["Accept-Profile"] = schema
            headers["Content-Profile"] = schema
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(base_url=rest_url.rstrip("/"), timeout=timeout)
        self.client.headers.update(headers)

    @classmethod
    def from_settings(cls, settings, client: Optional[httpx.AsyncClient] = None) -> "PostgrestPersistence":
        return cls(settings.rest_url, settings.api_key, access_token=settings.access_token,
                   schema=settings.db_schema, client=client)

    async def _request(self, method: str, table: str, *, params: Sequence[Tuple[str, str]] = (),
                       json: Any = None, prefer: Optional[str] = None) -> Result:
        headers = {"Prefer": prefer} if prefer else None
        try:
            response = await self.client.request(method, f"/{table}", params=list(params),
                                                 json=json, headers=headers)
        except httpx.HTTPError as e:
            logger.warning(f"{method} /{table} failed: {e}")
            return Result.failure(str(e) or type(e).__name__, NETWORK_ERROR)
        if response.status_code >= 400:
            result = _error_result(response)
            logger.warning(f"{method} /{table} -> {response.status_code}: {result.error.message}")
            return result
        if response.status_code == 204 or not response.content:
            return Result.success([])
        payload = response.json()
        if isinstance(payload, dict):
            payload = [payload]
        return Result.success(payload)

    async def select(self, table: str, *, filters: Optional[Filters] = None,
                     order: Optional[str] = None, descending: bool = False,
                     columns: str = "*") -> Result:
        params = [("select", columns)] + filter_params(filters)
        if order:
            params.append(("order", f"{order}.{'desc' if descending else 'asc'}"))
        return await self._request("GET", table, params=params)

    async def insert(self, table: str, rows: Sequence[Dict[str, Any]]) -> Result:
        return await self._request("POST", table, json=list(rows), prefer="return=representation")

    async def update(self, table: str, values: Dict[str, Any], *, filters: Filters) -> Result:
        if not filters:
            return Result.failure("Refusing to update without filters", NO_ROWS)
        return await self._request("PATCH", table, params=filter_params(filters), json=values,
                                   prefer="return=representation")

    async def delete(self, table: str, *, filters: Filters) -> Result:
        if not filters:
            return Result.failure("Refusing to delete without filters", NO_ROWS)
        return await self._request("DELETE", table, params=filter_params(filters),
                                   prefer="return=representation")

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> "PostgrestPersistence":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

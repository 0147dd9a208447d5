# storefront/clients/api.py
import logging
from typing import Any

import httpx

from storefront.core.config import Settings, get_settings
from storefront.core.errors import StoreError

logger = logging.getLogger(__name__)


def create_api_client(
    settings: Settings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """
    Build the HTTP client shared by the Cart Store and Catalog Store.

    The bearer token is attached when configured; obtaining it is the
    auth flow's job.
    """
    settings = settings or get_settings()
    headers = {"Content-Type": "application/json"}
    if settings.API_TOKEN:
        headers["Authorization"] = f"Bearer {settings.API_TOKEN}"
    return httpx.AsyncClient(
        base_url=settings.API_BASE_URL,
        headers=headers,
        timeout=settings.REQUEST_TIMEOUT_SECONDS,
        transport=transport,
    )


def _error_message(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        message = body.get("message")
        if isinstance(message, str) and message:
            return message
    return None


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    path: str,
    *,
    error_cls: type[StoreError],
    default_message: str,
    json: Any = None,
    params: dict[str, Any] | None = None,
) -> Any:
    """
    Send a request and return the decoded JSON body (None when empty).

    Raises:
        error_cls: on transport failure, non-2xx status or a non-JSON body.
            The server's `message` field is used when it sends one.
    """
    try:
        response = await client.request(method, path, json=json, params=params)
    except httpx.HTTPError as e:
        logger.error(f"{method} {path} failed: {e}")
        raise error_cls(default_message) from e

    if response.is_error:
        message = _error_message(response) or default_message
        logger.warning(f"{method} {path} -> {response.status_code}: {message}")
        raise error_cls(message, status_code=response.status_code)

    if not response.content:
        return None

    try:
        return response.json()
    except ValueError as e:
        raise error_cls(default_message, status_code=response.status_code) from e

"""Shared utilities for calling the external services behind market creation."""

from __future__ import annotations

from typing import Any, Mapping, MutableMapping

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

DEFAULT_TIMEOUT_SECONDS = 30.0
_DEFAULT_WAIT = wait_exponential(min=1, max=16)
_DEFAULT_STOP = stop_after_attempt(5)


Headers = Mapping[str, str] | None
Params = Mapping[str, Any] | None
Data = MutableMapping[str, Any] | bytes | str | None
JsonData = Any


def is_transient_error(exc: BaseException) -> bool:
    """Return True for failures worth retrying: transport errors, timeouts and 5xx."""

    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500 or exc.response.status_code == 429
    return isinstance(exc, (httpx.TransportError, TimeoutError))


async def request_json(
    url: str,
    *,
    headers: Headers = None,
    params: Params = None,
    method: str = "GET",
    data: Data = None,
    json: JsonData = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> Any:
    """Execute a single HTTP request and return the decoded JSON payload.

    No retries happen here; callers that own a retry policy (the deployment
    orchestrator) use this directly so a failed attempt is never multiplied.
    """

    request_method = method.upper()
    async with httpx.AsyncClient(timeout=timeout) as client:
        response = await client.request(
            request_method,
            url,
            headers=headers,
            params=params,
            data=data,
            json=json,
        )

    response.raise_for_status()
    return response.json()


@retry(
    wait=_DEFAULT_WAIT,
    stop=_DEFAULT_STOP,
    retry=retry_if_exception(is_transient_error),
    reraise=True,
)
async def fetch_json(
    url: str,
    *,
    headers: Headers = None,
    params: Params = None,
    method: str = "GET",
    data: Data = None,
    json: JsonData = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> Any:
    """Execute an HTTP request and return the decoded JSON payload.

    Retries with exponential backoff when transient failures occur. The helper keeps
    the interface close to ``httpx.AsyncClient.request`` so service clients can
    forward API-specific requirements (headers, params, JSON body, etc.) without
    reimplementing networking concerns.
    """

    return await request_json(
        url,
        headers=headers,
        params=params,
        method=method,
        data=data,
        json=json,
        timeout=timeout,
    )


__all__ = ["fetch_json", "request_json", "is_transient_error", "DEFAULT_TIMEOUT_SECONDS"]

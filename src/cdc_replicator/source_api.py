"""HTTP access to third-party source APIs (backfill pages, enrichment, verification)."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, Tuple

import httpx

from .errors import UpstreamFetchError

logger = logging.getLogger(__name__)

Auth = Optional[Tuple[str, str]]


class SourceApiClient:
    """Thin wrapper over :class:`httpx.Client` that maps failures to one error.

    Non-2xx responses, timeouts and transport errors all raise
    :class:`UpstreamFetchError`; nothing is retried here, the caller owns
    retry policy.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 30.0,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.Client(
            timeout=timeout_seconds,
            headers={"Accept": "application/json"},
        )

    def close(self) -> None:
        if self._owns_client:
            self._http_client.close()

    def __enter__(self) -> "SourceApiClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
        auth: Auth = None,
        json: Any = None,
    ) -> httpx.Response:
        try:
            response = self._http_client.request(
                method,
                url,
                params=params,
                headers=headers,
                auth=auth,
                json=json,
            )
        except httpx.TimeoutException as exc:
            raise UpstreamFetchError(f"request to {url} timed out", url=url) from exc
        except httpx.RequestError as exc:
            raise UpstreamFetchError(f"request to {url} failed: {exc}", url=url) from exc
        if not response.is_success:
            logger.debug("source api %s %s returned %s", method, url, response.status_code)
            raise UpstreamFetchError(
                f"{method} {url} returned HTTP {response.status_code}",
                status=response.status_code,
                url=url,
            )
        return response

    def get_json(
        self,
        url: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
        auth: Auth = None,
    ) -> Any:
        response = self.request("GET", url, params=params, headers=headers, auth=auth)
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamFetchError(
                f"GET {url} returned a non-JSON body",
                status=response.status_code,
                url=url,
            ) from exc


__all__ = ["SourceApiClient"]

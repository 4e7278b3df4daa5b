"""Read-only client for the billing provider's subscription listing API."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Protocol
from urllib import error as urllib_error, parse as urllib_parse, request as urllib_request

from pydantic import BaseModel, ConfigDict, Field

from .errors import ProviderRateLimited, ProviderUnavailable

logger = logging.getLogger("billing.sync.provider")


class ProviderPage(BaseModel):
    """One page of provider subscription objects."""

    data: List[Dict[str, Any]] = Field(default_factory=list)
    has_more: bool = False

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def next_cursor(self) -> Optional[str]:
        if not self.has_more or not self.data:
            return None
        last_id = self.data[-1].get("id")
        return str(last_id) if last_id else None


class ProviderClient(Protocol):
    """Cursor-paginated listing of every subscription the provider knows."""

    def list_subscriptions(self, *, limit: int, starting_after: Optional[str] = None) -> ProviderPage:
        ...


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class HttpProviderClient:
    """``urllib`` implementation of :class:`ProviderClient`.

    ``429`` responses raise :class:`ProviderRateLimited` carrying the
    ``Retry-After`` hint; other HTTP errors, network failures and bodies that
    are not a page raise :class:`ProviderUnavailable`.
    """

    def __init__(self, base_url: str, api_key: str, *, timeout: float = 10.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout

    def _build_request(self, path: str, params: Dict[str, Any]) -> urllib_request.Request:
        query_string = urllib_parse.urlencode({k: v for k, v in params.items() if v is not None})
        url = f"{self._base_url}{path}"
        if query_string:
            url = f"{url}?{query_string}"
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return urllib_request.Request(url, headers=headers, method="GET")

    def list_subscriptions(self, *, limit: int, starting_after: Optional[str] = None) -> ProviderPage:
        request = self._build_request(
            "/subscriptions",
            {"limit": limit, "starting_after": starting_after},
        )
        try:
            with urllib_request.urlopen(request, timeout=self._timeout) as response:
                body = response.read()
        except urllib_error.HTTPError as exc:
            if exc.code == 429:
                retry_after = _parse_retry_after(exc.headers.get("Retry-After") if exc.headers else None)
                logger.warning(
                    "Provider rate limited subscription listing",
                    extra={"starting_after": starting_after, "retry_after": retry_after},
                )
                raise ProviderRateLimited("Provider rate limit exceeded", retry_after=retry_after) from exc
            raise ProviderUnavailable(f"Provider returned HTTP {exc.code}") from exc
        except (urllib_error.URLError, OSError) as exc:
            raise ProviderUnavailable(f"Provider request failed: {exc}") from exc

        try:
            payload = json.loads(body.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ProviderUnavailable("Provider returned a malformed page") from exc

        if not isinstance(payload, dict) or not isinstance(payload.get("data"), list):
            raise ProviderUnavailable("Provider page is missing its data list")
        items = [item for item in payload["data"] if isinstance(item, dict)]
        return ProviderPage(data=items, has_more=bool(payload.get("has_more", False)))


__all__ = ["HttpProviderClient", "ProviderClient", "ProviderPage"]

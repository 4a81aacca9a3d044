"""
Webinar provider REST client with rate-limit handling and cursor pagination.

Every request goes through the shared retry utility with two separate
budgets: one for 429 responses and one for timeouts/5xx. A 401 is surfaced
immediately so the job can fail without spending the retry budget.
"""

import asyncio
import random
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

from app.config import settings
from app.features.webinar_sync.domain.errors import (
    AuthInvalid,
    Fatal,
    RateLimited,
    ResourceUnavailable,
    Transient,
)
from app.features.webinar_sync.domain.models import Connection, Page
from app.infrastructure.observability.logging import get_logger
from app.utils.retry import RetryClass, RetryDecision, RetryExhausted, RetryPolicy, retry_async

logger = get_logger(__name__)

TRANSIENT_STATUS_CODES = {408, 500, 502, 503, 504}
CHILD_UNAVAILABLE_STATUS_CODES = {400, 404}


class ProviderEndpoint(str, Enum):
    WEBINARS = "webinars"
    REGISTRANTS = "registrants"
    PARTICIPANTS = "participants"
    POLLS = "polls"
    QA = "qa"


@dataclass(slots=True, frozen=True)
class EndpointSpec:
    path: str
    items_key: str | None
    # child resources may legitimately be missing for a given webinar
    child: bool


ENDPOINTS: dict[ProviderEndpoint, EndpointSpec] = {
    ProviderEndpoint.WEBINARS: EndpointSpec("/users/me/webinars", "webinars", child=False),
    ProviderEndpoint.REGISTRANTS: EndpointSpec(
        "/webinars/{webinar_id}/registrants", "registrants", child=True
    ),
    ProviderEndpoint.PARTICIPANTS: EndpointSpec(
        "/report/webinars/{webinar_id}/participants", "participants", child=True
    ),
    ProviderEndpoint.POLLS: EndpointSpec("/past_webinars/{webinar_id}/polls", None, child=True),
    ProviderEndpoint.QA: EndpointSpec("/past_webinars/{webinar_id}/qa", None, child=True),
}


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        # HTTP-date form is not used by the provider; treat as absent
        return None
    return seconds if seconds >= 0 else None


def _classify(exc: BaseException) -> RetryDecision:
    if isinstance(exc, RateLimited):
        return RetryDecision(RetryClass.RATE_LIMITED, exc.retry_after)
    if isinstance(exc, Transient):
        return RetryDecision(RetryClass.TRANSIENT)
    return RetryDecision(RetryClass.FATAL)


class PageStream:
    """
    Async iterator over the pages of one entity stream.

    Stops on the last page, on an inconsistent has_more/cursor pair, on a
    repeated cursor, or at the page ceiling. `truncated` tells the caller
    whether the stream ended before the provider said it was done.
    """

    def __init__(
        self,
        client: "ProviderApiClient",
        endpoint: ProviderEndpoint,
        page_size: int,
        max_pages: int,
        path_params: dict[str, Any],
    ):
        self._client = client
        self._endpoint = endpoint
        self._page_size = page_size
        self._max_pages = max_pages
        self._path_params = path_params
        self.pages_fetched = 0
        self.truncated = False
        self.stop_reason: str | None = None

    def __aiter__(self) -> AsyncIterator[Page]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Page]:
        cursor: str | None = None
        seen_cursors: set[str] = set()

        while True:
            if self.pages_fetched >= self._max_pages:
                self.truncated = True
                self.stop_reason = "max_pages"
                logger.warning(
                    "Page ceiling reached, stopping stream",
                    endpoint=self._endpoint.value,
                    max_pages=self._max_pages,
                    **self._path_params,
                )
                return

            page = await self._client.fetch_page(
                self._endpoint, cursor, self._page_size, **self._path_params
            )
            self.pages_fetched += 1
            yield page

            if not page.has_more:
                self.stop_reason = "complete"
                return

            if not page.next_cursor:
                self.truncated = True
                self.stop_reason = "missing_cursor"
                logger.warning(
                    "Provider reported more pages without a cursor",
                    endpoint=self._endpoint.value,
                    page=self.pages_fetched,
                )
                return

            if page.next_cursor in seen_cursors:
                self.truncated = True
                self.stop_reason = "repeated_cursor"
                logger.warning(
                    "Provider repeated a page cursor",
                    endpoint=self._endpoint.value,
                    page=self.pages_fetched,
                )
                return

            seen_cursors.add(page.next_cursor)
            cursor = page.next_cursor


class ProviderApiClient:
    """
    Client for the provider's list and report endpoints.

    One instance per sync job: it carries the connection's bearer token and
    is closed when the job ends.
    """

    def __init__(
        self,
        access_token: str,
        *,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        rate_limit_policy: RetryPolicy | None = None,
        transient_policy: RetryPolicy | None = None,
        max_retry_after: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self._access_token = access_token
        self._base_url = (base_url or settings.ZOOM_API_BASE_URL).rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(timeout or settings.SYNC_REQUEST_TIMEOUT_SECONDS),
            limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
            transport=transport,
        )
        self._policies = {
            RetryClass.RATE_LIMITED: rate_limit_policy
            or RetryPolicy(
                max_retries=settings.SYNC_RATE_LIMIT_MAX_RETRIES,
                base_delay=settings.SYNC_BACKOFF_BASE_SECONDS * 2,
                max_delay=settings.SYNC_BACKOFF_MAX_SECONDS,
            ),
            RetryClass.TRANSIENT: transient_policy
            or RetryPolicy(
                max_retries=settings.SYNC_TRANSIENT_MAX_RETRIES,
                base_delay=settings.SYNC_BACKOFF_BASE_SECONDS,
                max_delay=settings.SYNC_BACKOFF_MAX_SECONDS,
            ),
        }
        self._max_retry_after = (
            max_retry_after if max_retry_after is not None else settings.SYNC_MAX_RETRY_AFTER_SECONDS
        )
        self._sleep = sleep
        self._rng = rng

    async def __aenter__(self) -> "ProviderApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    def _get_auth_headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self._access_token}",
            "Accept": "application/json",
        }

    async def fetch_page(
        self,
        endpoint: ProviderEndpoint,
        cursor: str | None = None,
        page_size: int | None = None,
        **path_params: Any,
    ) -> Page:
        """
        Fetch one page of a list endpoint.

        Raises:
            AuthInvalid: credential rejected (never retried)
            Fatal: non-retryable failure or exhausted retry budget
            ResourceUnavailable: child resource missing for this webinar
        """
        spec = ENDPOINTS[endpoint]
        if spec.items_key is None:
            raise ValueError(f"{endpoint.value} is not a paginated endpoint")

        params: dict[str, Any] = {"page_size": page_size or settings.SYNC_PAGE_SIZE}
        if cursor:
            params["next_page_token"] = cursor

        data = await self._request(spec, params, path_params)

        items = data.get(spec.items_key) or []
        if not isinstance(items, list):
            raise Fatal(f"Malformed {endpoint.value} page: '{spec.items_key}' is not a list")

        next_cursor = data.get("next_page_token") or None
        total = data.get("total_records")
        return Page(
            items=items,
            next_cursor=next_cursor,
            has_more=bool(next_cursor),
            total_records=total if isinstance(total, int) else None,
        )

    def stream(
        self,
        endpoint: ProviderEndpoint,
        *,
        page_size: int | None = None,
        max_pages: int | None = None,
        **path_params: Any,
    ) -> PageStream:
        """Iterate every page of an endpoint in cursor order."""
        if max_pages is None:
            max_pages = (
                settings.SYNC_MAX_WEBINAR_PAGES
                if endpoint is ProviderEndpoint.WEBINARS
                else settings.SYNC_MAX_CHILD_PAGES
            )
        return PageStream(
            self, endpoint, page_size or settings.SYNC_PAGE_SIZE, max_pages, path_params
        )

    async def fetch_resource(self, endpoint: ProviderEndpoint, **path_params: Any) -> dict:
        """Fetch a single non-paginated report (polls, Q&A)."""
        return await self._request(ENDPOINTS[endpoint], {}, path_params)

    async def _request(
        self, spec: EndpointSpec, params: dict[str, Any], path_params: dict[str, Any]
    ) -> dict:
        path = spec.path.format(**path_params)
        try:
            return await retry_async(
                lambda: self._send_once(spec, path, params),
                classify=_classify,
                policies=self._policies,
                sleep=self._sleep,
                rng=self._rng,
                max_delay_hint=self._max_retry_after,
                operation_name=f"GET {spec.path}",
            )
        except RetryExhausted as e:
            raise Fatal(
                f"{path} still failing after {e.attempts} {e.retry_class.value} retries",
                retries_exhausted=True,
            ) from e.last_error

    async def _send_once(self, spec: EndpointSpec, path: str, params: dict[str, Any]) -> dict:
        try:
            response = await self._client.get(path, params=params, headers=self._get_auth_headers())
        except httpx.TimeoutException as e:
            raise Transient(f"timeout calling {path}") from e
        except httpx.TransportError as e:
            raise Transient(f"{type(e).__name__} calling {path}") from e

        return self._handle_api_response(response, spec, path)

    def _handle_api_response(self, response: httpx.Response, spec: EndpointSpec, path: str) -> dict:
        status_code = response.status_code

        if response.is_success:
            try:
                data = response.json() if response.content else {}
            except ValueError as e:
                raise Fatal(f"Invalid JSON from {path}") from e
            if not isinstance(data, dict):
                raise Fatal(f"Unexpected response shape from {path}")
            return data

        message = self._error_message(response)

        if status_code == 401:
            logger.warning("Provider rejected credentials", path=path)
            raise AuthInvalid(message or "Provider rejected the access token")

        if status_code == 429:
            raise RateLimited(_parse_retry_after(response.headers.get("Retry-After")))

        if status_code in TRANSIENT_STATUS_CODES or status_code >= 500:
            raise Transient(f"HTTP {status_code} from {path}")

        if spec.child and status_code in CHILD_UNAVAILABLE_STATUS_CODES:
            raise ResourceUnavailable(path, status_code, message)

        logger.error("Provider request failed", path=path, status_code=status_code, error=message)
        raise Fatal(f"HTTP {status_code} from {path}: {message}")

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200] if response.text else ""
        if isinstance(body, dict):
            return str(body.get("message") or body.get("error") or "")
        return ""


def build_provider_client(connection: Connection) -> ProviderApiClient:
    """Default client factory used by the orchestrator."""
    return ProviderApiClient(connection.access_token)

"""Client for the per-event detail (enrichment) endpoint."""
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests
from bs4 import BeautifulSoup

from enrichment.rate_limit import RateLimiter, RetryPolicy
from processor.errors import (
    EnrichmentError,
    EnrichmentTimeoutError,
    MalformedDetailError,
    NotFoundError,
    ServerError,
    ThrottledError,
)
from processor.models import EnrichmentResult, EnrichmentStatus, Event

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class EnrichmentClient:
    """
    Fetches supplementary detail for events by slug.

    Enrichment is best effort: a lookup that cannot be completed yields the
    original event tagged FAILED rather than an exception, so one bad item
    never aborts a batch.
    """

    DEFAULT_URL = "https://api.lu.ma/public/v1/event/get"
    MAX_DESCRIPTION_LENGTH = 2000

    def __init__(
        self,
        base_url: str = DEFAULT_URL,
        api_key: Optional[str] = None,
        timeout: int = 10,
        retry_policy: Optional[RetryPolicy] = None,
        rate_limiter: Optional[RateLimiter] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = _utc_now
    ):
        """
        Initialize the enrichment client.

        Args:
            base_url: Detail endpoint, queried with ``?slug=<slug>``
            api_key: Optional bearer token sent with every request
            timeout: HTTP request timeout in seconds (default: 10)
            retry_policy: Retry ceiling and backoff (default: RetryPolicy())
            rate_limiter: Pacing shared by every request this client makes
            session: Optional requests session to reuse
            sleep: Sleep function used for backoff delays
            now: Clock used to stamp ``enriched_at``
        """
        self.base_url = base_url
        self.api_key = api_key
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.rate_limiter = rate_limiter or RateLimiter()
        self.session = session or requests.Session()
        self._sleep = sleep
        self._now = now

    def enrich(self, event: Event) -> EnrichmentResult:
        """
        Enrich one event with detail fetched by its slug.

        Args:
            event: Event fresh from the feed

        Returns:
            EnrichmentResult with the enriched event, or the original event
            tagged SKIPPED (no slug) or FAILED (lookup failed)
        """
        if not event.slug:
            logger.debug(f"Event {event.external_id} has no slug, skipping enrichment")
            return EnrichmentResult(event=event, status=EnrichmentStatus.SKIPPED)

        try:
            detail = self.fetch_detail(event.slug)
            enriched = self._apply_detail(event, detail)
        except EnrichmentError as e:
            logger.warning(
                f"Enrichment failed for event {event.external_id} "
                f"(slug '{event.slug}'): {e}"
            )
            return EnrichmentResult(
                event=event, status=EnrichmentStatus.FAILED, error=e
            )

        return EnrichmentResult(event=enriched, status=EnrichmentStatus.ENRICHED)

    def enrich_many(
        self,
        events: Iterable[Event],
        max_workers: int = 1,
        should_stop: Optional[Callable[[], bool]] = None
    ) -> List[Optional[EnrichmentResult]]:
        """
        Enrich a batch of events, preserving their order.

        With ``max_workers > 1`` requests overlap their network wait, but every
        worker still passes through this client's rate limiter.

        Args:
            events: Events to enrich
            max_workers: Number of concurrent lookups (default: 1)
            should_stop: Polled before each lookup; once true, no further
                lookups start

        Returns:
            One entry per input event, in input order: its EnrichmentResult,
            or None if the lookup never started because of ``should_stop``
        """
        def enrich_one(event: Event) -> Optional[EnrichmentResult]:
            if should_stop is not None and should_stop():
                return None
            return self.enrich(event)

        if max_workers <= 1:
            return [enrich_one(event) for event in events]

        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            return list(executor.map(enrich_one, events))

    def fetch_detail(self, slug: str) -> Dict[str, Any]:
        """
        Fetch the detail record for a slug, retrying throttled requests.

        Args:
            slug: Provider slug of the event

        Returns:
            Decoded detail record

        Raises:
            EnrichmentError: If the lookup fails or retries are exhausted
        """
        policy = self.retry_policy
        attempt = 0

        while True:
            attempt += 1
            try:
                return self._request_detail(slug)
            except EnrichmentError as e:
                if not e.retryable:
                    raise
                if attempt >= policy.max_attempts:
                    logger.error(
                        f"All {policy.max_attempts} attempts failed for slug "
                        f"'{slug}'. Last error: {e}"
                    )
                    raise

                retry_after = getattr(e, 'retry_after', None)
                delay = policy.delay_for(attempt, retry_after)
                logger.warning(
                    f"Detail request failed (attempt {attempt}/{policy.max_attempts}): "
                    f"{e}. Retrying in {delay} seconds..."
                )
                self._sleep(delay)

    def _request_detail(self, slug: str) -> Dict[str, Any]:
        self.rate_limiter.wait()

        headers = {'Accept': 'application/json'}
        if self.api_key:
            headers['Authorization'] = f"Bearer {self.api_key}"

        try:
            response = self.session.get(
                self.base_url,
                params={'slug': slug},
                headers=headers,
                timeout=self.timeout
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            raise EnrichmentTimeoutError(f"Request failed: {e}", slug=slug) from e
        except requests.RequestException as e:
            raise ServerError(f"Request failed: {e}", slug=slug) from e

        status = response.status_code
        if status in self.retry_policy.retry_on_status:
            raise ThrottledError(
                f"Rate limited (HTTP {status})",
                slug=slug,
                retry_after=self._retry_after(response)
            )
        if status == 404:
            raise NotFoundError(f"No event found for slug '{slug}'", slug=slug)
        if not 200 <= status < 300:
            raise ServerError(
                f"Detail request failed with HTTP {status}",
                slug=slug,
                status_code=status
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise MalformedDetailError(
                f"Detail body is not valid JSON: {e}", slug=slug
            ) from e

        detail = self._locate_detail(payload)
        if detail is None:
            raise MalformedDetailError("Detail body has no event object", slug=slug)
        return detail

    @staticmethod
    def _retry_after(response: requests.Response) -> Optional[float]:
        value = response.headers.get('Retry-After')
        if value is None:
            return None
        try:
            return max(0.0, float(value))
        except ValueError:
            # HTTP-date form; fall back to the policy delay
            return None

    @staticmethod
    def _locate_detail(payload: Any) -> Optional[Dict[str, Any]]:
        if not isinstance(payload, dict):
            return None

        # Hosts and guest counts sit beside the event object, not inside it
        container = payload.get('entity') if isinstance(payload.get('entity'), dict) else payload
        if not isinstance(container.get('event'), dict):
            return payload

        detail = dict(container['event'])
        for key in ('hosts', 'guest_count'):
            if key in container and key not in detail:
                detail[key] = container[key]
        return detail

    def _apply_detail(self, event: Event, detail: Dict[str, Any]) -> Event:
        """
        Copy enrichment fields from a detail record onto the event.

        Fields missing from the record stay ``None`` so they never erase
        previously stored values during reconciliation.
        """
        return replace(
            event,
            api_id=self._text(detail.get('api_id')),
            description=self._description(detail),
            host_names=self._host_names(detail),
            attendee_count=self._attendee_count(detail),
            enriched_at=self._now(),
        )

    def _description(self, detail: Dict[str, Any]) -> Optional[str]:
        text = None
        if isinstance(detail.get('description'), str):
            text = detail['description'].strip()
        elif isinstance(detail.get('description_md'), str):
            text = detail['description_md'].strip()
        elif isinstance(detail.get('description_html'), str):
            soup = BeautifulSoup(detail['description_html'], 'html.parser')
            text = soup.get_text(separator='\n', strip=True)

        if text is None:
            return None
        return text[:self.MAX_DESCRIPTION_LENGTH]

    @staticmethod
    def _host_names(detail: Dict[str, Any]) -> Optional[List[str]]:
        hosts = detail.get('hosts')
        if not isinstance(hosts, list):
            return None
        names = []
        for host in hosts:
            if isinstance(host, dict) and isinstance(host.get('name'), str):
                names.append(host['name'].strip())
            elif isinstance(host, str):
                names.append(host.strip())
        return [name for name in names if name]

    @staticmethod
    def _attendee_count(detail: Dict[str, Any]) -> Optional[int]:
        for key in ('guest_count', 'attendee_count'):
            value = detail.get(key)
            if isinstance(value, bool):
                continue
            if isinstance(value, int):
                return value
        return None

    @staticmethod
    def _text(value: Any) -> Optional[str]:
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None

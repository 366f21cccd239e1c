"""Fetcher for the primary calendar event listing."""
import logging
from typing import Any, Iterator, List, Optional

import requests

from processor.errors import MalformedBodyError, NetworkError, UnexpectedStatusError
from processor.event_processor import EventProcessor
from processor.models import Event, TimeWindow

logger = logging.getLogger(__name__)


class FeedBatch:
    """
    Lazy, single-pass sequence of Events parsed from one feed response.

    ``skipped`` and ``filtered`` grow while the batch is consumed, so read
    them after iteration finishes.
    """

    def __init__(
        self,
        records: List[Any],
        processor: EventProcessor,
        limit: Optional[int] = None,
        window: Optional[TimeWindow] = None
    ):
        self.total_records = len(records)
        self.yielded = 0
        self.skipped = 0
        self.filtered = 0
        self._events = self._generate(records, processor, limit, window)

    def __iter__(self) -> Iterator[Event]:
        return self

    def __next__(self) -> Event:
        return next(self._events)

    def _generate(
        self,
        records: List[Any],
        processor: EventProcessor,
        limit: Optional[int],
        window: Optional[TimeWindow]
    ) -> Iterator[Event]:
        for index, record in enumerate(records):
            if limit is not None and self.yielded >= limit:
                return

            result = processor.parse(record)
            if not result.ok:
                self.skipped += 1
                logger.warning(
                    f"Skipping feed record {index}: {result.error}"
                )
                continue

            if window is not None and not window.contains(result.event.start_time):
                self.filtered += 1
                continue

            self.yielded += 1
            yield result.event


class CalendarFeedFetcher:
    """Client for the calendar's public event listing endpoint."""

    LISTING_KEYS = ('entries', 'events', 'items')
    USER_AGENT = 'calendar-event-sync/0.1'

    def __init__(
        self,
        timeout: int = 30,
        session: Optional[requests.Session] = None,
        processor: Optional[EventProcessor] = None
    ):
        """
        Initialize the feed fetcher.

        Args:
            timeout: HTTP request timeout in seconds (default: 30)
            session: Optional requests session to reuse
            processor: Record parser (default: EventProcessor())
        """
        self.timeout = timeout
        self.session = session or requests.Session()
        self.processor = processor or EventProcessor()

    def fetch_events(
        self,
        url: str,
        limit: Optional[int] = None,
        window: Optional[TimeWindow] = None
    ) -> FeedBatch:
        """
        Fetch the feed and return its events as a lazy batch.

        Args:
            url: Calendar listing URL
            limit: Maximum number of events to yield
            window: Only yield events starting inside this window

        Returns:
            FeedBatch over the parsed events

        Raises:
            NetworkError: If the request cannot be completed
            UnexpectedStatusError: If the endpoint answers with a non-2xx status
            MalformedBodyError: If the body is not a JSON event listing
        """
        if limit is not None and limit < 0:
            raise ValueError("limit must not be negative")

        logger.info(f"Fetching calendar feed from {url}")
        payload = self._fetch_json(url)
        records = self._extract_records(payload)
        logger.info(f"Feed returned {len(records)} records")

        return FeedBatch(records, self.processor, limit=limit, window=window)

    def _fetch_json(self, url: str) -> Any:
        try:
            response = self.session.get(
                url,
                headers={
                    'Accept': 'application/json',
                    'User-Agent': self.USER_AGENT,
                },
                timeout=self.timeout
            )
        except requests.RequestException as e:
            logger.error(f"Feed request to {url} failed: {e}")
            raise NetworkError(f"Feed request failed: {e}") from e

        if not 200 <= response.status_code < 300:
            logger.error(f"Feed request to {url} returned HTTP {response.status_code}")
            raise UnexpectedStatusError(response.status_code, url)

        try:
            return response.json()
        except ValueError as e:
            raise MalformedBodyError(f"Feed body is not valid JSON: {e}") from e

    def _extract_records(self, payload: Any) -> List[Any]:
        """
        Locate the list of event records in a decoded feed body.

        Args:
            payload: Decoded JSON body

        Returns:
            List of raw records

        Raises:
            MalformedBodyError: If no event list can be found
        """
        if isinstance(payload, list):
            return payload

        if isinstance(payload, dict):
            for key in self.LISTING_KEYS:
                records = payload.get(key)
                if isinstance(records, list):
                    return records

        raise MalformedBodyError(
            "Feed body does not contain an event listing "
            f"(expected a list or one of {', '.join(self.LISTING_KEYS)})"
        )

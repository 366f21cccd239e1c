"""Event processor for validating and normalizing provider records."""
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlparse

from processor.errors import ParseError
from processor.models import Event, ParseResult

logger = logging.getLogger(__name__)


class EventProcessor:
    """Turns raw provider records into validated Event values."""

    MAX_TITLE_LENGTH = 200

    # Hosts whose event URLs end in the slug used by the detail endpoint
    SLUG_HOSTS = ('lu.ma', 'luma.com')

    ID_KEYS = ('api_id', 'external_id', 'id')
    TITLE_KEYS = ('name', 'title', 'summary')
    START_KEYS = ('start_at', 'start_time', 'start')
    END_KEYS = ('end_at', 'end_time', 'end')

    def parse(self, record: Any) -> ParseResult:
        """
        Build an Event from one raw provider record.

        Args:
            record: Decoded JSON object from the feed listing

        Returns:
            ParseResult holding either the Event or the ParseError
        """
        try:
            return ParseResult.success(self._build_event(record))
        except ParseError as e:
            return ParseResult.failure(e)

    def parse_records(
        self,
        records: Iterable[Any]
    ) -> Tuple[List[Event], List[ParseError]]:
        """
        Parse a batch of records, keeping the failures apart.

        Args:
            records: Raw provider records

        Returns:
            Tuple of (parsed events, parse errors)
        """
        events = []
        failures = []
        for record in records:
            result = self.parse(record)
            if result.ok:
                events.append(result.event)
            else:
                failures.append(result.error)
        return events, failures

    def _build_event(self, record: Any) -> Event:
        if not isinstance(record, dict):
            raise ParseError(f"Record is not an object: {type(record).__name__}")

        # Luma-style entries wrap the event under an "event" key
        body = record.get('event') if isinstance(record.get('event'), dict) else record

        external_id = self._first_text(body, self.ID_KEYS)
        if not external_id:
            raise ParseError("Record missing required field: external_id")

        title = self._first_text(body, self.TITLE_KEYS)
        if not title:
            raise ParseError(
                "Record missing required field: title", record_id=external_id
            )

        start_raw = self._first_value(body, self.START_KEYS)
        if start_raw is None:
            raise ParseError(
                "Record missing required field: start_time", record_id=external_id
            )
        start_time = self.parse_datetime(start_raw, 'start_time', external_id)

        end_time = None
        end_raw = self._first_value(body, self.END_KEYS)
        if end_raw is not None:
            end_time = self.parse_datetime(end_raw, 'end_time', external_id)

        url = self.clean_url(body.get('url'))
        slug = self._first_text(body, ('slug',)) or self.extract_slug(url)

        return Event(
            external_id=external_id,
            title=title[:self.MAX_TITLE_LENGTH],
            start_time=start_time,
            end_time=end_time,
            location=self._extract_location(body),
            url=url,
            slug=slug,
            raw_source=record,
        )

    def parse_datetime(
        self,
        value: Any,
        field_name: str,
        record_id: Optional[str] = None
    ) -> datetime:
        """
        Parse a provider timestamp into an offset-aware datetime.

        Accepts ISO 8601 with ``Z`` or an explicit offset, and compact iCal
        UTC stamps such as ``20240601T100000Z``.

        Raises:
            ParseError: If the value is malformed or has no offset
        """
        if not isinstance(value, str) or not value.strip():
            raise ParseError(
                f"Invalid {field_name}: {value!r}", record_id=record_id
            )

        text = value.strip()
        if text.endswith(('Z', 'z')):
            text = text[:-1] + '+00:00'

        parsed = None
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            # Compact iCal form, which older fromisoformat rejects
            try:
                parsed = datetime.strptime(text, '%Y%m%dT%H%M%S%z')
            except ValueError:
                pass

        if parsed is None:
            raise ParseError(
                f"Invalid {field_name} format: {value!r}", record_id=record_id
            )
        if parsed.tzinfo is None or parsed.utcoffset() is None:
            raise ParseError(
                f"{field_name} has no timezone offset: {value!r}",
                record_id=record_id
            )
        return parsed

    def clean_url(self, url: Any) -> Optional[str]:
        """Strip stray line breaks (real or escaped) and whitespace from a URL."""
        if not isinstance(url, str):
            return None
        cleaned = (
            url.replace('\n', '')
            .replace('\r', '')
            .replace('\\n', '')
            .replace('\\r', '')
            .strip()
        )
        return cleaned or None

    def extract_slug(self, url: Optional[str]) -> Optional[str]:
        """
        Derive the detail-endpoint slug from a calendar event URL.

        Handles both ``https://lu.ma/<slug>`` and ``https://lu.ma/e/<slug>``.
        """
        if not url:
            return None
        parsed = urlparse(url)
        host = (parsed.hostname or '').lower()
        if not any(host == h or host.endswith('.' + h) for h in self.SLUG_HOSTS):
            return None

        segments = [s for s in parsed.path.split('/') if s]
        if not segments:
            return None
        return segments[-1]

    def _extract_location(self, body: Dict[str, Any]) -> Optional[str]:
        location = body.get('location')
        if isinstance(location, str) and location.strip():
            return location.strip()

        geo = body.get('geo_address_json')
        if isinstance(geo, dict):
            for key in ('full_address', 'address', 'city'):
                value = geo.get(key)
                if isinstance(value, str) and value.strip():
                    return value.strip()
        return None

    @staticmethod
    def _first_value(body: Dict[str, Any], keys: Tuple[str, ...]) -> Any:
        for key in keys:
            if body.get(key) is not None:
                return body[key]
        return None

    def _first_text(self, body: Dict[str, Any], keys: Tuple[str, ...]) -> Optional[str]:
        value = self._first_value(body, keys)
        if value is None:
            return None
        if isinstance(value, (int, str)) and not isinstance(value, bool):
            text = str(value).strip()
            return text or None
        return None

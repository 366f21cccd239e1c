"""Unit tests for EnrichmentClient."""
from datetime import datetime, timezone

import pytest
import responses
from requests.exceptions import Timeout

from conftest import make_event
from enrichment.event_detail_client import EnrichmentClient
from enrichment.rate_limit import RateLimiter, RetryPolicy
from processor.errors import (
    EnrichmentTimeoutError,
    NotFoundError,
    ServerError,
    ThrottledError,
)
from processor.models import EnrichmentStatus

DETAIL_URL = "https://api.lu.ma/public/v1/event/get"
ENRICHED_AT = datetime(2024, 6, 1, 8, 0, tzinfo=timezone.utc)

DETAIL_BODY = {
    'event': {
        'api_id': 'evt-abc',
        'name': 'Builders Meetup',
        'description': 'Demos and pizza',
    },
    'hosts': [{'name': 'Ada Lovelace'}, {'name': 'Grace Hopper'}],
    'guest_count': 57,
}


@pytest.fixture
def client(fake_clock):
    """Client with an injected clock so retries never really sleep."""
    return EnrichmentClient(
        base_url=DETAIL_URL,
        retry_policy=RetryPolicy(max_attempts=3, base_delay=1.0),
        rate_limiter=RateLimiter(
            min_interval=0.5, clock=fake_clock, sleep=fake_clock.sleep
        ),
        sleep=fake_clock.sleep,
        now=lambda: ENRICHED_AT
    )


class TestEnrichmentClient:
    """Test cases for EnrichmentClient class."""

    @responses.activate
    def test_enrich_success(self, client):
        responses.add(responses.GET, DETAIL_URL, json=DETAIL_BODY, status=200)
        event = make_event('a1', slug='builders')

        result = client.enrich(event)

        assert result.status is EnrichmentStatus.ENRICHED
        assert result.error is None
        enriched = result.event
        assert enriched.api_id == 'evt-abc'
        assert enriched.description == 'Demos and pizza'
        assert enriched.host_names == ['Ada Lovelace', 'Grace Hopper']
        assert enriched.attendee_count == 57
        assert enriched.enriched_at == ENRICHED_AT
        # Feed fields are untouched
        assert enriched.title == event.title
        assert enriched.start_time == event.start_time
        assert 'slug=builders' in responses.calls[0].request.url

    @responses.activate
    def test_entity_wrapped_detail(self, client):
        responses.add(
            responses.GET,
            DETAIL_URL,
            json={'entity': {'type': 'event', 'event': {'api_id': 'evt-xyz'}}},
            status=200
        )

        result = client.enrich(make_event('a1'))

        assert result.status is EnrichmentStatus.ENRICHED
        assert result.event.api_id == 'evt-xyz'
        # Not in the detail record, so left unknown
        assert result.event.description is None
        assert result.event.host_names is None

    @responses.activate
    def test_html_description_is_converted_to_text(self, client):
        responses.add(
            responses.GET,
            DETAIL_URL,
            json={'event': {
                'api_id': 'evt-abc',
                'description_html': '<p>Line <b>one</b></p><p>Line two</p>'
            }},
            status=200
        )

        result = client.enrich(make_event('a1'))

        assert result.event.description == 'Line\none\nLine two'

    def test_event_without_slug_is_skipped(self, client):
        event = make_event('a1', slug=None)

        result = client.enrich(event)

        assert result.status is EnrichmentStatus.SKIPPED
        assert result.event is event

    @responses.activate
    def test_throttled_then_success(self, client, fake_clock):
        """Throttled requests are retried with a doubling delay."""
        responses.add(responses.GET, DETAIL_URL, status=429)
        responses.add(responses.GET, DETAIL_URL, status=429)
        responses.add(responses.GET, DETAIL_URL, json=DETAIL_BODY, status=200)

        result = client.enrich(make_event('a1'))

        assert result.status is EnrichmentStatus.ENRICHED
        assert len(responses.calls) == 3
        assert 1.0 in fake_clock.sleeps
        assert 2.0 in fake_clock.sleeps

    @responses.activate
    def test_throttled_past_retry_ceiling(self, client):
        """Exhausted retries downgrade to the original event, tagged failed."""
        for _ in range(3):
            responses.add(responses.GET, DETAIL_URL, status=429)
        event = make_event('a1')

        result = client.enrich(event)

        assert result.status is EnrichmentStatus.FAILED
        assert result.event is event
        assert isinstance(result.error, ThrottledError)
        assert len(responses.calls) == 3

    @responses.activate
    def test_retry_after_header_extends_delay(self, client, fake_clock):
        responses.add(
            responses.GET, DETAIL_URL, status=429, headers={'Retry-After': '7'}
        )
        responses.add(responses.GET, DETAIL_URL, json=DETAIL_BODY, status=200)

        result = client.enrich(make_event('a1'))

        assert result.status is EnrichmentStatus.ENRICHED
        assert 7.0 in fake_clock.sleeps

    @responses.activate
    def test_timeout_is_retried(self, client):
        responses.add(responses.GET, DETAIL_URL, body=Timeout("Request timed out"))
        responses.add(responses.GET, DETAIL_URL, json=DETAIL_BODY, status=200)

        result = client.enrich(make_event('a1'))

        assert result.status is EnrichmentStatus.ENRICHED
        assert len(responses.calls) == 2

    @responses.activate
    def test_repeated_timeouts_fail_item(self, client):
        for _ in range(3):
            responses.add(responses.GET, DETAIL_URL, body=Timeout("Request timed out"))

        result = client.enrich(make_event('a1'))

        assert result.status is EnrichmentStatus.FAILED
        assert isinstance(result.error, EnrichmentTimeoutError)

    @responses.activate
    def test_not_found_is_not_retried(self, client):
        responses.add(responses.GET, DETAIL_URL, status=404)

        result = client.enrich(make_event('a1'))

        assert result.status is EnrichmentStatus.FAILED
        assert isinstance(result.error, NotFoundError)
        assert len(responses.calls) == 1

    @responses.activate
    def test_server_error_is_not_retried(self, client):
        responses.add(responses.GET, DETAIL_URL, status=500)

        result = client.enrich(make_event('a1'))

        assert result.status is EnrichmentStatus.FAILED
        assert isinstance(result.error, ServerError)
        assert result.error.status_code == 500
        assert len(responses.calls) == 1

    @responses.activate
    def test_malformed_body_fails_item(self, client):
        responses.add(responses.GET, DETAIL_URL, body="not json", status=200)

        result = client.enrich(make_event('a1'))

        assert result.status is EnrichmentStatus.FAILED

    @responses.activate
    def test_requests_are_paced(self, client, fake_clock):
        """Consecutive lookups respect the minimum interval."""
        for _ in range(3):
            responses.add(responses.GET, DETAIL_URL, json=DETAIL_BODY, status=200)

        client.enrich_many([make_event('a1'), make_event('a2'), make_event('a3')])

        assert fake_clock.sleeps == [0.5, 0.5]

    @responses.activate
    def test_api_key_sent_as_bearer_token(self, fake_clock):
        responses.add(responses.GET, DETAIL_URL, json=DETAIL_BODY, status=200)
        client = EnrichmentClient(
            base_url=DETAIL_URL,
            api_key='secret',
            rate_limiter=RateLimiter(0, clock=fake_clock, sleep=fake_clock.sleep)
        )

        client.enrich(make_event('a1'))

        assert responses.calls[0].request.headers['Authorization'] == 'Bearer secret'

    @responses.activate
    def test_enrich_many_with_workers_preserves_order(self, client):
        for _ in range(4):
            responses.add(responses.GET, DETAIL_URL, json=DETAIL_BODY, status=200)
        events = [make_event(f'a{i}') for i in range(4)]

        results = client.enrich_many(events, max_workers=2)

        assert [r.event.external_id for r in results] == ['a0', 'a1', 'a2', 'a3']
        assert all(r.status is EnrichmentStatus.ENRICHED for r in results)

    @responses.activate
    def test_enrich_many_stops_starting_lookups(self, client):
        events = [make_event(f'a{i}') for i in range(3)]

        results = client.enrich_many(events, max_workers=2, should_stop=lambda: True)

        assert results == [None, None, None]
        assert len(responses.calls) == 0

    @responses.activate
    def test_enrich_many_sequential_stop_midway(self, client):
        for _ in range(3):
            responses.add(responses.GET, DETAIL_URL, json=DETAIL_BODY, status=200)
        stop_after = iter([False, True, True])

        results = client.enrich_many(
            [make_event('a1'), make_event('a2'), make_event('a3')],
            should_stop=lambda: next(stop_after)
        )

        assert results[0].status is EnrichmentStatus.ENRICHED
        assert results[1:] == [None, None]
        assert len(responses.calls) == 1

"""Unit tests for the event model."""
from datetime import date, datetime, timedelta, timezone

import pytest

from conftest import make_event
from processor.models import Event, RunSummary, SyncResult, TimeWindow, merge_events


class TestEvent:
    """Test cases for Event identity and validation."""

    def test_equality_uses_external_id_only(self):
        """Events with the same external_id are equal whatever else differs."""
        first = make_event('a1', title='Original')
        second = make_event('a1', title='Renamed', location=None)

        assert first == second
        assert hash(first) == hash(second)
        assert len({first, second}) == 1

    def test_different_external_ids_are_not_equal(self):
        assert make_event('a1') != make_event('a2')

    def test_naive_start_time_rejected(self):
        """Naive local times are never accepted."""
        with pytest.raises(ValueError):
            Event(
                external_id='a1',
                title='Naive',
                start_time=datetime(2024, 6, 1, 10, 0)
            )

    def test_naive_end_time_rejected(self):
        with pytest.raises(ValueError):
            make_event('a1', end_time=datetime(2024, 6, 1, 12, 0))

    def test_duration_minutes(self):
        assert make_event('a1').duration_minutes() == 120
        assert make_event('a1', end_time=None).duration_minutes() is None


class TestMergeEvents:
    """Test cases for merge_events."""

    def test_incoming_fields_overwrite(self):
        """Upstream corrections to feed fields win over stored data."""
        existing = make_event('a1', title='Old Title', location='Old Hall')
        incoming = make_event('a1', title='New Title', location='New Hall')

        merged = merge_events(existing, incoming)

        assert merged.title == 'New Title'
        assert merged.location == 'New Hall'

    def test_enrichment_is_preserved_when_incoming_lacks_it(self):
        """A fetch without enrichment never erases learned fields."""
        enriched_at = datetime(2024, 5, 1, tzinfo=timezone.utc)
        existing = make_event(
            'a1',
            description='Talks and snacks',
            host_names=['Ada'],
            attendee_count=42,
            api_id='evt-xyz',
            enriched_at=enriched_at
        )
        incoming = make_event('a1')

        merged = merge_events(existing, incoming)

        assert merged.description == 'Talks and snacks'
        assert merged.host_names == ['Ada']
        assert merged.attendee_count == 42
        assert merged.api_id == 'evt-xyz'
        assert merged.enriched_at == enriched_at

    def test_fetched_empty_values_overwrite(self):
        """An explicitly empty enrichment value is a correction, not an absence."""
        existing = make_event('a1', host_names=['Ada'], attendee_count=5)
        incoming = make_event('a1', host_names=[], attendee_count=0)

        merged = merge_events(existing, incoming)

        assert merged.host_names == []
        assert merged.attendee_count == 0

    def test_absent_optional_feed_field_is_preserved(self):
        existing = make_event('a1', location='Town Square')
        incoming = make_event('a1', location=None)

        assert merge_events(existing, incoming).location == 'Town Square'

    def test_store_metadata_comes_from_existing(self):
        existing = make_event('a1', revision=4, last_updated=100)
        incoming = make_event('a1', revision=9, last_updated=999)

        merged = merge_events(existing, incoming)

        assert merged.revision == 4
        assert merged.last_updated == 100

    def test_merge_does_not_mutate_inputs(self):
        existing = make_event('a1', title='Old')
        incoming = make_event('a1', title='New')

        merge_events(existing, incoming)

        assert existing.title == 'Old'

    def test_merge_rejects_different_identities(self):
        with pytest.raises(ValueError):
            merge_events(make_event('a1'), make_event('a2'))


class TestTimeWindow:
    """Test cases for TimeWindow."""

    def test_all_contains_everything(self):
        window = TimeWindow.all()
        assert window.contains(datetime(1999, 1, 1, tzinfo=timezone.utc))
        assert window.contains(datetime(2099, 1, 1, tzinfo=timezone.utc))

    def test_day_is_half_open(self):
        window = TimeWindow.day(date(2024, 6, 1), timezone.utc)

        assert window.contains(datetime(2024, 6, 1, 0, 0, tzinfo=timezone.utc))
        assert window.contains(datetime(2024, 6, 1, 23, 59, tzinfo=timezone.utc))
        assert not window.contains(datetime(2024, 6, 2, 0, 0, tzinfo=timezone.utc))

    def test_week_runs_monday_to_sunday(self):
        # 2024-06-05 is a Wednesday
        window = TimeWindow.week(date(2024, 6, 5), timezone.utc)

        assert window.start == datetime(2024, 6, 3, tzinfo=timezone.utc)
        assert window.end == datetime(2024, 6, 10, tzinfo=timezone.utc)

    def test_upcoming(self):
        now = datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)
        window = TimeWindow.upcoming(7, now)

        assert window.contains(now)
        assert window.contains(now + timedelta(days=6))
        assert not window.contains(now - timedelta(minutes=1))
        assert not window.contains(now + timedelta(days=7))

    def test_respects_offsets(self):
        window = TimeWindow.day(date(2024, 6, 1), timezone.utc)
        plus_two = timezone(timedelta(hours=2))

        # 01:00+02:00 is still May 31st in UTC
        assert not window.contains(datetime(2024, 6, 1, 1, 0, tzinfo=plus_two))

    def test_rejects_inverted_range(self):
        start = datetime(2024, 6, 2, tzinfo=timezone.utc)
        with pytest.raises(ValueError):
            TimeWindow.between(start, start - timedelta(days=1))

    def test_rejects_naive_bounds(self):
        with pytest.raises(ValueError):
            TimeWindow(start=datetime(2024, 6, 1))


def test_sync_result_total():
    result = SyncResult(inserted=2, updated=1, unchanged=3, failed=1)
    assert result.total == 7


def test_run_summary_to_dict_includes_all_counters():
    summary = RunSummary(
        sync=SyncResult(inserted=2),
        fetched=3,
        parse_skipped=1,
        enrichment_failed=1
    )

    data = summary.to_dict()

    assert data['inserted'] == 2
    assert data['updated'] == 0
    assert data['unchanged'] == 0
    assert data['failed'] == 0
    assert data['parse_skipped'] == 1
    assert data['enrichment_failed'] == 1
    assert data['cancelled'] is False

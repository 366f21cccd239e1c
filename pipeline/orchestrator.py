"""Pipeline orchestrator: fetch, enrich, reconcile."""
import logging
import threading
from typing import List, Optional

from enrichment.event_detail_client import EnrichmentClient
from feed.calendar_feed import CalendarFeedFetcher
from processor.errors import FetchError, StoreError
from processor.models import (
    EnrichmentResult,
    EnrichmentStatus,
    Event,
    RunSummary,
    TimeWindow,
)
from storage.reconciler import Reconciler

logger = logging.getLogger(__name__)


class SyncPipeline:
    """Drives one sync invocation from the feed into the store."""

    def __init__(
        self,
        fetcher: CalendarFeedFetcher,
        reconciler: Reconciler,
        feed_url: str,
        enrichment_client: Optional[EnrichmentClient] = None,
        enrichment_workers: int = 1
    ):
        """
        Initialize the pipeline.

        Args:
            fetcher: Primary feed fetcher
            reconciler: Reconciler writing to the store
            feed_url: Calendar listing URL
            enrichment_client: Detail client; enrichment is unavailable without it
            enrichment_workers: Concurrent detail lookups (default: 1)
        """
        self.fetcher = fetcher
        self.reconciler = reconciler
        self.feed_url = feed_url
        self.enrichment_client = enrichment_client
        self.enrichment_workers = max(1, enrichment_workers)

    def run(
        self,
        window: Optional[TimeWindow] = None,
        limit: Optional[int] = None,
        enrich: bool = False,
        cancel_event: Optional[threading.Event] = None
    ) -> RunSummary:
        """
        Fetch the feed, optionally enrich, and reconcile into the store.

        Args:
            window: Only sync events starting inside this window
            limit: Maximum number of events to sync
            enrich: Whether to look up per-event detail
            cancel_event: When set, the run stops at the next event boundary

        Returns:
            RunSummary of the run, including partial failures

        Raises:
            FetchError: If the primary feed cannot be fetched
            StoreError: If the store fails; ``run_summary`` holds the
                partial summary
        """
        summary = RunSummary()

        try:
            batch = self.fetcher.fetch_events(self.feed_url, limit=limit, window=window)
        except FetchError as e:
            logger.error(
                f"Aborting run, feed fetch failed: {e}",
                extra={'error_type': type(e).__name__}
            )
            raise

        events = []
        for event in batch:
            if self._cancelled(cancel_event):
                summary.cancelled = True
                break
            events.append(event)

        summary.fetched = batch.total_records
        summary.parse_skipped = batch.skipped
        summary.filtered = batch.filtered
        logger.info(
            f"Feed yielded {len(events)} events "
            f"({batch.skipped} skipped, {batch.filtered} outside window)"
        )

        if enrich and not summary.cancelled:
            events = self._enrich(events, summary, cancel_event)

        return self._reconcile(events, summary, cancel_event)

    def backfill_enrichment(
        self,
        limit: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> RunSummary:
        """
        Enrich stored events that have never been enriched.

        Args:
            limit: Maximum number of stored events to look up
            cancel_event: When set, the run stops at the next event boundary

        Returns:
            RunSummary; ``fetched`` counts the stored candidates
        """
        summary = RunSummary()
        candidates = self.reconciler.store.list_unenriched(limit=limit)
        summary.fetched = len(candidates)
        logger.info(f"Backfilling enrichment for {len(candidates)} stored events")

        results = self._enrich(candidates, summary, cancel_event)
        enriched = [
            event for event, original in zip(results, candidates)
            if event is not original
        ]
        return self._reconcile(enriched, summary, cancel_event)

    def _enrich(
        self,
        events: List[Event],
        summary: RunSummary,
        cancel_event: Optional[threading.Event]
    ) -> List[Event]:
        if self.enrichment_client is None:
            logger.warning("Enrichment requested but no enrichment client is configured")
            return events

        results = self.enrichment_client.enrich_many(
            events,
            max_workers=self.enrichment_workers,
            should_stop=lambda: self._cancelled(cancel_event)
        )

        enriched = []
        completed = []
        for event, result in zip(events, results):
            if result is None:
                # Not reached before cancellation; keeps its feed data
                summary.cancelled = True
                enriched.append(event)
            else:
                completed.append(result)
                enriched.append(result.event)

        self._count_enrichment(completed, summary)
        return enriched

    @staticmethod
    def _count_enrichment(results: List[EnrichmentResult], summary: RunSummary) -> None:
        for result in results:
            if result.status is EnrichmentStatus.ENRICHED:
                summary.enriched += 1
            elif result.status is EnrichmentStatus.SKIPPED:
                summary.enrichment_skipped += 1
            else:
                summary.enrichment_failed += 1

        logger.info(
            f"Enrichment complete. Success: {summary.enriched}, "
            f"Skipped: {summary.enrichment_skipped}, "
            f"Errors: {summary.enrichment_failed}"
        )

    def _reconcile(
        self,
        events: List[Event],
        summary: RunSummary,
        cancel_event: Optional[threading.Event]
    ) -> RunSummary:
        def should_stop() -> bool:
            if self._cancelled(cancel_event):
                summary.cancelled = True
                return True
            return False

        try:
            summary.sync = self.reconciler.upsert_batch(events, should_stop=should_stop)
        except StoreError as e:
            if e.partial_result is not None:
                summary.sync = e.partial_result
            e.run_summary = summary
            raise

        return summary

    @staticmethod
    def _cancelled(cancel_event: Optional[threading.Event]) -> bool:
        return cancel_event is not None and cancel_event.is_set()

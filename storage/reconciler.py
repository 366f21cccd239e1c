"""Reconciles freshly fetched events with the stored ones."""
import logging
from typing import Callable, Iterable, Optional

from processor.errors import ItemRejectedError, StoreError, WriteConflictError
from processor.models import Event, SyncResult, merge_events
from storage.dynamodb_manager import DynamoDBManager

logger = logging.getLogger(__name__)


class Reconciler:
    """
    Upserts events by ``external_id``.

    Each event is handled by its own conditional write, so a batch that is
    aborted part-way leaves a consistent prefix behind.
    """

    MAX_CONFLICT_RETRIES = 3

    def __init__(self, store: DynamoDBManager):
        self.store = store

    def upsert_batch(
        self,
        events: Iterable[Event],
        should_stop: Optional[Callable[[], bool]] = None
    ) -> SyncResult:
        """
        Insert new events and merge known ones into the store.

        Args:
            events: Events from the latest fetch, possibly enriched
            should_stop: Polled between events; a true result ends the batch

        Returns:
            SyncResult with inserted, updated, unchanged and failed counts;
            events the store rejects one by one count as failed

        Raises:
            StoreError: If the store fails; ``partial_result`` holds the
                counts reached before the failure
        """
        result = SyncResult()

        for event in events:
            if should_stop is not None and should_stop():
                logger.info("Reconciliation stopped before all events were stored")
                break

            try:
                outcome = self._upsert(event)
            except WriteConflictError as e:
                result.failed += 1
                result.errors.append(str(e))
                logger.warning(
                    f"Giving up on event {event.external_id} after "
                    f"{self.MAX_CONFLICT_RETRIES} conflicting writes"
                )
                continue
            except ItemRejectedError as e:
                result.failed += 1
                result.errors.append(str(e))
                continue
            except StoreError as e:
                logger.error(
                    f"Store failure while reconciling {event.external_id}: {e}",
                    exc_info=True
                )
                e.partial_result = result
                raise

            setattr(result, outcome, getattr(result, outcome) + 1)

        logger.info(
            f"Reconciliation complete: {result.inserted} inserted, "
            f"{result.updated} updated, {result.unchanged} unchanged, "
            f"{result.failed} failed"
        )
        return result

    def _upsert(self, event: Event) -> str:
        """
        Upsert one event, retrying when another writer gets there first.

        Returns:
            Name of the SyncResult counter to bump
        """
        for attempt in range(1, self.MAX_CONFLICT_RETRIES + 1):
            existing = self.store.find_by_external_id(event.external_id)
            try:
                if existing is None:
                    self.store.insert(event)
                    logger.debug(f"Inserted event {event.external_id}")
                    return 'inserted'

                merged = merge_events(existing, event)
                if not self.differs(merged, existing):
                    return 'unchanged'

                self.store.update(merged)
                logger.debug(f"Updated event {event.external_id}")
                return 'updated'
            except WriteConflictError:
                if attempt >= self.MAX_CONFLICT_RETRIES:
                    raise
                logger.info(
                    f"Write conflict on event {event.external_id} "
                    f"(attempt {attempt}), re-reading"
                )

    def differs(self, merged: Event, existing: Event) -> bool:
        """
        Whether a merge changed anything worth writing.

        A refreshed ``enriched_at`` alone is not a change, but the first
        successful enrichment of an event is.
        """
        if merged.is_enriched and not existing.is_enriched:
            return True
        return self.store.comparable_item(merged) != self.store.comparable_item(existing)

"""DynamoDB manager for event storage operations."""
import json
import logging
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import BotoCoreError, ClientError

from processor.errors import ItemRejectedError, StoreError, WriteConflictError
from processor.models import Event, TimeWindow

logger = logging.getLogger(__name__)

# Fixed width, so string order matches time order
TIMESTAMP_FORMAT = '%Y-%m-%dT%H:%M:%S.%fZ'
# Rows written before sub-second precision was kept
SECONDS_TIMESTAMP_FORMAT = '%Y-%m-%dT%H:%M:%SZ'


def format_timestamp(value: datetime) -> str:
    """Render an aware datetime as a UTC string that sorts chronologically."""
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    fmt = TIMESTAMP_FORMAT if '.' in value else SECONDS_TIMESTAMP_FORMAT
    return datetime.strptime(value, fmt).replace(tzinfo=timezone.utc)


class DynamoDBManager:
    """Manager for DynamoDB operations."""

    BATCH_SIZE = 25  # DynamoDB batch operation limit
    KEY = 'external_id'
    # Error codes that concern one item, not the table or the connection
    ITEM_ERROR_CODES = ('ValidationException', 'ItemCollectionSizeLimitExceededException')
    # Snapshots beyond this are not stored; DynamoDB items max out at 400 KB
    MAX_RAW_SOURCE_BYTES = 64 * 1024

    def __init__(self, table_name: str, region_name: Optional[str] = None):
        """
        Initialize DynamoDB client and table reference.

        Args:
            table_name: Name of the DynamoDB table
            region_name: AWS region (default: from the environment)
        """
        self.table_name = table_name
        self.dynamodb = boto3.resource('dynamodb', region_name=region_name)
        self.table = self.dynamodb.Table(table_name)
        logger.info(f"Initialized DynamoDBManager for table: {table_name}")

    def find_by_external_id(self, external_id: str) -> Optional[Event]:
        """
        Look up one stored event by identity.

        Args:
            external_id: Provider identifier of the event

        Returns:
            Stored Event or None if absent

        Raises:
            StoreError: If the read fails
        """
        try:
            response = self.table.get_item(
                Key={self.KEY: external_id},
                ConsistentRead=True
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error reading event {external_id}: {e}")
            raise StoreError(f"Failed to read event {external_id}: {e}") from e

        item = response.get('Item')
        if item is None:
            return None
        return self._item_to_event(item)

    def insert(self, event: Event) -> Event:
        """
        Store an event that must not exist yet.

        Args:
            event: Event to insert

        Returns:
            The event as stored (revision 1)

        Raises:
            WriteConflictError: If a record with the same external_id exists
            StoreError: If the write fails for any other reason
        """
        stored = self._stamp(event, revision=1)
        self._conditional_put(
            stored,
            Attr(self.KEY).not_exists()
        )
        return stored

    def update(self, event: Event) -> Event:
        """
        Replace a stored event, guarded by the revision it was read at.

        Args:
            event: Merged event carrying the revision of the stored record

        Returns:
            The event as stored (revision incremented)

        Raises:
            WriteConflictError: If the record changed since it was read
            StoreError: If the write fails for any other reason
        """
        if event.revision is None:
            raise ValueError(f"Event {event.external_id} has no stored revision")

        stored = self._stamp(event, revision=event.revision + 1)
        self._conditional_put(
            stored,
            Attr(self.KEY).exists() & Attr('revision').eq(event.revision)
        )
        return stored

    def list_events(self, window: Optional[TimeWindow] = None) -> List[Event]:
        """
        Read stored events, ordered by start time.

        Args:
            window: Only return events starting inside this window

        Returns:
            List of Events sorted by start_time ascending
        """
        filter_expression = self._window_filter(window)
        items = self._scan(filter_expression)

        events = []
        for item in items:
            event = self._item_to_event(item)
            if event is not None:
                events.append(event)

        events.sort(key=lambda e: e.sort_key)
        logger.info(f"Retrieved {len(events)} events from DynamoDB")
        return events

    def list_unenriched(self, limit: Optional[int] = None) -> List[Event]:
        """
        Read stored events that have a slug but were never enriched.

        Args:
            limit: Maximum number of events to return

        Returns:
            List of Events sorted by start_time ascending
        """
        items = self._scan(
            Attr('slug').exists() & Attr('enriched_at').not_exists()
        )
        events = [e for e in map(self._item_to_event, items) if e is not None]
        events.sort(key=lambda e: e.sort_key)
        if limit is not None:
            events = events[:limit]
        return events

    def count_events(self, window: Optional[TimeWindow] = None) -> int:
        """Count stored events, optionally restricted to a window."""
        return len(self._scan(self._window_filter(window), projection=self.KEY))

    def clear_all_events(self) -> int:
        """
        Delete every stored event in batches of 25 items.

        Returns:
            Count of deleted events
        """
        event_ids = [item[self.KEY] for item in self._scan(None, projection=self.KEY)]
        if not event_ids:
            return 0

        logger.info(f"Deleting {len(event_ids)} events from DynamoDB")
        deleted = 0

        for i in range(0, len(event_ids), self.BATCH_SIZE):
            batch = event_ids[i:i + self.BATCH_SIZE]
            try:
                with self.table.batch_writer() as writer:
                    for event_id in batch:
                        writer.delete_item(Key={self.KEY: event_id})
                deleted += len(batch)
            except (ClientError, BotoCoreError) as e:
                logger.error(
                    f"Error deleting batch {i // self.BATCH_SIZE + 1}: {e}"
                )
                raise StoreError(f"Failed to clear events: {e}") from e

        logger.info(f"Successfully deleted {deleted} events")
        return deleted

    def _conditional_put(self, event: Event, condition) -> None:
        try:
            self.table.put_item(
                Item=self._event_to_item(event),
                ConditionExpression=condition
            )
        except ClientError as e:
            code = e.response.get('Error', {}).get('Code')
            if code == 'ConditionalCheckFailedException':
                raise WriteConflictError(event.external_id) from e
            if code in self.ITEM_ERROR_CODES:
                message = e.response.get('Error', {}).get('Message', code)
                logger.warning(f"DynamoDB rejected event {event.external_id}: {message}")
                raise ItemRejectedError(event.external_id, message) from e
            logger.error(f"Error writing event {event.external_id}: {e}")
            raise StoreError(f"Failed to write event {event.external_id}: {e}") from e
        except BotoCoreError as e:
            logger.error(f"Error writing event {event.external_id}: {e}")
            raise StoreError(f"Failed to write event {event.external_id}: {e}") from e

    def _scan(self, filter_expression, projection: Optional[str] = None) -> List[Dict[str, Any]]:
        kwargs = {}
        if filter_expression is not None:
            kwargs['FilterExpression'] = filter_expression
        if projection:
            kwargs['ProjectionExpression'] = projection

        try:
            # Scan the table, following pagination
            response = self.table.scan(**kwargs)
            items = response.get('Items', [])

            while 'LastEvaluatedKey' in response:
                response = self.table.scan(
                    ExclusiveStartKey=response['LastEvaluatedKey'],
                    **kwargs
                )
                items.extend(response.get('Items', []))
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error scanning DynamoDB table: {e}")
            raise StoreError(f"Failed to scan {self.table_name}: {e}") from e

        return items

    @staticmethod
    def _window_filter(window: Optional[TimeWindow]):
        if window is None:
            return None

        condition = None
        if window.start is not None:
            condition = Attr('start_time').gte(format_timestamp(window.start))
        if window.end is not None:
            upper = Attr('start_time').lt(format_timestamp(window.end))
            condition = upper if condition is None else condition & upper
        return condition

    @staticmethod
    def _stamp(event: Event, revision: int) -> Event:
        return replace(event, revision=revision, last_updated=int(time.time()))

    def _item_to_event(self, item: Dict[str, Any]) -> Optional[Event]:
        """
        Convert DynamoDB item to Event object.

        Args:
            item: DynamoDB item dictionary

        Returns:
            Event object or None if conversion fails
        """
        try:
            return Event(
                external_id=item[self.KEY],
                title=item['title'],
                start_time=parse_timestamp(item['start_time']),
                end_time=parse_timestamp(item['end_time']) if 'end_time' in item else None,
                location=item.get('location'),
                url=item.get('url'),
                slug=item.get('slug'),
                description=item.get('description'),
                host_names=list(item['host_names']) if 'host_names' in item else None,
                attendee_count=int(item['attendee_count']) if 'attendee_count' in item else None,
                api_id=item.get('api_id'),
                enriched_at=parse_timestamp(item['enriched_at']) if 'enriched_at' in item else None,
                raw_source=json.loads(item['raw_source']) if 'raw_source' in item else None,
                revision=int(item['revision']) if 'revision' in item else None,
                last_updated=int(item['last_updated']) if 'last_updated' in item else None,
            )
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"Failed to convert item to Event: {e}")
            return None

    def _event_to_item(self, event: Event) -> Dict[str, Any]:
        """
        Convert Event object to DynamoDB item.

        Args:
            event: Event object

        Returns:
            DynamoDB item dictionary
        """
        item = {
            self.KEY: event.external_id,
            'title': event.title,
            'start_time': format_timestamp(event.start_time),
        }

        # Add optional fields if present
        if event.end_time is not None:
            item['end_time'] = format_timestamp(event.end_time)
        for name in ('location', 'url', 'slug', 'description', 'api_id'):
            value = getattr(event, name)
            if value is not None:
                item[name] = value
        if event.host_names is not None:
            item['host_names'] = list(event.host_names)
        if event.attendee_count is not None:
            item['attendee_count'] = event.attendee_count
        if event.enriched_at is not None:
            item['enriched_at'] = format_timestamp(event.enriched_at)
        if event.raw_source is not None:
            # Stored opaque; DynamoDB rejects floats in nested maps
            raw_source = json.dumps(event.raw_source, sort_keys=True, default=str)
            if len(raw_source.encode('utf-8')) <= self.MAX_RAW_SOURCE_BYTES:
                item['raw_source'] = raw_source
            else:
                logger.warning(
                    f"Not storing {len(raw_source)} byte source record "
                    f"for event {event.external_id}"
                )
        if event.revision is not None:
            item['revision'] = event.revision
        if event.last_updated is not None:
            item['last_updated'] = event.last_updated

        return item

    def comparable_item(self, event: Event) -> Dict[str, Any]:
        """
        Item form of an event without bookkeeping fields.

        Compares all fields except enriched_at, revision and last_updated.
        """
        item = self._event_to_item(event)
        for name in ('enriched_at', 'revision', 'last_updated'):
            item.pop(name, None)
        return item

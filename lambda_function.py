"""AWS Lambda handler for Calendar Event Sync."""
import json
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Any, Optional

from enrichment.event_detail_client import EnrichmentClient
from enrichment.rate_limit import RateLimiter, RetryPolicy
from feed.calendar_feed import CalendarFeedFetcher
from pipeline.orchestrator import SyncPipeline
from processor.errors import FetchError, StoreError
from processor.models import Event, TimeWindow
from storage.dynamodb_manager import DynamoDBManager, format_timestamp
from storage.reconciler import Reconciler

DEFAULT_FEED_URL = "https://api.lu.ma/calendar/get-items?calendar_api_id=cal-4dWxlBFjW9Cd6ou"
ACTIONS = ('sync', 'list', 'backfill', 'clear')

# Attributes every LogRecord has; anything else came in through ``extra``
_RESERVED_LOG_ATTRS = set(vars(logging.makeLogRecord({}))) | {'message', 'asctime'}


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        for key, value in vars(record).items():
            if key not in _RESERVED_LOG_ATTRS and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # Create new handler with JSON formatter
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    # Set log level
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _request_bool(value: Any) -> bool:
    if isinstance(value, str):
        return _env_bool(value)
    return bool(value)


def _request_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise TypeError(f"Expected an integer, got {value!r}")
    number = int(value)
    if number < 0:
        raise ValueError(f"Expected a non-negative integer, got {value!r}")
    return number


@dataclass
class SyncConfig:
    """Runtime settings, read from environment variables."""
    table_name: str = 'calendar-events'
    log_level: str = 'INFO'
    feed_url: str = DEFAULT_FEED_URL
    enrichment_url: str = EnrichmentClient.DEFAULT_URL
    api_key: Optional[str] = None
    days_ahead: int = 30
    event_limit: Optional[int] = None
    enrich: bool = True
    timeout_seconds: int = 30
    enrichment_timeout_seconds: int = 10
    enrichment_delay_seconds: float = 1.0
    enrichment_max_attempts: int = 3
    enrichment_workers: int = 1
    region_name: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> 'SyncConfig':
        """
        Build configuration from environment variables.

        Args:
            environ: Mapping to read instead of os.environ

        Returns:
            SyncConfig with defaults for unset variables
        """
        env = os.environ if environ is None else environ
        limit = env.get('EVENT_LIMIT', '').strip()

        return cls(
            table_name=env.get('TABLE_NAME', 'calendar-events'),
            log_level=env.get('LOG_LEVEL', 'INFO'),
            feed_url=env.get('FEED_URL', DEFAULT_FEED_URL),
            enrichment_url=env.get('ENRICHMENT_URL', EnrichmentClient.DEFAULT_URL),
            api_key=env.get('LUMA_API_KEY') or None,
            days_ahead=int(env.get('DAYS_AHEAD', '30')),
            event_limit=int(limit) if limit else None,
            enrich=_env_bool(env.get('ENRICH', 'true')),
            timeout_seconds=int(env.get('TIMEOUT_SECONDS', '30')),
            enrichment_timeout_seconds=int(env.get('ENRICHMENT_TIMEOUT_SECONDS', '10')),
            enrichment_delay_seconds=float(env.get('ENRICHMENT_DELAY_SECONDS', '1.0')),
            enrichment_max_attempts=int(env.get('ENRICHMENT_MAX_ATTEMPTS', '3')),
            enrichment_workers=int(env.get('ENRICHMENT_WORKERS', '1')),
            region_name=env.get('AWS_REGION') or None,
        )


def build_pipeline(config: SyncConfig) -> SyncPipeline:
    """Wire the pipeline components from configuration."""
    store = DynamoDBManager(table_name=config.table_name, region_name=config.region_name)
    enrichment_client = EnrichmentClient(
        base_url=config.enrichment_url,
        api_key=config.api_key,
        timeout=config.enrichment_timeout_seconds,
        retry_policy=RetryPolicy(max_attempts=config.enrichment_max_attempts),
        rate_limiter=RateLimiter(min_interval=config.enrichment_delay_seconds),
    )
    return SyncPipeline(
        fetcher=CalendarFeedFetcher(timeout=config.timeout_seconds),
        reconciler=Reconciler(store),
        feed_url=config.feed_url,
        enrichment_client=enrichment_client,
        enrichment_workers=config.enrichment_workers,
    )


def resolve_window(request: Dict[str, Any], default_days: int) -> TimeWindow:
    """
    Map a request's ``range`` (all, today, week, next) to a TimeWindow.

    Args:
        request: Invocation payload
        default_days: Look-ahead used by ``next`` when ``days`` is absent

    Returns:
        TimeWindow to sync or list
    """
    now = datetime.now(timezone.utc)
    range_name = request.get('range', 'all')

    if range_name == 'all':
        return TimeWindow.all()
    if range_name == 'today':
        return TimeWindow.day(now.date(), timezone.utc)
    if range_name == 'week':
        return TimeWindow.week(now.date(), timezone.utc)
    if range_name == 'next':
        return TimeWindow.upcoming(int(request.get('days', default_days)), now)
    raise ValueError(f"Unknown range: {range_name}")


def _event_to_dict(event: Event) -> Dict[str, Any]:
    return {
        'external_id': event.external_id,
        'title': event.title,
        'start_time': format_timestamp(event.start_time),
        'end_time': format_timestamp(event.end_time) if event.end_time else None,
        'location': event.location,
        'url': event.url,
        'slug': event.slug,
        'description': event.description,
        'host_names': event.host_names,
        'attendee_count': event.attendee_count,
        'api_id': event.api_id,
        'enriched_at': format_timestamp(event.enriched_at) if event.enriched_at else None,
    }


def _response(status_code: int, body: Dict[str, Any], started: float) -> Dict[str, Any]:
    body['duration_seconds'] = round(time.time() - started, 2)
    return {'statusCode': status_code, 'body': json.dumps(body)}


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler function for Calendar Event Sync.

    The ``action`` key of the payload selects the operation: ``sync``
    (default), ``list``, ``backfill`` or ``clear``.

    Args:
        event: EventBridge event payload or direct invocation payload
        context: Lambda context object

    Returns:
        Response dict with statusCode and a JSON body
    """
    config = SyncConfig.from_env()

    # Initialize logging
    setup_logging(config.log_level)
    logger = logging.getLogger(__name__)

    request = event if isinstance(event, dict) else {}
    action = request.get('action', 'sync')

    # Log Lambda execution start
    start_time = time.time()
    logger.info(
        "Lambda execution started",
        extra={
            'action': action,
            'table_name': config.table_name,
            'days_ahead': config.days_ahead,
            'enrich': config.enrich
        }
    )

    if action not in ACTIONS:
        return _response(400, {
            'message': f"Unknown action: {action}"
        }, start_time)

    try:
        limit = _request_int(request.get('limit'))
        enrich = _request_bool(request.get('enrich', config.enrich))
        if action == 'list':
            window = resolve_window(request, config.days_ahead)
        else:
            window = TimeWindow.upcoming(
                int(request.get('days', config.days_ahead)),
                datetime.now(timezone.utc)
            )
    except (TypeError, ValueError) as e:
        logger.warning(f"Rejected invalid request: {e}")
        return _response(400, {
            'message': 'Invalid request',
            'error': str(e)
        }, start_time)

    try:
        pipeline = build_pipeline(config)

        if action == 'list':
            events = pipeline.reconciler.store.list_events(window)
            if limit is not None:
                events = events[:limit]
            return _response(200, {
                'message': f"Found {len(events)} events",
                'events': [_event_to_dict(e) for e in events]
            }, start_time)

        if action == 'clear':
            deleted = pipeline.reconciler.store.clear_all_events()
            return _response(200, {
                'message': f"Cleared {deleted} events",
                'deleted': deleted
            }, start_time)

        if action == 'backfill':
            summary = pipeline.backfill_enrichment(limit=limit)
        else:
            summary = pipeline.run(
                window=window,
                limit=limit if limit is not None else config.event_limit,
                enrich=enrich
            )

    except FetchError as e:
        # Nothing to reconcile without the primary feed
        logger.error(
            f"Failed to fetch events from calendar: {str(e)}",
            extra={'error_type': type(e).__name__},
            exc_info=True
        )
        return _response(500, {
            'message': 'Failed to fetch calendar events',
            'error': str(e),
            'error_type': type(e).__name__
        }, start_time)

    except StoreError as e:
        # Upserts committed before the failure stay committed
        logger.error(
            f"Error during store operation: {str(e)}",
            extra={'error_type': type(e).__name__},
            exc_info=True
        )
        body = {
            'message': 'Failed to sync events with DynamoDB',
            'error': str(e),
            'error_type': type(e).__name__,
            'note': 'Events stored before the failure remain in DynamoDB'
        }
        if e.run_summary is not None:
            body['statistics'] = e.run_summary.to_dict()
        return _response(500, body, start_time)

    except Exception as e:
        logger.error(
            f"Lambda execution failed: {str(e)}",
            extra={'error_type': type(e).__name__},
            exc_info=True
        )
        return _response(500, {
            'message': 'Sync failed',
            'error': str(e),
            'error_type': type(e).__name__
        }, start_time)

    statistics = summary.to_dict()
    logger.info(
        "Lambda execution completed successfully",
        extra={
            'duration_seconds': round(time.time() - start_time, 2),
            'events_inserted': summary.sync.inserted,
            'events_updated': summary.sync.updated,
            'events_unchanged': summary.sync.unchanged,
            'events_failed': summary.sync.failed,
            'enrichment_failed': summary.enrichment_failed,
            'parse_skipped': summary.parse_skipped
        }
    )

    return _response(200, {
        'message': 'Sync completed successfully',
        'statistics': statistics,
        'errors': summary.sync.errors
    }, start_time)

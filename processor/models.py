"""Data models for event processing."""
from dataclasses import dataclass, field, fields, replace
from datetime import date, datetime, time, timedelta, tzinfo
from enum import Enum
from typing import Any, Dict, List, Optional

from processor.errors import ParseError

# Written by the store, never by a fetch.
STORE_METADATA_FIELDS = ('revision', 'last_updated')


def require_aware(value: datetime, name: str) -> datetime:
    """Reject naive datetimes."""
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        raise ValueError(f"{name} must carry a timezone offset")
    return value


@dataclass(eq=False)
class Event:
    """
    One calendar occurrence.

    Identity is ``external_id`` alone: two Events compare equal when they
    describe the same provider event, whatever their other fields hold.
    Enrichment-only fields are ``None`` until a detail lookup succeeds.
    """
    external_id: str
    title: str
    start_time: datetime
    end_time: Optional[datetime] = None
    location: Optional[str] = None
    url: Optional[str] = None
    slug: Optional[str] = None
    description: Optional[str] = None
    host_names: Optional[List[str]] = None
    attendee_count: Optional[int] = None
    api_id: Optional[str] = None
    enriched_at: Optional[datetime] = None
    raw_source: Optional[Dict[str, Any]] = None
    revision: Optional[int] = None
    last_updated: Optional[int] = None

    def __post_init__(self):
        require_aware(self.start_time, 'start_time')
        if self.end_time is not None:
            require_aware(self.end_time, 'end_time')
        if self.enriched_at is not None:
            require_aware(self.enriched_at, 'enriched_at')

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Event):
            return NotImplemented
        return self.external_id == other.external_id

    def __hash__(self) -> int:
        return hash(self.external_id)

    @property
    def is_enriched(self) -> bool:
        return self.enriched_at is not None

    @property
    def sort_key(self) -> tuple:
        return (self.start_time, self.external_id)

    def duration_minutes(self) -> Optional[int]:
        """Length of the event in whole minutes, if it has an end time."""
        if self.end_time is None:
            return None
        return int((self.end_time - self.start_time).total_seconds() // 60)


def merge_events(existing: Event, incoming: Event) -> Event:
    """
    Merge a freshly fetched event into its stored counterpart.

    Every field present on ``incoming`` overwrites the stored value; fields
    absent on ``incoming`` keep what ``existing`` already knows. Required
    feed fields are always present on a fetched event, so upstream
    corrections win, while enrichment learned on an earlier run survives a
    run that did not enrich. Store metadata always comes from ``existing``.

    Args:
        existing: Event as currently persisted
        incoming: Event built from the latest fetch

    Returns:
        New Event holding the merged values
    """
    if existing.external_id != incoming.external_id:
        raise ValueError(
            f"Cannot merge {incoming.external_id} into {existing.external_id}"
        )

    changes = {}
    for f in fields(Event):
        if f.name in STORE_METADATA_FIELDS:
            continue
        value = getattr(incoming, f.name)
        if value is not None:
            changes[f.name] = value

    return replace(existing, **changes)


class EnrichmentStatus(Enum):
    """Outcome of a detail lookup for one event."""
    ENRICHED = 'enriched'
    SKIPPED = 'skipped'
    FAILED = 'failed'


@dataclass
class EnrichmentResult:
    """Event after an enrichment attempt, tagged with how it went."""
    event: Event
    status: EnrichmentStatus
    error: Optional[Exception] = None


@dataclass(frozen=True)
class ParseResult:
    """Either a parsed Event or the ParseError explaining why not."""
    event: Optional[Event] = None
    error: Optional[ParseError] = None

    @property
    def ok(self) -> bool:
        return self.event is not None

    @classmethod
    def success(cls, event: Event) -> 'ParseResult':
        return cls(event=event)

    @classmethod
    def failure(cls, error: ParseError) -> 'ParseResult':
        return cls(error=error)


@dataclass(frozen=True)
class TimeWindow:
    """
    Half-open ``[start, end)`` range over event start times.

    Either bound may be ``None`` to leave that side open.
    """
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def __post_init__(self):
        if self.start is not None:
            require_aware(self.start, 'start')
        if self.end is not None:
            require_aware(self.end, 'end')
        if self.start is not None and self.end is not None and self.end < self.start:
            raise ValueError("Window end precedes its start")

    def contains(self, moment: datetime) -> bool:
        if self.start is not None and moment < self.start:
            return False
        if self.end is not None and moment >= self.end:
            return False
        return True

    @classmethod
    def all(cls) -> 'TimeWindow':
        return cls()

    @classmethod
    def between(cls, start: datetime, end: datetime) -> 'TimeWindow':
        return cls(start=start, end=end)

    @classmethod
    def day(cls, day: date, tz: tzinfo) -> 'TimeWindow':
        """Window covering one calendar day in the given timezone."""
        start = datetime.combine(day, time.min, tzinfo=tz)
        return cls(start=start, end=start + timedelta(days=1))

    @classmethod
    def week(cls, day: date, tz: tzinfo) -> 'TimeWindow':
        """Window covering Monday through Sunday of the week containing ``day``."""
        monday = day - timedelta(days=day.weekday())
        start = datetime.combine(monday, time.min, tzinfo=tz)
        return cls(start=start, end=start + timedelta(days=7))

    @classmethod
    def upcoming(cls, days: int, now: datetime) -> 'TimeWindow':
        """Window from ``now`` through the next ``days`` days."""
        if days < 0:
            raise ValueError("days must not be negative")
        return cls(start=now, end=now + timedelta(days=days))


@dataclass
class SyncResult:
    """Result of reconciling a batch into the store."""
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.inserted + self.updated + self.unchanged + self.failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            'inserted': self.inserted,
            'updated': self.updated,
            'unchanged': self.unchanged,
            'failed': self.failed,
            'errors': list(self.errors),
        }


@dataclass
class RunSummary:
    """Complete picture of one pipeline invocation."""
    sync: SyncResult = field(default_factory=SyncResult)
    fetched: int = 0
    parse_skipped: int = 0
    filtered: int = 0
    enriched: int = 0
    enrichment_skipped: int = 0
    enrichment_failed: int = 0
    cancelled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        summary = self.sync.to_dict()
        summary.update({
            'fetched': self.fetched,
            'parse_skipped': self.parse_skipped,
            'filtered': self.filtered,
            'enriched': self.enriched,
            'enrichment_skipped': self.enrichment_skipped,
            'enrichment_failed': self.enrichment_failed,
            'cancelled': self.cancelled,
        })
        return summary

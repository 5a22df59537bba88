"""Recurring events cache: staleness policy, refresh and read operations."""
import dataclasses
import logging
import re
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Any, Dict, Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo

from botocore.exceptions import ClientError

from processor.errors import InvalidArgumentError, PatternNotFoundError
from processor.models import (
    CacheHealth,
    PatternKey,
    RawEvent,
    RecurringPattern,
    RefreshResult,
)
from processor.pattern_detector import PatternDetector, pattern_sort_key

logger = logging.getLogger(__name__)

TIME_PATTERN = re.compile(r'^([01]\d|2[0-3]):[0-5]\d$')

# Request payload key -> RecurringPattern curated attribute
CURATED_PAYLOAD_KEYS = {
    'ministryTeamId': 'ministry_team_id',
    'specialEventId': 'special_event_id',
    'isSpecialEvent': 'is_special_event',
    'isExternal': 'is_external',
    'contactPerson': 'contact_person',
    'recurringDescription': 'recurring_description',
    'specialEventNote': 'special_event_note',
    'specialEventImage': 'special_event_image',
    'endsBy': 'ends_by',
    'featuredOnHomePage': 'featured_on_home_page',
}


class SystemClock:
    """Clock backed by the system time, in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


def group_by_day_of_week(patterns: List[RecurringPattern]) -> Dict[int, List[RecurringPattern]]:
    """
    Bucket patterns by day of week.

    Args:
        patterns: Cached patterns

    Returns:
        Dict with keys 0 (Sunday) through 6 (Saturday), each sorted by time
    """
    buckets: Dict[int, List[RecurringPattern]] = {day: [] for day in range(7)}
    for pattern in patterns:
        buckets[pattern.day_of_week].append(pattern)

    for day in buckets:
        buckets[day].sort(key=pattern_sort_key)

    return buckets


def parse_natural_key(payload: Dict[str, Any]) -> PatternKey:
    """
    Validate and build a natural key from a request payload.

    Args:
        payload: Dict with title, dayOfWeek, time, location and optional allDay

    Returns:
        PatternKey

    Raises:
        InvalidArgumentError: If a key field is missing or malformed
    """
    if not isinstance(payload, dict):
        raise InvalidArgumentError('Request body must be a JSON object')

    title = payload.get('title')
    if not isinstance(title, str) or not title.strip():
        raise InvalidArgumentError('title is required')

    day_of_week = payload.get('dayOfWeek')
    if isinstance(day_of_week, str) and day_of_week.strip().isdigit():
        day_of_week = int(day_of_week)
    if isinstance(day_of_week, bool) or not isinstance(day_of_week, int):
        raise InvalidArgumentError('dayOfWeek must be an integer between 0 and 6')
    if not 0 <= day_of_week <= 6:
        raise InvalidArgumentError('dayOfWeek must be an integer between 0 and 6')

    event_time = payload.get('time')
    if event_time is None:
        if not payload.get('allDay'):
            raise InvalidArgumentError('time is required unless allDay is true')
    elif not isinstance(event_time, str) or not TIME_PATTERN.match(event_time):
        raise InvalidArgumentError('time must be in HH:MM format')

    location = payload.get('location') or ''
    if not isinstance(location, str):
        raise InvalidArgumentError('location must be a string')

    return PatternKey.of(title, day_of_week, event_time, location)


def parse_curated_fields(payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Extract curated fields from an update payload.

    Fields absent from the payload are reset to their defaults, since the
    admin form always submits the complete set.

    Raises:
        InvalidArgumentError: If a flag is not a boolean or endsBy is not
            an ISO 8601 date
    """
    fields = {}
    for payload_key, attribute in CURATED_PAYLOAD_KEYS.items():
        value = payload.get(payload_key)
        if attribute.startswith(('is_', 'featured_')):
            if value is not None and not isinstance(value, bool):
                raise InvalidArgumentError(f'{payload_key} must be true or false')
            fields[attribute] = bool(value)
        elif attribute == 'ends_by':
            fields[attribute] = _parse_ends_by(value)
        else:
            fields[attribute] = value or None
    return fields


def _parse_ends_by(value: Any) -> Optional[date]:
    if not value:
        return None
    if not isinstance(value, str):
        raise InvalidArgumentError('endsBy must be an ISO 8601 date')
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        raise InvalidArgumentError(f"Invalid endsBy date: {value}")


class RecurringEventsService:
    """
    Maintains the recurring events cache and serves reads from it.

    The service holds no mutable state of its own: everything lives in the
    pattern cache table, so concurrent refreshes converge on the same rows.
    """

    def __init__(
        self,
        event_store,
        pattern_store,
        clock=None,
        refresh_interval: timedelta = timedelta(hours=1),
        scan_days_back: int = 28,
        scan_days_ahead: int = 90,
        tz: tzinfo = ZoneInfo('America/Chicago')
    ):
        """
        Initialize the service.

        Args:
            event_store: Raw event reader exposing get_active_events(start, end)
            pattern_store: Pattern cache store
            clock: Object with now() returning an aware datetime
            refresh_interval: Age after which the cache is stale
            scan_days_back: Days before now included in the scan window
            scan_days_ahead: Days after now included in the scan window
            tz: Calendar time zone
        """
        self.event_store = event_store
        self.pattern_store = pattern_store
        self.clock = clock or SystemClock()
        self.refresh_interval = refresh_interval
        self.scan_days_back = scan_days_back
        self.scan_days_ahead = scan_days_ahead
        self.tz = tz
        self.detector = PatternDetector(tz)

    def scan_window(self) -> Tuple[datetime, datetime]:
        now = self.clock.now()
        return (
            now - timedelta(days=self.scan_days_back),
            now + timedelta(days=self.scan_days_ahead)
        )

    def needs_refresh(self) -> bool:
        """
        Check whether the cache is empty or older than the refresh interval.

        Returns:
            True if a refresh is due
        """
        latest = self.pattern_store.latest_analyzed()
        if latest is None:
            return True

        age_seconds = self.clock.now().timestamp() - latest
        return age_seconds > self.refresh_interval.total_seconds()

    def refresh_recurring_events_cache(self) -> RefreshResult:
        """
        Re-detect patterns and reconcile them with the cache.

        Detected patterns already cached keep their curated fields and get
        fresh detection metadata. New patterns are inserted with curated
        defaults. Cached patterns not observed in this window are left
        untouched. Each pattern is saved independently; a failed save is
        logged and recorded without stopping the refresh.

        Returns:
            RefreshResult including the full set of cached patterns

        Raises:
            ClientError: If raw events or the existing cache cannot be read
        """
        window_start, window_end = self.scan_window()
        logger.info(
            "Refreshing recurring events cache",
            extra={
                'window_start': window_start.isoformat(),
                'window_end': window_end.isoformat()
            }
        )

        raw_events = self.event_store.get_active_events(window_start, window_end)
        detected = self.detector.detect_patterns(raw_events, include_external=True)
        cached = self.pattern_store.get_all_patterns()

        analyzed_at = int(self.clock.now().timestamp())
        added_count = 0
        updated_count = 0
        errors = []
        observed = set()

        for pattern in detected:
            pattern_id = pattern.pattern_id
            observed.add(pattern_id)
            existing = cached.get(pattern_id)

            # Curated attributes already on the row are left as stored
            try:
                merged = self.pattern_store.upsert_detected_pattern(
                    dataclasses.replace(pattern, last_analyzed=analyzed_at)
                )
            except ClientError as e:
                error_msg = f"Failed to save pattern '{pattern.title}' ({pattern_id}): {e}"
                logger.error(error_msg)
                errors.append(error_msg)
                continue

            cached[pattern_id] = merged
            if existing:
                updated_count += 1
            else:
                added_count += 1

        unobserved_count = sum(1 for pattern_id in cached if pattern_id not in observed)

        logger.info(
            f"Refresh complete: {added_count} added, {updated_count} updated, "
            f"{unobserved_count} unobserved kept, {len(errors)} errors"
        )

        return RefreshResult(
            added=added_count,
            updated=updated_count,
            unobserved=unobserved_count,
            errors=errors,
            patterns=sorted(cached.values(), key=pattern_sort_key)
        )

    def refresh_cache(self) -> RefreshResult:
        """Recompute the cache regardless of staleness."""
        logger.info("Force refreshing recurring events cache")
        return self.refresh_recurring_events_cache()

    def resolve_month(self, month: Optional[int] = None, year: Optional[int] = None) -> Tuple[int, int]:
        """
        Fill in the current local month and year where not given.

        Returns:
            Tuple of (month, year)

        Raises:
            InvalidArgumentError: If month is outside 1-12 or year is invalid
        """
        today = self.clock.now().astimezone(self.tz).date()
        month = today.month if month is None else month
        year = today.year if year is None else year

        if not 1 <= month <= 12:
            raise InvalidArgumentError('month must be between 1 and 12')
        if not 1 <= year <= 9999:
            raise InvalidArgumentError('year is out of range')

        return month, year

    def get_recurring_events(
        self,
        month: Optional[int] = None,
        year: Optional[int] = None,
        include_external: bool = False
    ) -> List[RecurringPattern]:
        """
        Cached patterns active in a month, refreshing first if stale.

        A pattern is active in a month when it has at least one occurrence
        in that month on or before its ends_by date.

        Args:
            month: Month 1-12, defaults to the current month
            year: Year, defaults to the current year
            include_external: Whether patterns flagged external are returned

        Returns:
            Patterns ordered by day of week, then time
        """
        month, year = self.resolve_month(month, year)

        if self.needs_refresh():
            logger.info("Recurring events cache is stale, refreshing")
            self.refresh_recurring_events_cache()

        return self.patterns_for_month(
            self.pattern_store.get_all_patterns().values(), month, year, include_external
        )

    def patterns_for_month(
        self,
        patterns: Iterable[RecurringPattern],
        month: int,
        year: int,
        include_external: bool = False
    ) -> List[RecurringPattern]:
        """Filter patterns to those active in a month, ordered by day and time."""
        active = [
            pattern for pattern in patterns
            if (include_external or not pattern.is_external)
            and self.detector.occurrences_for_month(pattern, year, month)
        ]
        active.sort(key=pattern_sort_key)
        return active

    def get_weekly_patterns(
        self,
        month: Optional[int] = None,
        year: Optional[int] = None,
        include_external: bool = False
    ) -> Dict[int, List[RecurringPattern]]:
        """Recurring events for a month bucketed by day of week."""
        return group_by_day_of_week(
            self.get_recurring_events(month, year, include_external)
        )

    def update_connections(self, payload: Dict[str, Any]) -> RecurringPattern:
        """
        Overwrite the curated fields of a cached pattern.

        The pattern is looked up by exact natural key. There is no fuzzy
        matching.

        Args:
            payload: Natural key fields plus curated fields (camelCase)

        Returns:
            Updated RecurringPattern

        Raises:
            InvalidArgumentError: If the payload is malformed
            PatternNotFoundError: If no pattern matches the natural key
        """
        key = parse_natural_key(payload)
        curated = parse_curated_fields(payload)

        existing = self.pattern_store.get_pattern(key.pattern_id)
        if existing is None:
            raise PatternNotFoundError(
                f"Recurring event pattern not found: {key.canonical()}"
            )

        updated = dataclasses.replace(
            existing,
            last_analyzed=int(self.clock.now().timestamp()),
            **curated
        )
        self.pattern_store.save_pattern(updated)

        logger.info(
            "Updated recurring event connections",
            extra={
                'title': updated.title,
                'ministry_team_id': updated.ministry_team_id,
                'special_event_id': updated.special_event_id,
                'is_special_event': updated.is_special_event
            }
        )
        return updated

    def remove_pattern(self, payload: Dict[str, Any]) -> RecurringPattern:
        """
        Delete one cached pattern by natural key.

        Raises:
            InvalidArgumentError: If the payload is malformed
            PatternNotFoundError: If no pattern matches the natural key
        """
        key = parse_natural_key(payload)
        existing = self.pattern_store.get_pattern(key.pattern_id)
        if existing is None:
            raise PatternNotFoundError(
                f"Recurring event pattern not found: {key.canonical()}"
            )

        self.pattern_store.delete_pattern(key.pattern_id)
        logger.info(f"Removed recurring event pattern '{existing.title}'")
        return existing

    def clear_cache(self) -> int:
        deleted = self.pattern_store.clear()
        logger.info(f"Recurring events cache cleared ({deleted} patterns)")
        return deleted

    def health(self) -> CacheHealth:
        event_count = len(self.pattern_store.get_all_patterns())
        return CacheHealth(
            status='healthy' if event_count > 0 else 'empty',
            event_count=event_count,
            needs_refresh=self.needs_refresh(),
            timestamp=self.clock.now()
        )

    def find_raw_event_for_pattern(self, payload: Dict[str, Any]) -> Optional[RawEvent]:
        """
        Latest raw event in the scan window matching a natural key.

        Args:
            payload: Natural key fields (camelCase)

        Returns:
            RawEvent or None when nothing matches

        Raises:
            InvalidArgumentError: If the payload is malformed
        """
        key = parse_natural_key(payload)
        window_start, window_end = self.scan_window()

        matches = [
            event for event in self.event_store.get_active_events(window_start, window_end)
            if self.detector.key_for(event) == key
        ]
        if not matches:
            return None
        return max(matches, key=lambda event: event.start_time)

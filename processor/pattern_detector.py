"""Detector for weekly recurring patterns in raw calendar events."""
import calendar
import logging
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Dict, Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo

from processor.models import Occurrence, PatternKey, RawEvent, RecurringPattern

logger = logging.getLogger(__name__)

DAY_NAMES = [
    'Sunday', 'Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday'
]

MINISTRY_KEYWORDS = {
    'children': [
        'children', 'kids', 'childcare', 'nursery', 'sunday school',
        "children's ministry", 'vbs', 'vacation bible school'
    ],
    'youth': [
        'youth', 'teen', 'teenager', 'student', 'youth group',
        'youth ministry', 'confirm', 'confirmation'
    ],
    'worship': [
        'worship', 'service', 'sunday service', 'praise', 'music', 'choir',
        'church service', 'morning service', 'evening service', 'sermon'
    ],
    'prayer': ['prayer', 'pray', 'intercession', 'prayer meeting', 'prayer group'],
    'bible study': [
        'bible study', 'study', 'small group', 'life group', 'cell group',
        'bible', 'scripture'
    ],
    'fellowship': [
        'fellowship', 'potluck', 'dinner', 'lunch', 'coffee',
        'fellowship hall', 'social', 'gathering'
    ],
    'missions': ['mission', 'outreach', 'community', 'volunteer', 'serve', 'ministry'],
    'seniors': ['senior', 'elder', 'golden', 'mature', 'older adult'],
    'women': ["women's", 'women', 'sisterhood', 'mother', 'ladies'],
    'men': ["men's", 'brotherhood', 'father', "men's group"],
    'young adults': ['young adult', 'college', 'career', 'twenty', 'thirty'],
    'family': ['family', 'families', 'parent', 'marriage', 'couples'],
    'discipleship': ['discipleship', 'mentor', 'spiritual formation', 'growth'],
    'evangelism': ['evangelism', 'witness', 'invite'],
    'pastoral care': ['pastoral', 'care', 'visitation', 'hospital', 'counseling'],
}


def sunday_based_weekday(day: date) -> int:
    """Return day of week with Sunday=0 .. Saturday=6."""
    return (day.weekday() + 1) % 7


def pattern_sort_key(pattern: RecurringPattern) -> Tuple[int, str, str]:
    """Order by day of week, then time (all-day first), then title."""
    return (pattern.day_of_week, pattern.time or '', pattern.title.lower())


def infer_ministry_connection(title: str, description: Optional[str] = None) -> Optional[str]:
    """
    Guess the ministry category of an event from its title and description.

    Args:
        title: Event title
        description: Optional event description

    Returns:
        Ministry category name or None when no keyword matches
    """
    text = f"{title} {description or ''}".lower()

    for ministry, keywords in MINISTRY_KEYWORDS.items():
        if any(keyword in text for keyword in keywords):
            return ministry

    return None


def format_weekly_schedule(patterns: Iterable[RecurringPattern]) -> List[str]:
    """Render one human readable line per weekday, Sunday first."""
    by_day: Dict[int, List[RecurringPattern]] = {day: [] for day in range(7)}
    for pattern in patterns:
        by_day[pattern.day_of_week].append(pattern)

    schedule = []
    for day, name in enumerate(DAY_NAMES):
        day_patterns = sorted(by_day[day], key=pattern_sort_key)
        if not day_patterns:
            schedule.append(f"{name}: No recurring events")
            continue
        entries = ', '.join(
            f"{p.time or 'All day'} - {p.title}" for p in day_patterns
        )
        schedule.append(f"{name}: {entries}")

    return schedule


class PatternDetector:
    """Groups raw calendar events into weekly recurring patterns."""

    MIN_DISTINCT_WEEKS = 2
    WEEKLY_INTERVAL = timedelta(days=7)
    INTERVAL_TOLERANCE = timedelta(days=2)

    def __init__(self, tz: tzinfo = ZoneInfo('America/Chicago')):
        """
        Initialize the detector.

        Args:
            tz: Local time zone used to derive day of week and time of day
        """
        self.tz = tz

    def detect_patterns(
        self,
        events: Iterable[RawEvent],
        include_external: bool = True
    ) -> List[RecurringPattern]:
        """
        Detect weekly recurring patterns.

        Events are grouped by natural key (normalized title, local day of
        week, local start time to the minute, normalized location). A group
        qualifies when it spans at least two distinct calendar weeks.

        Args:
            events: Raw events within the scan window
            include_external: Whether events flagged external are considered

        Returns:
            Pattern skeletons with curated fields left at their defaults,
            ordered by day of week and time
        """
        groups: Dict[PatternKey, List[Tuple[RawEvent, datetime]]] = {}

        for event in sorted(events, key=lambda e: self._ensure_aware(e.start_time)):
            if not self._is_eligible(event, include_external):
                continue

            local_start = self.to_local(event.start_time)
            key = self.key_for(event, local_start)
            groups.setdefault(key, []).append((event, local_start))

        patterns = []
        for key, members in groups.items():
            weeks = {self._week_start(local_start.date()) for _, local_start in members}
            if len(weeks) < self.MIN_DISTINCT_WEEKS:
                logger.debug(
                    f"Skipping one-off group '{key.title}' on day {key.day_of_week}"
                )
                continue
            patterns.append(self._build_pattern(key, members, len(weeks)))

        patterns.sort(key=pattern_sort_key)
        logger.info(
            f"Detected {len(patterns)} recurring patterns from "
            f"{len(groups)} event groups"
        )
        return patterns

    def key_for(self, event: RawEvent, local_start: Optional[datetime] = None) -> PatternKey:
        """Build the natural key for a raw event."""
        if local_start is None:
            local_start = self.to_local(event.start_time)

        event_time = None if event.all_day else local_start.strftime('%H:%M')
        return PatternKey.of(
            event.title,
            sunday_based_weekday(local_start.date()),
            event_time,
            event.location
        )

    def occurrences_for_month(
        self,
        pattern: RecurringPattern,
        year: int,
        month: int
    ) -> List[Occurrence]:
        """
        Expand a pattern into its concrete dates within a month.

        Dates after the pattern's ``ends_by`` date are not produced.

        Args:
            pattern: Cached recurring pattern
            year: Target year
            month: Target month (1-12)

        Returns:
            List of Occurrence objects in date order
        """
        occurrences = []
        _, days_in_month = calendar.monthrange(year, month)

        for day_number in range(1, days_in_month + 1):
            day = date(year, month, day_number)
            if sunday_based_weekday(day) != pattern.day_of_week:
                continue
            if pattern.ends_by and day > pattern.ends_by:
                break

            start = None
            if pattern.time:
                hour, minute = (int(part) for part in pattern.time.split(':'))
                start = datetime.combine(day, time(hour, minute), tzinfo=self.tz)

            occurrences.append(
                Occurrence(pattern_id=pattern.pattern_id, date=day, start=start)
            )

        return occurrences

    def to_local(self, moment: datetime) -> datetime:
        return self._ensure_aware(moment).astimezone(self.tz)

    def _is_eligible(self, event: RawEvent, include_external: bool) -> bool:
        if not event.is_active:
            return False

        if event.is_external and not include_external:
            return False

        if not event.title or not event.title.strip():
            logger.warning(f"Skipping event {event.event_id} with empty title")
            return False

        start = self._ensure_aware(event.start_time)
        end = self._ensure_aware(event.end_time)
        if not event.all_day and end <= start:
            logger.warning(
                f"Skipping event '{event.title}' ({event.event_id}): "
                f"end time is not after start time"
            )
            return False

        return True

    def _build_pattern(
        self,
        key: PatternKey,
        members: List[Tuple[RawEvent, datetime]],
        distinct_weeks: int
    ) -> RecurringPattern:
        first_event = members[0][0]
        description = next(
            (event.description for event, _ in members if event.description), ''
        )

        return RecurringPattern(
            title=' '.join(first_event.title.split()),
            day_of_week=key.day_of_week,
            time=key.time,
            location=' '.join((first_event.location or '').split()),
            occurrence_count=distinct_weeks,
            event_ids=[event.event_id for event, _ in members],
            confidence=self._calculate_confidence([start for _, start in members]),
            description=description,
            ministry_connection=infer_ministry_connection(first_event.title, description),
            is_external=all(event.is_external for event, _ in members)
        )

    def _calculate_confidence(self, starts: List[datetime]) -> float:
        """
        Share of consecutive intervals that are roughly one week apart.

        Args:
            starts: Local start times of a group's events

        Returns:
            Value between 0 and 1, rounded to two decimals
        """
        unique_starts = sorted(set(starts))
        if len(unique_starts) < 2:
            return 0.0

        intervals = [
            later - earlier
            for earlier, later in zip(unique_starts, unique_starts[1:])
        ]
        consistent = sum(
            1 for interval in intervals
            if abs(interval - self.WEEKLY_INTERVAL) < self.INTERVAL_TOLERANCE
        )
        return round(consistent / len(intervals), 2)

    @staticmethod
    def _week_start(day: date) -> date:
        return day - timedelta(days=sunday_based_weekday(day))

    @staticmethod
    def _ensure_aware(moment: datetime) -> datetime:
        if moment.tzinfo is None:
            return moment.replace(tzinfo=timezone.utc)
        return moment

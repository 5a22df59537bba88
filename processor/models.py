"""Data models for recurring event detection and caching."""
import hashlib
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import List, Optional


def normalize_text(value: Optional[str]) -> str:
    """Lower-case and collapse whitespace for natural-key comparison."""
    return ' '.join((value or '').split()).lower()


@dataclass
class RawEvent:
    """Calendar event read from the synced raw event table."""
    event_id: str
    title: str
    start_time: datetime
    end_time: datetime
    location: str = ''
    all_day: bool = False
    is_active: bool = True
    description: str = ''
    ministry_team_id: Optional[str] = None
    special_event_id: Optional[str] = None
    is_special_event: bool = False
    is_external: bool = False
    contact_person: Optional[str] = None
    special_event_note: Optional[str] = None
    special_event_image: Optional[str] = None
    recurring_description: Optional[str] = None
    ends_by: Optional[date] = None
    featured_on_home_page: bool = False


@dataclass(frozen=True)
class PatternKey:
    """
    Natural key of a recurring pattern.

    Title and location are stored normalized so that two keys built from
    differently formatted input compare and hash equal. Use ``PatternKey.of``
    to build one from raw values.
    """
    title: str
    day_of_week: int
    time: Optional[str]
    location: str

    @classmethod
    def of(
        cls,
        title: str,
        day_of_week: int,
        time: Optional[str],
        location: Optional[str]
    ) -> 'PatternKey':
        return cls(
            title=normalize_text(title),
            day_of_week=int(day_of_week),
            time=time[:5] if time else None,
            location=normalize_text(location)
        )

    def canonical(self) -> str:
        return f"{self.title}|{self.day_of_week}|{self.time or 'all-day'}|{self.location}"

    @property
    def pattern_id(self) -> str:
        """Stable SHA256 identifier used as the cache table partition key."""
        return hashlib.sha256(self.canonical().encode('utf-8')).hexdigest()


@dataclass
class RecurringPattern:
    """Weekly recurring pattern with admin-curated metadata."""
    title: str
    day_of_week: int
    time: Optional[str]
    location: str
    occurrence_count: int
    last_analyzed: int = 0
    # Detection metadata, recomputed on every refresh
    event_ids: List[str] = field(default_factory=list)
    confidence: float = 0.0
    frequency: str = 'weekly'
    description: str = ''
    ministry_connection: Optional[str] = None
    # Curated fields, preserved across refreshes
    ministry_team_id: Optional[str] = None
    special_event_id: Optional[str] = None
    is_special_event: bool = False
    is_external: bool = False
    contact_person: Optional[str] = None
    recurring_description: Optional[str] = None
    special_event_note: Optional[str] = None
    special_event_image: Optional[str] = None
    ends_by: Optional[date] = None
    featured_on_home_page: bool = False

    @property
    def key(self) -> PatternKey:
        return PatternKey.of(self.title, self.day_of_week, self.time, self.location)

    @property
    def pattern_id(self) -> str:
        return self.key.pattern_id


CURATED_FIELDS = (
    'ministry_team_id',
    'special_event_id',
    'is_special_event',
    'is_external',
    'contact_person',
    'recurring_description',
    'special_event_note',
    'special_event_image',
    'ends_by',
    'featured_on_home_page',
)


@dataclass
class Occurrence:
    """Concrete instance of a recurring pattern on a given date."""
    pattern_id: str
    date: date
    start: Optional[datetime]


@dataclass
class CacheHealth:
    """Snapshot of the cache state for health checks."""
    status: str
    event_count: int
    needs_refresh: bool
    timestamp: datetime


@dataclass
class RefreshResult:
    """Result of a cache refresh."""
    added: int
    updated: int
    unobserved: int
    errors: list[str]
    patterns: list[RecurringPattern] = field(default_factory=list)

"""Unit tests for PatternDetector."""
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from processor.models import PatternKey, RawEvent, RecurringPattern
from processor.pattern_detector import (
    PatternDetector,
    format_weekly_schedule,
    infer_ministry_connection,
)

CHICAGO = ZoneInfo('America/Chicago')


def make_event(event_id, title, start, location='Room A', **kwargs):
    """Build a one hour RawEvent starting at `start`."""
    kwargs.setdefault('end_time', start + timedelta(hours=1))
    return RawEvent(
        event_id=event_id,
        title=title,
        start_time=start,
        location=location,
        **kwargs
    )


def tuesdays(title, days=(3, 10, 17, 24), hour=19, location='Room A', **kwargs):
    return [
        make_event(
            f'{title}-{day}',
            title,
            datetime(2026, 3, day, hour, 0, tzinfo=CHICAGO),
            location=location,
            **kwargs
        )
        for day in days
    ]


class TestDetectPatterns:
    """Test cases for PatternDetector.detect_patterns."""

    def test_weekly_event_becomes_pattern(self):
        """Test four Tuesday rehearsals produce one pattern."""
        detector = PatternDetector(CHICAGO)

        patterns = detector.detect_patterns(tuesdays('Choir Practice'))

        assert len(patterns) == 1
        pattern = patterns[0]
        assert pattern.title == 'Choir Practice'
        assert pattern.day_of_week == 2
        assert pattern.time == '19:00'
        assert pattern.location == 'Room A'
        assert pattern.occurrence_count == 4
        assert pattern.event_ids == [
            'Choir Practice-3', 'Choir Practice-10',
            'Choir Practice-17', 'Choir Practice-24'
        ]
        assert pattern.confidence == 1.0
        assert pattern.ministry_connection == 'worship'
        assert pattern.ministry_team_id is None
        assert pattern.is_special_event is False

    def test_local_time_is_stable_across_dst_change(self):
        """Test UTC inputs on both sides of the March DST switch map to 19:00."""
        detector = PatternDetector(CHICAGO)
        events = [
            make_event(
                f'utc-{day}',
                'Choir Practice',
                datetime(2026, 3, day, 19, 0, tzinfo=CHICAGO).astimezone(ZoneInfo('UTC'))
            )
            for day in (3, 10)
        ]

        patterns = detector.detect_patterns(events)

        assert len(patterns) == 1
        assert patterns[0].time == '19:00'
        assert patterns[0].day_of_week == 2

    def test_single_occurrence_is_not_recurring(self):
        """Test a one-off event is excluded."""
        detector = PatternDetector(CHICAGO)

        patterns = detector.detect_patterns(tuesdays('Easter Cantata', days=(3,)))

        assert patterns == []

    def test_two_distinct_weeks_is_recurring(self):
        """Test two occurrences on different weeks qualify."""
        detector = PatternDetector(CHICAGO)

        patterns = detector.detect_patterns(tuesdays('Elder Meeting', days=(3, 17)))

        assert len(patterns) == 1
        assert patterns[0].occurrence_count == 2

    def test_duplicates_in_same_week_count_once(self):
        """Test duplicate copies of the same occurrence do not make a pattern."""
        detector = PatternDetector(CHICAGO)
        start = datetime(2026, 3, 3, 19, 0, tzinfo=CHICAGO)
        events = [
            make_event('dup-1', 'Choir Practice', start),
            make_event('dup-2', 'Choir Practice', start),
        ]

        assert detector.detect_patterns(events) == []

    def test_different_locations_are_distinct_patterns(self):
        """Test same title, day and time at two locations gives two patterns."""
        detector = PatternDetector(CHICAGO)
        events = tuesdays('Bible Study', location='Room A') + tuesdays(
            'Bible Study', location='Chapel'
        )

        patterns = detector.detect_patterns(events)

        assert len(patterns) == 2
        assert {p.location for p in patterns} == {'Room A', 'Chapel'}
        assert patterns[0].key != patterns[1].key

    def test_title_case_and_whitespace_are_normalized(self):
        """Test formatting differences in title and location group together."""
        detector = PatternDetector(CHICAGO)
        events = [
            make_event('a', 'Choir  Practice', datetime(2026, 3, 3, 19, 0, tzinfo=CHICAGO)),
            make_event('b', 'choir practice ', datetime(2026, 3, 10, 19, 0, tzinfo=CHICAGO),
                       location=' room a'),
        ]

        patterns = detector.detect_patterns(events)

        assert len(patterns) == 1
        assert patterns[0].title == 'Choir Practice'
        assert patterns[0].occurrence_count == 2

    def test_different_times_are_distinct(self):
        """Test the same title at another time of day is a separate group."""
        detector = PatternDetector(CHICAGO)
        events = tuesdays('Prayer', hour=7) + tuesdays('Prayer', hour=19)

        patterns = detector.detect_patterns(events)

        assert [p.time for p in patterns] == ['07:00', '19:00']

    def test_inactive_events_are_excluded(self):
        """Test inactive events do not contribute to patterns."""
        detector = PatternDetector(CHICAGO)
        events = tuesdays('Choir Practice', days=(3,)) + tuesdays(
            'Choir Practice', days=(10, 17), is_active=False
        )

        assert detector.detect_patterns(events) == []

    def test_external_events_respect_flag(self):
        """Test external events are skipped unless include_external is set."""
        detector = PatternDetector(CHICAGO)
        events = tuesdays('AA Meeting', is_external=True)

        assert detector.detect_patterns(events, include_external=False) == []

        patterns = detector.detect_patterns(events, include_external=True)
        assert len(patterns) == 1
        assert patterns[0].is_external is True

    def test_mixed_external_group_is_not_flagged_external(self):
        """Test a group is external only when every event is external."""
        detector = PatternDetector(CHICAGO)
        events = tuesdays('Scouts', days=(3,), is_external=True) + tuesdays(
            'Scouts', days=(10,)
        )

        patterns = detector.detect_patterns(events)

        assert len(patterns) == 1
        assert patterns[0].is_external is False

    def test_all_day_events_group_separately(self):
        """Test all-day events get no time and do not merge with timed ones."""
        detector = PatternDetector(CHICAGO)
        all_day = [
            make_event(
                f'fast-{day}',
                'Choir Practice',
                datetime(2026, 3, day, 0, 0, tzinfo=CHICAGO),
                end_time=datetime(2026, 3, day, 0, 0, tzinfo=CHICAGO),
                all_day=True
            )
            for day in (3, 10)
        ]

        patterns = detector.detect_patterns(all_day + tuesdays('Choir Practice'))

        assert len(patterns) == 2
        assert patterns[0].time is None
        assert patterns[0].occurrence_count == 2
        assert patterns[1].time == '19:00'

    def test_invalid_time_range_is_skipped(self):
        """Test timed events whose end is not after start are skipped."""
        detector = PatternDetector(CHICAGO)
        events = [
            make_event(
                f'bad-{day}',
                'Broken Event',
                datetime(2026, 3, day, 19, 0, tzinfo=CHICAGO),
                end_time=datetime(2026, 3, day, 18, 0, tzinfo=CHICAGO)
            )
            for day in (3, 10)
        ]

        assert detector.detect_patterns(events) == []

    def test_output_is_ordered_by_day_then_time(self):
        """Test patterns are sorted by day of week, then time."""
        detector = PatternDetector(CHICAGO)
        sundays = [
            make_event(f'worship-{day}', 'Worship', datetime(2026, 3, day, 9, 0, tzinfo=CHICAGO))
            for day in (1, 8, 15)
        ]
        events = tuesdays('Choir Practice') + tuesdays('Prayer', hour=7) + sundays

        patterns = detector.detect_patterns(events)

        assert [(p.day_of_week, p.time) for p in patterns] == [
            (0, '09:00'), (2, '07:00'), (2, '19:00')
        ]

    def test_detection_is_deterministic(self):
        """Test input order does not change the output."""
        detector = PatternDetector(CHICAGO)
        events = tuesdays('Choir Practice') + tuesdays('Prayer', hour=7)

        forward = detector.detect_patterns(events)
        backward = detector.detect_patterns(list(reversed(events)))

        assert forward == backward

    def test_irregular_spacing_lowers_confidence(self):
        """Test confidence reflects the share of weekly intervals."""
        detector = PatternDetector(CHICAGO)

        patterns = detector.detect_patterns(tuesdays('Council', days=(3, 10, 31)))

        assert patterns[0].occurrence_count == 3
        assert patterns[0].confidence == 0.5


class TestOccurrencesForMonth:
    """Test cases for PatternDetector.occurrences_for_month."""

    def _pattern(self, **kwargs):
        defaults = dict(
            title='Choir Practice', day_of_week=2, time='19:00',
            location='Room A', occurrence_count=4
        )
        defaults.update(kwargs)
        return RecurringPattern(**defaults)

    def test_every_matching_weekday_in_month(self):
        """Test a Tuesday pattern expands to all five Tuesdays of March 2026."""
        detector = PatternDetector(CHICAGO)

        occurrences = detector.occurrences_for_month(self._pattern(), 2026, 3)

        assert [o.date.day for o in occurrences] == [3, 10, 17, 24, 31]
        assert occurrences[0].start == datetime(2026, 3, 3, 19, 0, tzinfo=CHICAGO)
        assert occurrences[0].pattern_id == self._pattern().pattern_id

    def test_stops_after_ends_by(self):
        """Test no occurrences are produced after ends_by."""
        detector = PatternDetector(CHICAGO)
        pattern = self._pattern(ends_by=date(2026, 3, 17))

        occurrences = detector.occurrences_for_month(pattern, 2026, 3)

        assert [o.date.day for o in occurrences] == [3, 10, 17]
        assert detector.occurrences_for_month(pattern, 2026, 4) == []

    def test_all_day_occurrences_have_no_start(self):
        """Test all-day patterns yield dates without a start time."""
        detector = PatternDetector(CHICAGO)

        occurrences = detector.occurrences_for_month(self._pattern(time=None), 2026, 2)

        assert len(occurrences) == 4
        assert all(o.start is None for o in occurrences)


class TestPatternKey:
    """Test cases for the natural key value type."""

    def test_equal_after_normalization(self):
        """Test keys built from differently formatted input are equal."""
        first = PatternKey.of('Choir  Practice', 2, '19:00', 'Room A ')
        second = PatternKey.of('choir practice', 2, '19:00:00', 'room a')

        assert first == second
        assert hash(first) == hash(second)
        assert first.pattern_id == second.pattern_id

    def test_location_changes_identity(self):
        """Test location is part of the key."""
        first = PatternKey.of('Choir Practice', 2, '19:00', 'Room A')
        second = PatternKey.of('Choir Practice', 2, '19:00', 'Room B')

        assert first != second
        assert first.pattern_id != second.pattern_id

    def test_all_day_key_differs_from_midnight(self):
        """Test an all-day key is not the same as a 00:00 key."""
        assert PatternKey.of('Fast', 3, None, '') != PatternKey.of('Fast', 3, '00:00', '')


class TestHelpers:
    """Test cases for module level helpers."""

    def test_infer_ministry_connection(self):
        """Test keyword based ministry inference."""
        assert infer_ministry_connection('Youth Group') == 'youth'
        assert infer_ministry_connection("Women's Circle") == 'women'
        assert infer_ministry_connection("Men's Breakfast") == 'men'
        assert infer_ministry_connection('Gathering', 'Potluck after church') == 'fellowship'
        assert infer_ministry_connection('Board Meeting') is None

    def test_format_weekly_schedule(self):
        """Test one line per weekday with times in order."""
        patterns = [
            RecurringPattern('Choir Practice', 2, '19:00', 'Room A', 4),
            RecurringPattern('Morning Prayer', 2, '07:00', 'Chapel', 4),
            RecurringPattern('Worship', 0, '09:00', 'Sanctuary', 4),
        ]

        schedule = format_weekly_schedule(patterns)

        assert len(schedule) == 7
        assert schedule[0] == 'Sunday: 09:00 - Worship'
        assert schedule[1] == 'Monday: No recurring events'
        assert schedule[2] == 'Tuesday: 07:00 - Morning Prayer, 19:00 - Choir Practice'

"""Shared fixtures for DynamoDB-backed tests."""
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import boto3
import pytest
from moto import mock_aws

from storage.calendar_event_store import CalendarEventStore
from storage.pattern_cache_store import PatternCacheStore

CHICAGO = ZoneInfo('America/Chicago')
EVENTS_TABLE = 'test-calendar-events'
PATTERNS_TABLE = 'test-recurring-events-cache'


class FixedClock:
    """Clock returning a settable instant."""

    def __init__(self, now: datetime):
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, delta) -> None:
        self.current = self.current + delta


@pytest.fixture
def aws_credentials(monkeypatch):
    """Fake credentials so boto3 never reaches real AWS."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def dynamodb(aws_credentials):
    """Mocked DynamoDB resource."""
    with mock_aws():
        yield boto3.resource('dynamodb', region_name='us-east-1')


@pytest.fixture
def events_table(dynamodb):
    """Create a mock raw calendar events table."""
    return dynamodb.create_table(
        TableName=EVENTS_TABLE,
        KeySchema=[{'AttributeName': 'event_id', 'KeyType': 'HASH'}],
        AttributeDefinitions=[{'AttributeName': 'event_id', 'AttributeType': 'S'}],
        BillingMode='PAY_PER_REQUEST'
    )


@pytest.fixture
def patterns_table(dynamodb):
    """Create a mock recurring events cache table."""
    return dynamodb.create_table(
        TableName=PATTERNS_TABLE,
        KeySchema=[{'AttributeName': 'pattern_id', 'KeyType': 'HASH'}],
        AttributeDefinitions=[{'AttributeName': 'pattern_id', 'AttributeType': 'S'}],
        BillingMode='PAY_PER_REQUEST'
    )


@pytest.fixture
def event_store(dynamodb, events_table):
    return CalendarEventStore(EVENTS_TABLE, tz=CHICAGO, dynamodb=dynamodb)


@pytest.fixture
def pattern_store(dynamodb, patterns_table):
    return PatternCacheStore(PATTERNS_TABLE, dynamodb=dynamodb)


@pytest.fixture
def clock():
    """Clock fixed at noon UTC on 15 March 2026."""
    return FixedClock(datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def add_raw_event(events_table):
    """Factory that writes a raw calendar event item."""

    def _add(event_id, title, start, duration_hours=1, location='', **extra):
        end = start.replace(hour=min(start.hour + duration_hours, 23))
        item = {
            'event_id': event_id,
            'title': title,
            'start_time': start.astimezone(timezone.utc).isoformat(),
            'end_time': end.astimezone(timezone.utc).isoformat(),
            'location': location,
            'all_day': False,
            'is_active': True
        }
        item.update(extra)
        events_table.put_item(Item=item)
        return item

    return _add


@pytest.fixture
def choir_practice(add_raw_event):
    """Choir Practice in Room A every Tuesday at 19:00 for four weeks of March 2026."""
    return [
        add_raw_event(
            f'choir-{day}',
            'Choir Practice',
            datetime(2026, 3, day, 19, 0, tzinfo=CHICAGO),
            location='Room A'
        )
        for day in (3, 10, 17, 24)
    ]

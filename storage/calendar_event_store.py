"""Read-only access to the synced raw calendar events table."""
import logging
from datetime import date, datetime, time, timezone, tzinfo
from typing import List, Optional

import boto3
from botocore.exceptions import ClientError

from processor.models import RawEvent

logger = logging.getLogger(__name__)


def parse_timestamp(value: str, tz: tzinfo) -> datetime:
    """
    Parse a stored ISO 8601 timestamp into an aware datetime.

    Date-only values (all-day events) resolve to local midnight. Naive
    timestamps are treated as UTC.

    Args:
        value: ISO 8601 date or datetime string
        tz: Local time zone for date-only values

    Returns:
        Timezone-aware datetime

    Raises:
        ValueError: If the value cannot be parsed
    """
    value = value.strip()
    if len(value) == 10:
        return datetime.combine(date.fromisoformat(value), time(0, 0), tzinfo=tz)

    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    return date.fromisoformat(value[:10])


class CalendarEventStore:
    """Reader for the raw calendar events DynamoDB table."""

    def __init__(self, table_name: str, tz: tzinfo, dynamodb=None):
        """
        Initialize DynamoDB table reference.

        Args:
            table_name: Name of the raw calendar events table
            tz: Calendar time zone, used for all-day dates
            dynamodb: Optional boto3 DynamoDB resource
        """
        self.table_name = table_name
        self.tz = tz
        self.dynamodb = dynamodb or boto3.resource('dynamodb')
        self.table = self.dynamodb.Table(table_name)
        logger.info(f"Initialized CalendarEventStore for table: {table_name}")

    def get_active_events(self, window_start: datetime, window_end: datetime) -> List[RawEvent]:
        """
        Retrieve active events starting within a window.

        Args:
            window_start: Inclusive window start (aware datetime)
            window_end: Inclusive window end (aware datetime)

        Returns:
            Active RawEvent objects ordered by start time

        Raises:
            ClientError: If the table cannot be read
        """
        logger.info(
            f"Scanning {self.table_name} for events between "
            f"{window_start.isoformat()} and {window_end.isoformat()}"
        )

        try:
            response = self.table.scan()
            items = response.get('Items', [])

            while 'LastEvaluatedKey' in response:
                response = self.table.scan(
                    ExclusiveStartKey=response['LastEvaluatedKey']
                )
                items.extend(response.get('Items', []))

        except ClientError as e:
            logger.error(f"Error scanning calendar events table: {e}")
            raise

        events = []
        for item in items:
            event = self._item_to_raw_event(item)
            if event is None or not event.is_active:
                continue
            if window_start <= event.start_time <= window_end:
                events.append(event)

        events.sort(key=lambda e: e.start_time)
        logger.info(f"Retrieved {len(events)} active events from {len(items)} items")
        return events

    def _item_to_raw_event(self, item: dict) -> Optional[RawEvent]:
        """
        Convert DynamoDB item to RawEvent object.

        Args:
            item: DynamoDB item dictionary

        Returns:
            RawEvent object or None if conversion fails
        """
        try:
            return RawEvent(
                event_id=item['event_id'],
                title=item['title'],
                start_time=parse_timestamp(item['start_time'], self.tz),
                end_time=parse_timestamp(item['end_time'], self.tz),
                location=item.get('location') or '',
                all_day=bool(item.get('all_day', False)),
                is_active=bool(item.get('is_active', True)),
                description=item.get('description') or '',
                ministry_team_id=item.get('ministry_team_id'),
                special_event_id=item.get('special_event_id'),
                is_special_event=bool(item.get('is_special_event', False)),
                is_external=bool(item.get('is_external', False)),
                contact_person=item.get('contact_person'),
                special_event_note=item.get('special_event_note'),
                special_event_image=item.get('special_event_image'),
                recurring_description=item.get('recurring_description'),
                ends_by=_parse_date(item.get('ends_by')),
                featured_on_home_page=bool(item.get('featured_on_home_page', False))
            )
        except (KeyError, ValueError, AttributeError) as e:
            logger.warning(
                f"Failed to convert item {item.get('event_id')} to RawEvent: {e}"
            )
            return None

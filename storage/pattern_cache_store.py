"""DynamoDB storage for the recurring events cache."""
import logging
from datetime import date
from decimal import Decimal
from typing import Dict, Optional

import boto3
from botocore.exceptions import ClientError

from processor.models import CURATED_FIELDS, RecurringPattern

logger = logging.getLogger(__name__)


class PatternCacheStore:
    """Manager for the recurring patterns cache table."""

    BATCH_SIZE = 25  # DynamoDB batch operation limit

    # Recomputed on every refresh; everything in CURATED_FIELDS is admin-owned
    DETECTION_ATTRIBUTES = (
        'title',
        'day_of_week',
        'time',
        'location',
        'occurrence_count',
        'last_analyzed',
        'event_ids',
        'confidence',
        'frequency',
        'description',
        'ministry_connection',
    )

    def __init__(self, table_name: str, dynamodb=None):
        """
        Initialize DynamoDB table reference.

        Args:
            table_name: Name of the cache table, keyed by pattern_id
            dynamodb: Optional boto3 DynamoDB resource
        """
        self.table_name = table_name
        self.dynamodb = dynamodb or boto3.resource('dynamodb')
        self.table = self.dynamodb.Table(table_name)
        logger.info(f"Initialized PatternCacheStore for table: {table_name}")

    def get_all_patterns(self) -> Dict[str, RecurringPattern]:
        """
        Retrieve all cached patterns using Scan operation.

        Returns:
            Dictionary mapping pattern_id to RecurringPattern objects

        Raises:
            ClientError: If the table cannot be read
        """
        patterns = {}

        try:
            response = self.table.scan()
            items = response.get('Items', [])

            while 'LastEvaluatedKey' in response:
                response = self.table.scan(
                    ExclusiveStartKey=response['LastEvaluatedKey']
                )
                items.extend(response.get('Items', []))

        except ClientError as e:
            logger.error(f"Error scanning recurring patterns table: {e}")
            raise

        for item in items:
            pattern = self._item_to_pattern(item)
            if pattern:
                patterns[item['pattern_id']] = pattern

        logger.debug(f"Retrieved {len(patterns)} cached patterns")
        return patterns

    def get_pattern(self, pattern_id: str) -> Optional[RecurringPattern]:
        """Fetch a single cached pattern by id, or None if absent."""
        response = self.table.get_item(Key={'pattern_id': pattern_id})
        item = response.get('Item')
        if not item:
            return None
        return self._item_to_pattern(item)

    def latest_analyzed(self) -> Optional[int]:
        """
        Most recent last_analyzed timestamp across all cached patterns.

        Returns:
            Epoch seconds or None when the cache is empty
        """
        response = self.table.scan(ProjectionExpression='last_analyzed')
        items = response.get('Items', [])

        while 'LastEvaluatedKey' in response:
            response = self.table.scan(
                ProjectionExpression='last_analyzed',
                ExclusiveStartKey=response['LastEvaluatedKey']
            )
            items.extend(response.get('Items', []))

        timestamps = [int(item['last_analyzed']) for item in items if 'last_analyzed' in item]
        return max(timestamps) if timestamps else None

    def save_pattern(self, pattern: RecurringPattern) -> None:
        """
        Insert or replace one cached pattern.

        Raises:
            ClientError: If the write fails
        """
        self.table.put_item(Item=self._pattern_to_item(pattern))

    def upsert_detected_pattern(self, pattern: RecurringPattern) -> RecurringPattern:
        """
        Write detection metadata for a pattern without touching curated fields.

        Detection attributes are always overwritten. Curated attributes are
        only written when the row does not have them yet, so admin edits
        committed between a cache read and this write are kept.

        Args:
            pattern: Freshly detected pattern carrying curated defaults

        Returns:
            The stored RecurringPattern after the update

        Raises:
            ClientError: If the write fails
        """
        item = self._pattern_to_item(pattern)
        names = {}
        values = {}
        set_clauses = []
        remove_clauses = []

        for index, attribute in enumerate(self.DETECTION_ATTRIBUTES):
            name = f'#d{index}'
            names[name] = attribute
            if attribute in item:
                values[f':d{index}'] = item[attribute]
                set_clauses.append(f'{name} = :d{index}')
            else:
                remove_clauses.append(name)

        for index, attribute in enumerate(CURATED_FIELDS):
            if attribute not in item:
                continue
            name = f'#c{index}'
            names[name] = attribute
            values[f':c{index}'] = item[attribute]
            set_clauses.append(f'{name} = if_not_exists({name}, :c{index})')

        expression = 'SET ' + ', '.join(set_clauses)
        if remove_clauses:
            expression += ' REMOVE ' + ', '.join(remove_clauses)

        response = self.table.update_item(
            Key={'pattern_id': item['pattern_id']},
            UpdateExpression=expression,
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values,
            ReturnValues='ALL_NEW'
        )
        return self._item_to_pattern(response['Attributes'])

    def delete_pattern(self, pattern_id: str) -> None:
        self.table.delete_item(Key={'pattern_id': pattern_id})

    def clear(self) -> int:
        """
        Delete every cached pattern in batches of 25 items.

        Returns:
            Count of deleted patterns
        """
        pattern_ids = list(self.get_all_patterns().keys())
        if not pattern_ids:
            return 0

        logger.info(f"Deleting {len(pattern_ids)} cached patterns")
        deleted_count = 0

        for i in range(0, len(pattern_ids), self.BATCH_SIZE):
            batch = pattern_ids[i:i + self.BATCH_SIZE]

            try:
                with self.table.batch_writer() as writer:
                    for pattern_id in batch:
                        writer.delete_item(Key={'pattern_id': pattern_id})
                deleted_count += len(batch)

            except ClientError as e:
                logger.error(
                    f"Error deleting batch {i // self.BATCH_SIZE + 1}: {e}"
                )
                continue

        logger.info(f"Successfully deleted {deleted_count} cached patterns")
        return deleted_count

    def _item_to_pattern(self, item: dict) -> Optional[RecurringPattern]:
        """
        Convert DynamoDB item to RecurringPattern object.

        Args:
            item: DynamoDB item dictionary

        Returns:
            RecurringPattern object or None if conversion fails
        """
        try:
            ends_by = item.get('ends_by')
            return RecurringPattern(
                title=item['title'],
                day_of_week=int(item['day_of_week']),
                time=item.get('time'),
                location=item.get('location') or '',
                occurrence_count=int(item['occurrence_count']),
                last_analyzed=int(item['last_analyzed']),
                event_ids=list(item.get('event_ids', [])),
                confidence=float(item.get('confidence', 0)),
                frequency=item.get('frequency', 'weekly'),
                description=item.get('description') or '',
                ministry_connection=item.get('ministry_connection'),
                ministry_team_id=item.get('ministry_team_id'),
                special_event_id=item.get('special_event_id'),
                is_special_event=bool(item.get('is_special_event', False)),
                is_external=bool(item.get('is_external', False)),
                contact_person=item.get('contact_person'),
                recurring_description=item.get('recurring_description'),
                special_event_note=item.get('special_event_note'),
                special_event_image=item.get('special_event_image'),
                ends_by=date.fromisoformat(ends_by) if ends_by else None,
                featured_on_home_page=bool(item.get('featured_on_home_page', False))
            )
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(
                f"Failed to convert item {item.get('pattern_id')} to RecurringPattern: {e}"
            )
            return None

    def _pattern_to_item(self, pattern: RecurringPattern) -> dict:
        """
        Convert RecurringPattern object to DynamoDB item.

        Args:
            pattern: RecurringPattern object

        Returns:
            DynamoDB item dictionary
        """
        item = {
            'pattern_id': pattern.pattern_id,
            'title': pattern.title,
            'day_of_week': pattern.day_of_week,
            'location': pattern.location,
            'occurrence_count': pattern.occurrence_count,
            'last_analyzed': pattern.last_analyzed,
            'event_ids': list(pattern.event_ids),
            'confidence': Decimal(str(pattern.confidence)),
            'frequency': pattern.frequency,
            'description': pattern.description,
            'is_special_event': pattern.is_special_event,
            'is_external': pattern.is_external,
            'featured_on_home_page': pattern.featured_on_home_page
        }

        # Add optional fields if present
        optional_fields = {
            'time': pattern.time,
            'ministry_connection': pattern.ministry_connection,
            'ministry_team_id': pattern.ministry_team_id,
            'special_event_id': pattern.special_event_id,
            'contact_person': pattern.contact_person,
            'recurring_description': pattern.recurring_description,
            'special_event_note': pattern.special_event_note,
            'special_event_image': pattern.special_event_image,
            'ends_by': pattern.ends_by.isoformat() if pattern.ends_by else None,
        }
        for name, value in optional_fields.items():
            if value:
                item[name] = value

        return item

"""AWS Lambda handler for the church calendar recurring events API."""
import base64
import json
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from processor.errors import InvalidArgumentError, PatternNotFoundError
from processor.models import RawEvent, RecurringPattern
from processor.recurring_events_service import RecurringEventsService, group_by_day_of_week
from storage.calendar_event_store import CalendarEventStore
from storage.pattern_cache_store import PatternCacheStore

# Attributes every LogRecord carries; anything else came in through `extra`
_STANDARD_LOG_ATTRS = set(
    vars(logging.LogRecord('', logging.INFO, '', 0, '', (), None))
) | {'message', 'asctime'}


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON, including any `extra` fields."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        for name, value in vars(record).items():
            if name not in _STANDARD_LOG_ATTRS and not name.startswith('_'):
                log_data[name] = value

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

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


@dataclass
class Settings:
    """Runtime configuration read from environment variables."""
    events_table_name: str
    patterns_table_name: str
    log_level: str
    refresh_interval_minutes: int
    scan_days_back: int
    scan_days_ahead: int
    time_zone: str


def load_settings() -> Settings:
    return Settings(
        events_table_name=os.environ.get('EVENTS_TABLE_NAME', 'calendar-events'),
        patterns_table_name=os.environ.get('PATTERNS_TABLE_NAME', 'recurring-events-cache'),
        log_level=os.environ.get('LOG_LEVEL', 'INFO'),
        refresh_interval_minutes=int(os.environ.get('REFRESH_INTERVAL_MINUTES', '60')),
        scan_days_back=int(os.environ.get('SCAN_DAYS_BACK', '28')),
        scan_days_ahead=int(os.environ.get('SCAN_DAYS_AHEAD', '90')),
        time_zone=os.environ.get('CALENDAR_TIME_ZONE', 'America/Chicago')
    )


def build_service(settings: Settings) -> RecurringEventsService:
    tz = ZoneInfo(settings.time_zone)
    return RecurringEventsService(
        event_store=CalendarEventStore(settings.events_table_name, tz=tz),
        pattern_store=PatternCacheStore(settings.patterns_table_name),
        refresh_interval=timedelta(minutes=settings.refresh_interval_minutes),
        scan_days_back=settings.scan_days_back,
        scan_days_ahead=settings.scan_days_ahead,
        tz=tz
    )


def _iso_timestamp(epoch_seconds: Optional[int]) -> Optional[str]:
    if not epoch_seconds:
        return None
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).isoformat()


def pattern_to_json(pattern: RecurringPattern) -> Dict[str, Any]:
    """Serialize a cached pattern with camelCase keys."""
    return {
        'id': pattern.pattern_id,
        'title': pattern.title,
        'dayOfWeek': pattern.day_of_week,
        'time': pattern.time,
        'location': pattern.location,
        'description': pattern.description,
        'frequency': pattern.frequency,
        'confidence': pattern.confidence,
        'occurrenceCount': pattern.occurrence_count,
        'eventIds': pattern.event_ids,
        'ministryConnection': pattern.ministry_connection,
        'ministryTeamId': pattern.ministry_team_id,
        'specialEventId': pattern.special_event_id,
        'isSpecialEvent': pattern.is_special_event,
        'isExternal': pattern.is_external,
        'contactPerson': pattern.contact_person,
        'recurringDescription': pattern.recurring_description,
        'specialEventNote': pattern.special_event_note,
        'specialEventImage': pattern.special_event_image,
        'endsBy': pattern.ends_by.isoformat() if pattern.ends_by else None,
        'featuredOnHomePage': pattern.featured_on_home_page,
        'lastAnalyzed': _iso_timestamp(pattern.last_analyzed)
    }


def raw_event_to_json(event: RawEvent) -> Dict[str, Any]:
    return {
        'eventId': event.event_id,
        'title': event.title,
        'startTime': event.start_time.isoformat(),
        'endTime': event.end_time.isoformat(),
        'location': event.location,
        'allDay': event.all_day,
        'ministryTeamId': event.ministry_team_id,
        'specialEventId': event.special_event_id,
        'isSpecialEvent': event.is_special_event,
        'isExternal': event.is_external,
        'contactPerson': event.contact_person,
        'specialEventNote': event.special_event_note,
        'specialEventImage': event.special_event_image,
        'recurringDescription': event.recurring_description,
        'endsBy': event.ends_by.isoformat() if event.ends_by else None,
        'featuredOnHomePage': event.featured_on_home_page
    }


def weekly_patterns_to_json(patterns: List[RecurringPattern]) -> Dict[str, List[Dict[str, Any]]]:
    return {
        str(day): [pattern_to_json(p) for p in day_patterns]
        for day, day_patterns in group_by_day_of_week(patterns).items()
    }


def _response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'statusCode': status_code,
        'headers': {'Content-Type': 'application/json'},
        'body': json.dumps(body, default=str)
    }


def _parse_int_param(query: Dict[str, str], name: str) -> Optional[int]:
    value = query.get(name)
    if value is None or value == '':
        return None
    try:
        return int(value)
    except ValueError:
        raise InvalidArgumentError(f"{name} must be an integer")


def _parse_bool_param(query: Dict[str, str], name: str) -> bool:
    return str(query.get(name, '')).lower() in ('1', 'true', 'yes')


def _parse_json_body(body: Optional[str]) -> Dict[str, Any]:
    if not body:
        raise InvalidArgumentError('Request body is required')
    try:
        return json.loads(body)
    except json.JSONDecodeError as e:
        raise InvalidArgumentError(f"Invalid JSON body: {e}")


def get_recurring_events(service: RecurringEventsService, query, body) -> Dict[str, Any]:
    month, year = service.resolve_month(
        _parse_int_param(query, 'month'), _parse_int_param(query, 'year')
    )
    patterns = service.get_recurring_events(
        month, year, include_external=_parse_bool_param(query, 'includeExternal')
    )
    last_analyzed = max((p.last_analyzed for p in patterns), default=None)

    return _response(200, {
        'recurringEvents': [pattern_to_json(p) for p in patterns],
        'weeklyPatterns': weekly_patterns_to_json(patterns),
        'totalEvents': len(patterns),
        'month': month,
        'year': year,
        'lastRefreshed': _iso_timestamp(last_analyzed)
    })


def refresh_recurring_events(service: RecurringEventsService, query, body) -> Dict[str, Any]:
    month, year = service.resolve_month(
        _parse_int_param(query, 'month'), _parse_int_param(query, 'year')
    )
    result = service.refresh_cache()
    patterns = service.patterns_for_month(
        result.patterns, month, year,
        include_external=_parse_bool_param(query, 'includeExternal')
    )

    return _response(200, {
        'message': 'Recurring events cache refreshed successfully',
        'recurringEvents': [pattern_to_json(p) for p in patterns],
        'weeklyPatterns': weekly_patterns_to_json(patterns),
        'totalEvents': len(patterns),
        'month': month,
        'year': year,
        'statistics': {
            'patterns_added': result.added,
            'patterns_updated': result.updated,
            'patterns_unobserved': result.unobserved
        },
        'errors': result.errors
    })


def check_health(service: RecurringEventsService, query, body) -> Dict[str, Any]:
    health = service.health()
    return _response(200, {
        'status': health.status,
        'eventCount': health.event_count,
        'needsRefresh': health.needs_refresh,
        'timestamp': health.timestamp.isoformat()
    })


def refresh_from_health_check(service: RecurringEventsService, query, body) -> Dict[str, Any]:
    result = service.refresh_cache()
    return _response(200, {
        'status': 'refreshed',
        'message': 'Cache refreshed successfully',
        'eventCount': len(result.patterns),
        'errors': result.errors,
        'timestamp': service.clock.now().isoformat()
    })


def update_connections(service: RecurringEventsService, query, body) -> Dict[str, Any]:
    pattern = service.update_connections(_parse_json_body(body))
    return _response(200, {'success': True, 'event': pattern_to_json(pattern)})


def remove_pattern(service: RecurringEventsService, query, body) -> Dict[str, Any]:
    pattern = service.remove_pattern(_parse_json_body(body))
    return _response(200, {'success': True, 'event': pattern_to_json(pattern)})


def find_event_by_recurring(service: RecurringEventsService, query, body) -> Dict[str, Any]:
    event = service.find_raw_event_for_pattern(_parse_json_body(body))
    return _response(200, {'event': raw_event_to_json(event) if event else None})


RouteHandler = Callable[[RecurringEventsService, Dict[str, str], Optional[str]], Dict[str, Any]]

# (method, path) -> (handler, message used when the handler fails)
ROUTES: Dict[Tuple[str, str], Tuple[RouteHandler, str]] = {
    ('GET', '/recurring-events'): (
        get_recurring_events, 'Failed to fetch recurring events'),
    ('POST', '/recurring-events'): (
        refresh_recurring_events, 'Failed to refresh recurring events cache'),
    ('GET', '/health/recurring-events'): (
        check_health, 'Failed to check cache health'),
    ('POST', '/health/recurring-events'): (
        refresh_from_health_check, 'Failed to refresh cache'),
    ('POST', '/admin/recurring-events/update-connections'): (
        update_connections, 'Failed to update recurring event connections'),
    ('DELETE', '/admin/recurring-events'): (
        remove_pattern, 'Failed to remove recurring event pattern'),
    ('POST', '/calendar/events/by-recurring'): (
        find_event_by_recurring, 'Failed to fetch event'),
}


def _parse_request(event: Dict[str, Any]) -> Tuple[str, str, Dict[str, str], Optional[str]]:
    """
    Extract method, path, query parameters and body from an API Gateway event.

    Supports both REST (v1) and HTTP API (v2) proxy payloads. For v2 named
    stages the stage prefix is stripped from rawPath.
    """
    request_context = event.get('requestContext') or {}
    http_context = request_context.get('http') or {}
    method = (event.get('httpMethod') or http_context.get('method') or '').upper()
    path = event.get('rawPath') or event.get('path') or http_context.get('path') or '/'

    stage = request_context.get('stage')
    if event.get('rawPath') and stage and stage != '$default':
        prefix = f'/{stage}'
        if path == prefix or path.startswith(prefix + '/'):
            path = path[len(prefix):]
    path = path.rstrip('/') or '/'
    query = event.get('queryStringParameters') or {}

    body = event.get('body')
    if body and event.get('isBase64Encoded'):
        body = base64.b64decode(body).decode('utf-8')

    return method, path, query, body


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler function for the recurring events API.

    Args:
        event: API Gateway proxy event
        context: Lambda context object

    Returns:
        API Gateway proxy response with a JSON body
    """
    settings = load_settings()

    setup_logging(settings.log_level)
    logger = logging.getLogger(__name__)

    start_time = time.time()
    method, path, query, body = _parse_request(event)
    logger.info(
        "Lambda execution started",
        extra={'method': method, 'path': path}
    )

    route = ROUTES.get((method, path))
    if route is None:
        known_path = any(route_path == path for _, route_path in ROUTES)
        status_code = 405 if known_path else 404
        logger.warning(f"No route for {method} {path}")
        return _response(status_code, {
            'error': 'Method not allowed' if known_path else 'Not found'
        })

    handler, failure_message = route

    try:
        service = build_service(settings)
        response = handler(service, query, body)

    except InvalidArgumentError as e:
        logger.warning(f"Rejected {method} {path}: {e}")
        response = _response(400, {'error': str(e)})

    except PatternNotFoundError as e:
        logger.warning(f"Not found for {method} {path}: {e}")
        response = _response(404, {'error': 'Recurring event pattern not found'})

    except Exception as e:
        logger.error(
            f"{failure_message}: {str(e)}",
            extra={'error_type': type(e).__name__},
            exc_info=True
        )
        error_body = {
            'error': failure_message,
            'detail': str(e),
            'error_type': type(e).__name__
        }
        if path.startswith('/health'):
            error_body['status'] = 'error'
            error_body['timestamp'] = datetime.now(timezone.utc).isoformat()
        response = _response(500, error_body)

    duration = time.time() - start_time
    logger.info(
        "Lambda execution completed",
        extra={
            'method': method,
            'path': path,
            'status_code': response['statusCode'],
            'duration_seconds': round(duration, 2)
        }
    )
    return response

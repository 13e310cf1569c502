#!/usr/bin/env python3
"""
Google Calendar adapter.

Talks to Google Calendar API v3 with a service account. Provider calendar
names ('Home', 'Work') are resolved to Google calendar IDs through
PROVIDER_CALENDARS. Every request runs on an httplib2 transport whose
socket timeout is the per-operation bound, so a hung request surfaces as
an AdapterError instead of stalling the sync run.
"""

import threading
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import httplib2
from google.oauth2.service_account import Credentials
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from calbridge.adapters.base import (
    CalendarAdapter, EventFields, ExternalEvent, SyncWindow, to_provider_calendar
)
from calbridge.config import (
    API_BASE_BACKOFF, API_MAX_RETRIES, GOOGLE_CREDENTIALS_FILE, GOOGLE_SCOPES,
    LIST_TIMEOUT_SECONDS, PROVIDER_CALENDARS, WRITE_TIMEOUT_SECONDS
)
from calbridge.core.timeutil import isoformat_z, parse_instant
from calbridge.errors import AdapterError

# socket timeouts and connection resets are OSErrors
TRANSPORT_ERRORS = (OSError, httplib2.HttpLib2Error)


class GoogleCalendarAdapter(CalendarAdapter):
    """CalendarAdapter backed by Google Calendar API v3."""

    logger_name = 'google-calendar'

    def __init__(self, calendar_ids: Dict[str, str] = None,
                 credentials_file: str = None,
                 service_factory: Callable[[int], Any] = None,
                 list_timeout: int = LIST_TIMEOUT_SECONDS,
                 write_timeout: int = WRITE_TIMEOUT_SECONDS,
                 max_retries: int = API_MAX_RETRIES,
                 base_backoff: float = API_BASE_BACKOFF,
                 api_call_delay: float = 0.1,
                 **kwargs):
        super().__init__(**kwargs)

        self.calendar_ids = dict(calendar_ids if calendar_ids is not None else PROVIDER_CALENDARS)
        self.credentials_file = credentials_file or GOOGLE_CREDENTIALS_FILE
        self.list_timeout = list_timeout
        self.write_timeout = write_timeout

        # Rate limiting configuration
        self.api_call_delay = api_call_delay
        self.max_retries = max_retries
        self.base_backoff = base_backoff

        self._service_factory = service_factory or self._build_service
        self._credentials = None
        # httplib2 connections are not thread-safe; one service per thread
        self._local = threading.local()

    def _load_credentials(self):
        if self._credentials is None:
            self._credentials = Credentials.from_service_account_file(
                self.credentials_file,
                scopes=GOOGLE_SCOPES
            )
        return self._credentials

    def _build_service(self, timeout: int):
        """Build a Calendar API client whose transport gives up after `timeout` seconds."""
        try:
            http = AuthorizedHttp(self._load_credentials(), http=httplib2.Http(timeout=timeout))
            service = build('calendar', 'v3', http=http, cache_discovery=False)
            self.logger.debug(f"Google Calendar API service initialized (timeout {timeout}s)")
            return service
        except Exception as e:
            self.logger.error(f"❌ Failed to initialize Calendar API: {e}")
            raise AdapterError(f"Calendar API unavailable: {e}") from e

    def _service(self, timeout: int):
        services = getattr(self._local, 'services', None)
        if services is None:
            services = self._local.services = {}
        if timeout not in services:
            services[timeout] = self._service_factory(timeout)
        return services[timeout]

    def _calendar_id(self, provider_name: str) -> str:
        calendar_id = self.calendar_ids.get(provider_name)
        if not calendar_id:
            raise AdapterError(f"No Google calendar configured for '{provider_name}'",
                               calendar_name=provider_name)
        return calendar_id

    def _api_call_with_retry(self, api_func, *args, missing_ok: bool = False, **kwargs) -> Optional[Any]:
        """
        Execute API call with exponential backoff retry on rate limits and
        server errors.

        Raises AdapterError on permanent failure. With missing_ok, a 404/410
        returns None instead.
        """
        last_error = None

        for attempt in range(self.max_retries):
            try:
                if self.api_call_delay:
                    time.sleep(self.api_call_delay)

                # API methods return an HttpRequest; .execute() performs it
                request = api_func(*args, **kwargs)
                return request.execute()

            except HttpError as e:
                last_error = e
                status = getattr(e.resp, 'status', 0)

                if status == 429 or 'rateLimitExceeded' in str(e):
                    backoff_time = self.base_backoff * (2 ** attempt)
                    self.logger.warning(f"⏳ Rate limit hit, backing off for {backoff_time}s "
                                        f"(attempt {attempt + 1}/{self.max_retries})")
                    time.sleep(backoff_time)
                    continue

                elif status in (404, 410):
                    if missing_ok:
                        return None
                    raise AdapterError(f"Event not found on provider (HTTP {status})") from e

                elif status >= 500:
                    backoff_time = self.base_backoff * (2 ** attempt)
                    self.logger.warning(f"⏳ Server error {status}, retrying in {backoff_time}s")
                    time.sleep(backoff_time)
                    continue

                else:
                    self.logger.error(f"❌ HTTP error {status}: {e}")
                    raise AdapterError(f"HTTP {status}: {e}") from e

            except TRANSPORT_ERRORS as e:
                # Timeouts are not retried: the bound is per operation
                self.logger.error(f"❌ Calendar API transport error: {e}")
                raise AdapterError(f"Calendar API request failed: {e}") from e

        self.logger.error(f"❌ Max retries ({self.max_retries}) exceeded for API call")
        raise AdapterError(f"Max retries exceeded: {last_error}")

    @staticmethod
    def _parse_time(value: Dict) -> Optional[datetime]:
        if 'dateTime' in value:
            return parse_instant(value['dateTime'])
        if 'date' in value:
            return parse_instant(datetime.strptime(value['date'], '%Y-%m-%d'))
        return None

    def _to_external(self, item: Dict, provider_name: str) -> Optional[ExternalEvent]:
        if item.get('status') == 'cancelled':
            return None

        start = self._parse_time(item.get('start', {}))
        end = self._parse_time(item.get('end', {}))
        if not item.get('id') or start is None or end is None:
            return None

        return ExternalEvent(
            external_id=item['id'],
            title=item.get('summary', 'Untitled'),
            start=start,
            end=end,
            all_day='date' in item.get('start', {}),
            description=item.get('description') or None,
            location=item.get('location') or None,
            calendar_name=provider_name,
        )

    def list_calendar_events(self, calendar_name: str, window: SyncWindow) -> List[ExternalEvent]:
        """Fetch every event on one provider calendar inside the window."""
        calendar_id = self._calendar_id(calendar_name)
        service = self._service(self.list_timeout)

        self.logger.debug(f"Fetching events from {calendar_name} ({calendar_id})")

        events = []
        page_token = None

        while True:
            result = self._api_call_with_retry(
                service.events().list,
                calendarId=calendar_id,
                timeMin=isoformat_z(window.start),
                timeMax=isoformat_z(window.end),
                maxResults=2500,
                singleEvents=True,
                orderBy='startTime',
                pageToken=page_token
            )

            for item in result.get('items', []):
                event = self._to_external(item, calendar_name)
                if event is not None:
                    events.append(event)

            page_token = result.get('nextPageToken')
            if not page_token:
                break

        return events

    @staticmethod
    def _event_body(fields: EventFields) -> Dict:
        """Build the Google event resource for create/update."""
        body = {
            'summary': fields.title,
            'description': fields.description or '',
            'location': fields.location or '',
        }

        if fields.all_day:
            start_date = fields.start.date()
            end_date = fields.end.date()
            # Google's all-day end date is exclusive and must follow the start
            if end_date <= start_date:
                end_date = start_date + timedelta(days=1)
            body['start'] = {'date': start_date.strftime('%Y-%m-%d')}
            body['end'] = {'date': end_date.strftime('%Y-%m-%d')}
        else:
            body['start'] = {'dateTime': isoformat_z(fields.start), 'timeZone': 'UTC'}
            body['end'] = {'dateTime': isoformat_z(fields.end), 'timeZone': 'UTC'}

        body['extendedProperties'] = {
            'private': {
                'source': 'calbridge',
            }
        }
        return body

    def create_event(self, fields: EventFields, calendar_name: str) -> str:
        provider_name = to_provider_calendar(calendar_name)
        calendar_id = self._calendar_id(provider_name)
        service = self._service(self.write_timeout)

        created = self._api_call_with_retry(
            service.events().insert,
            calendarId=calendar_id,
            body=self._event_body(fields)
        )

        external_id = (created or {}).get('id')
        if not external_id:
            raise AdapterError(f"Provider returned no id for '{fields.title}'",
                               calendar_name=provider_name)

        self.logger.debug(f"  Created {external_id} on {provider_name}")
        return external_id

    def update_event(self, external_id: str, fields: EventFields, calendar_name: str) -> None:
        provider_name = to_provider_calendar(calendar_name)
        calendar_id = self._calendar_id(provider_name)
        service = self._service(self.write_timeout)

        self._api_call_with_retry(
            service.events().patch,
            calendarId=calendar_id,
            eventId=external_id,
            body=self._event_body(fields)
        )
        self.logger.debug(f"  Updated {external_id} on {provider_name}")

    def delete_event(self, external_id: str, calendar_name: str) -> None:
        provider_name = to_provider_calendar(calendar_name)
        calendar_id = self._calendar_id(provider_name)
        service = self._service(self.write_timeout)

        # Already gone upstream is as good as deleted
        self._api_call_with_retry(
            service.events().delete,
            calendarId=calendar_id,
            eventId=external_id,
            missing_ok=True
        )
        self.logger.debug(f"  Deleted {external_id} from {provider_name}")

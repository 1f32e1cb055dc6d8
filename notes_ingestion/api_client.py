"""
Notes API Client

Fetches notes changed since a cursor from the OSM notes search endpoint
and converts the GeoJSON answer into note, comment and text records.
"""

import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import requests

from . import __version__
from .errors import UpstreamUnavailable, ValidationFailure
from .models import (
    Comment,
    CommentEvent,
    CommentText,
    Note,
    NoteBatch,
    NoteStatus,
    format_osm_timestamp,
    parse_osm_timestamp,
)

logger = logging.getLogger(__name__)

USER_AGENT = f'OSM-Notes-Ingestion/{__version__}'


def parse_notes_geojson(payload: Dict[str, Any]) -> NoteBatch:
    """
    Convert a notes search FeatureCollection into a NoteBatch.

    Comment sequence numbers are the 1-based position of the comment within
    its note, which is how both upstream sources order them.

    Raises:
        ValidationFailure: The payload is not a usable FeatureCollection
    """
    if not isinstance(payload, dict) or not isinstance(payload.get('features'), list):
        raise ValidationFailure("Notes response is not a GeoJSON FeatureCollection")

    batch = NoteBatch()
    for feature in payload['features']:
        try:
            properties = feature['properties']
            longitude, latitude = feature['geometry']['coordinates'][:2]
            note_id = int(properties['id'])
            note = Note(
                note_id=note_id,
                latitude=float(latitude),
                longitude=float(longitude),
                created_at=parse_osm_timestamp(properties['date_created']),
                status=NoteStatus.from_upstream(properties.get('status', 'open')),
                closed_at=parse_osm_timestamp(properties.get('closed_at')),
            )

            for sequence, raw in enumerate(properties.get('comments', []), start=1):
                uid = raw.get('uid')
                batch.comments.append(Comment(
                    note_id=note_id,
                    sequence_action=sequence,
                    event=CommentEvent(raw['action']),
                    created_at=parse_osm_timestamp(raw['date']),
                    id_user=int(uid) if uid is not None else None,
                    username=raw.get('user'),
                ))
                if raw.get('text') is not None:
                    batch.texts.append(CommentText(note_id, sequence, raw['text']))
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationFailure(f"Malformed note feature: {e}") from e

        batch.notes.append(note)

    return batch


class NotesApiClient:
    """HTTP client for the notes search endpoint with retries and a deadline."""

    def __init__(self, api_url: str, page_limit: int = 10000, timeout: int = 60,
                 max_attempts: int = 3, backoff_seconds: float = 5,
                 deadline_seconds: float = 300, session: Optional[requests.Session] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.api_url = api_url.rstrip('/')
        self.page_limit = page_limit
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.deadline_seconds = deadline_seconds
        self.session = session or requests.Session()
        self.session.headers.update({'User-Agent': USER_AGENT})
        self._sleep = sleep
        self._clock = clock

    @property
    def search_url(self) -> str:
        return f"{self.api_url}/notes/search.json"

    def build_params(self, since: Optional[datetime]) -> Dict[str, Any]:
        params = {
            'limit': self.page_limit,
            'closed': -1,
            'sort': 'updated_at',
            'order': 'oldest',
        }
        if since is not None:
            params['from'] = format_osm_timestamp(since)
        return params

    def fetch_changes(self, since: Optional[datetime]) -> NoteBatch:
        """
        Fetch one page of notes updated at or after `since`.

        Args:
            since: Ingestion cursor, or None for the oldest available page

        Returns:
            NoteBatch with the page contents

        Raises:
            UpstreamUnavailable: No valid answer within the attempt budget
        """
        params = self.build_params(since)
        deadline = self._clock() + self.deadline_seconds
        last_error = None
        attempts = 0

        for attempt in range(self.max_attempts):
            remaining = deadline - self._clock()
            if remaining <= 0:
                logger.warning("Notes API deadline reached before next attempt")
                break
            attempts += 1
            try:
                response = self.session.get(
                    self.search_url,
                    params=params,
                    timeout=min(self.timeout, remaining),
                )
                response.raise_for_status()
                try:
                    payload = response.json()
                except ValueError as e:
                    raise ValidationFailure(f"Notes response is not JSON: {e}") from e

                batch = parse_notes_geojson(payload)
                logger.info(f"Fetched {len(batch)} notes from API (from={params.get('from')})")
                return batch

            except (requests.RequestException, ValidationFailure) as e:
                last_error = str(e)
                logger.warning(f"Notes API attempt {attempt + 1} failed: {e}")

                if attempt < self.max_attempts - 1:
                    delay = self.backoff_seconds * (2 ** attempt)
                    if self._clock() + delay >= deadline:
                        logger.warning("Notes API deadline does not allow another attempt")
                        break
                    self._sleep(delay)

        raise UpstreamUnavailable('notes API', attempts, last_error)

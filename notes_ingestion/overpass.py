"""
Overpass Client Module

Queries boundary relations from an ordered list of Overpass endpoints.
Each query walks the endpoints with a per-endpoint attempt budget,
exponential backoff and an overall deadline; a payload that fails
validation counts as a failed attempt.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

import requests

from . import __version__
from .errors import UpstreamUnavailable, ValidationFailure
from .geometry import assemble_relation
from .models import Region, RegionKind

logger = logging.getLogger(__name__)

USER_AGENT = f'OSM-Notes-Ingestion/{__version__}'

ID_QUERIES = {
    RegionKind.COUNTRY: (
        '[out:json][timeout:{timeout}];'
        'relation["type"="boundary"]["boundary"="administrative"]["admin_level"="2"];'
        'out ids;'
    ),
    RegionKind.MARITIME: (
        '[out:json][timeout:{timeout}];'
        'relation["type"="boundary"]["boundary"="maritime"]'
        '["border_type"~"contiguous_zone|eez|territorial",i];'
        'out ids;'
    ),
}

BOUNDARY_QUERY = '[out:json][timeout:{timeout}];relation({region_id});out geom;'


class EndpointRetryState:
    """
    Position in the endpoint/attempt sequence of one query.

    Attempts on an endpoint are separated by base_delay * 2^attempt; when an
    endpoint's budget is used up the next endpoint starts immediately.
    """

    def __init__(self, endpoints: Sequence[str], attempts_per_endpoint: int,
                 base_delay: float, deadline: float,
                 clock: Callable[[], float] = time.monotonic):
        if not endpoints:
            raise ValueError("At least one endpoint is required")
        self.endpoints = list(endpoints)
        self.attempts_per_endpoint = attempts_per_endpoint
        self.base_delay = base_delay
        self.deadline = deadline
        self._clock = clock
        self.endpoint_index = 0
        self.attempt = 0
        self.total_attempts = 0
        self.errors: List[str] = []

    @property
    def current_endpoint(self) -> str:
        return self.endpoints[self.endpoint_index]

    @property
    def exhausted(self) -> bool:
        return self.endpoint_index >= len(self.endpoints)

    def remaining(self) -> float:
        return self.deadline - self._clock()

    def record_failure(self, error: Exception) -> Optional[float]:
        """
        Register a failed attempt and move to the next position.

        Returns:
            Seconds to wait before the next attempt, or None when every
            endpoint is exhausted or the deadline would be passed
        """
        self.total_attempts += 1
        self.errors.append(f"{self.current_endpoint}: {error}")

        failed_attempt = self.attempt
        self.attempt += 1
        if self.attempt >= self.attempts_per_endpoint:
            logger.warning(f"Endpoint {self.current_endpoint} exhausted after "
                           f"{self.attempts_per_endpoint} attempts")
            self.endpoint_index += 1
            self.attempt = 0
            delay = 0.0
        else:
            delay = self.base_delay * (2 ** failed_attempt)

        if self.exhausted:
            return None
        if self.remaining() <= delay:
            logger.warning("Overpass deadline reached, giving up")
            return None
        return delay


class OverpassClient:
    """Boundary queries against Overpass with endpoint fallback."""

    def __init__(self, endpoints: Sequence[str], retries_per_endpoint: int = 7,
                 backoff_seconds: float = 20, request_timeout: int = 300,
                 deadline_seconds: float = 3600,
                 session: Optional[requests.Session] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.endpoints = list(endpoints)
        self.retries_per_endpoint = retries_per_endpoint
        self.backoff_seconds = backoff_seconds
        self.request_timeout = request_timeout
        self.deadline_seconds = deadline_seconds
        self.session = session or requests.Session()
        self.session.headers.update({'User-Agent': USER_AGENT})
        self._sleep = sleep
        self._clock = clock

    def new_deadline(self) -> float:
        return self._clock() + self.deadline_seconds

    def execute(self, query: str, validate: Optional[Callable[[Dict[str, Any]], Any]] = None,
                deadline: Optional[float] = None) -> Any:
        """
        Run a query until some endpoint returns a valid payload.

        Args:
            query: Overpass QL text
            validate: Converts the payload; raising ValidationFailure marks
                the attempt as failed
            deadline: Absolute clock value bounding all attempts

        Raises:
            UpstreamUnavailable: All endpoints and attempts are exhausted or
                the deadline passed
        """
        state = EndpointRetryState(
            self.endpoints, self.retries_per_endpoint, self.backoff_seconds,
            deadline if deadline is not None else self.new_deadline(), self._clock)

        while True:
            if state.remaining() <= 0:
                raise UpstreamUnavailable('Overpass', state.total_attempts, 'deadline passed')

            endpoint = state.current_endpoint
            try:
                response = self.session.post(
                    endpoint,
                    data={'data': query},
                    timeout=max(1.0, min(self.request_timeout, state.remaining())),
                )
                response.raise_for_status()
                payload = self._parse_payload(response)
                return validate(payload) if validate else payload

            except (requests.RequestException, ValidationFailure) as e:
                logger.warning(f"Overpass attempt {state.attempt + 1} on {endpoint} failed: {e}")
                delay = state.record_failure(e)
                if delay is None:
                    raise UpstreamUnavailable('Overpass', state.total_attempts, str(e))
                if delay > 0:
                    self._sleep(delay)

    @staticmethod
    def _parse_payload(response) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as e:
            raise ValidationFailure(f"Overpass response is not JSON: {e}") from e

        if not isinstance(payload, dict) or not isinstance(payload.get('elements'), list):
            raise ValidationFailure("Overpass response has no 'elements' list")

        remark = payload.get('remark') or ''
        if 'runtime error' in remark.lower():
            raise ValidationFailure(f"Overpass runtime error: {remark}")
        return payload

    def fetch_region_ids(self, kind: RegionKind, deadline: Optional[float] = None) -> Set[int]:
        """Ids of all boundary relations of one kind."""
        query = ID_QUERIES[kind].format(timeout=self.request_timeout)

        def relation_ids(payload: Dict[str, Any]) -> Set[int]:
            ids = {int(element['id']) for element in payload['elements']
                   if element.get('type') == 'relation' and 'id' in element}
            if not ids:
                raise ValidationFailure(f"Overpass returned no {kind.value} relations")
            return ids

        ids = self.execute(query, relation_ids, deadline)
        logger.info(f"Overpass lists {len(ids)} {kind.value} boundaries")
        return ids

    def fetch_region(self, region_id: int, kind: RegionKind,
                     deadline: Optional[float] = None) -> Region:
        """Geometry and name of one boundary relation."""
        query = BOUNDARY_QUERY.format(timeout=self.request_timeout, region_id=region_id)

        def build_region(payload: Dict[str, Any]) -> Region:
            for element in payload['elements']:
                if element.get('type') == 'relation' and element.get('id') == region_id:
                    tags = element.get('tags') or {}
                    return Region(
                        region_id=region_id,
                        name=tags.get('name:en') or tags.get('name') or '',
                        kind=kind,
                        geometry=assemble_relation(element),
                    )
            raise ValidationFailure(f"Relation {region_id} missing from Overpass response")

        return self.execute(query, build_region, deadline)

"""
Unit Tests for the Overpass Client
==================================

Endpoint fallback, backoff and deadline handling against a mocked HTTP
session, plus relation geometry assembly.
"""

import os
import sys
import unittest
from unittest.mock import MagicMock, Mock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

import requests
from shapely.geometry import Polygon

from notes_ingestion.errors import UpstreamUnavailable, ValidationFailure
from notes_ingestion.geometry import assemble_relation, repair_geometry
from notes_ingestion.models import RegionKind
from notes_ingestion.overpass import EndpointRetryState, OverpassClient


def json_response(payload):
    response = Mock()
    response.raise_for_status.return_value = None
    response.json.return_value = payload
    return response


def way(coords, role='outer'):
    return {'type': 'way', 'role': role,
            'geometry': [{'lon': lon, 'lat': lat} for lon, lat in coords]}


SQUARE_RELATION = {
    'type': 'relation',
    'id': 42,
    'tags': {'name': 'Quadratia', 'name:en': 'Squareland'},
    'members': [
        way([(0, 0), (4, 0), (4, 4)]),
        way([(4, 4), (0, 4), (0, 0)]),
        {'type': 'node', 'role': 'admin_centre', 'lon': 2, 'lat': 2},
    ],
}


class TestEndpointRetryState(unittest.TestCase):

    def test_backoff_then_next_endpoint(self):
        state = EndpointRetryState(['a', 'b'], attempts_per_endpoint=3, base_delay=10,
                                   deadline=1000, clock=lambda: 0)
        error = RuntimeError("timeout")

        delays = [state.record_failure(error) for _ in range(5)]

        self.assertEqual(delays, [10, 20, 0.0, 10, 20])
        self.assertEqual(state.current_endpoint, 'b')
        self.assertIsNone(state.record_failure(error))
        self.assertTrue(state.exhausted)
        self.assertEqual(state.total_attempts, 6)
        self.assertEqual(len(state.errors), 6)

    def test_deadline_stops_retrying(self):
        state = EndpointRetryState(['a'], attempts_per_endpoint=5, base_delay=10,
                                   deadline=15, clock=lambda: 0)

        self.assertEqual(state.record_failure(RuntimeError("x")), 10)
        self.assertIsNone(state.record_failure(RuntimeError("x")))

    def test_requires_endpoints(self):
        with self.assertRaises(ValueError):
            EndpointRetryState([], 1, 1, 10)


class TestOverpassClient(unittest.TestCase):

    def setUp(self):
        self.session = MagicMock()
        self.sleeps = []
        self.client = OverpassClient(
            ['http://primary', 'http://secondary'],
            retries_per_endpoint=2, backoff_seconds=1, request_timeout=30,
            deadline_seconds=600, session=self.session,
            sleep=self.sleeps.append, clock=lambda: 0,
        )

    def posted_endpoints(self):
        return [c.args[0] for c in self.session.post.call_args_list]

    def test_falls_back_to_next_endpoint(self):
        payload = {'elements': []}
        self.session.post.side_effect = [
            requests.ConnectionError("refused"),
            requests.Timeout("slow"),
            json_response(payload),
        ]

        self.assertEqual(self.client.execute('out ids;'), payload)
        self.assertEqual(self.posted_endpoints(),
                         ['http://primary', 'http://primary', 'http://secondary'])
        self.assertEqual(self.sleeps, [1])
        self.assertEqual(self.session.post.call_args.kwargs['data'], {'data': 'out ids;'})

    def test_all_endpoints_exhausted(self):
        self.session.post.side_effect = requests.ConnectionError("refused")

        with self.assertRaises(UpstreamUnavailable) as ctx:
            self.client.execute('out ids;')

        self.assertEqual(ctx.exception.attempts, 4)
        self.assertEqual(self.session.post.call_count, 4)

    def test_runtime_error_remark_counts_as_failure(self):
        self.session.post.side_effect = [
            json_response({'elements': [], 'remark': 'runtime error: Query timed out'}),
            json_response({'elements': [{'type': 'relation', 'id': 1}]}),
        ]

        ids = self.client.fetch_region_ids(RegionKind.COUNTRY)

        self.assertEqual(ids, {1})
        self.assertEqual(self.session.post.call_count, 2)

    def test_non_json_payload_is_rejected(self):
        response = Mock()
        response.json.side_effect = ValueError("Expecting value")
        with self.assertRaises(ValidationFailure):
            OverpassClient._parse_payload(response)

        with self.assertRaises(ValidationFailure):
            OverpassClient._parse_payload(json_response({'version': 0.6}))

    def test_passed_deadline_makes_no_request(self):
        with self.assertRaises(UpstreamUnavailable):
            self.client.execute('out ids;', deadline=0)
        self.session.post.assert_not_called()

    def test_empty_id_list_is_a_failed_attempt(self):
        self.session.post.return_value = json_response({'elements': []})

        with self.assertRaises(UpstreamUnavailable):
            self.client.fetch_region_ids(RegionKind.MARITIME)
        self.assertEqual(self.session.post.call_count, 4)

    def test_fetch_region(self):
        self.session.post.return_value = json_response({'elements': [SQUARE_RELATION]})

        region = self.client.fetch_region(42, RegionKind.COUNTRY)

        self.assertEqual(region.region_id, 42)
        self.assertEqual(region.name, 'Squareland')
        self.assertEqual(region.kind, RegionKind.COUNTRY)
        self.assertAlmostEqual(region.geometry.area, 16.0)
        self.assertIn('relation(42)', self.session.post.call_args.kwargs['data']['data'])


class TestGeometry(unittest.TestCase):

    def test_assemble_from_open_ways(self):
        geometry = assemble_relation(SQUARE_RELATION)
        self.assertTrue(geometry.is_valid)
        self.assertAlmostEqual(geometry.area, 16.0)

    def test_inner_ways_become_holes(self):
        relation = dict(SQUARE_RELATION)
        relation['members'] = SQUARE_RELATION['members'] + [
            way([(1, 1), (2, 1), (2, 2), (1, 2), (1, 1)], role='inner'),
        ]
        self.assertAlmostEqual(assemble_relation(relation).area, 15.0)

    def test_relation_without_outer_ways(self):
        with self.assertRaises(ValidationFailure):
            assemble_relation({'id': 1, 'members': [way([(0, 0), (1, 1)], role='inner')]})

    def test_unclosed_ways(self):
        with self.assertRaises(ValidationFailure):
            assemble_relation({'id': 1, 'members': [way([(0, 0), (4, 0), (4, 4)])]})

    def test_repair_self_intersection(self):
        bowtie = Polygon([(0, 0), (2, 2), (2, 0), (0, 2)])
        self.assertFalse(bowtie.is_valid)

        repaired = repair_geometry(bowtie)

        self.assertTrue(repaired.is_valid)
        self.assertGreater(repaired.area, 0)

    def test_valid_polygon_unchanged(self):
        square = Polygon([(0, 0), (1, 0), (1, 1), (0, 1)])
        self.assertIs(repair_geometry(square), square)


if __name__ == '__main__':
    unittest.main()

"""Tests for the GTFS Read API query pipeline."""

import unittest
import sys
from pathlib import Path

# Add src to path so we can import metromap
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from metromap.errors import BadRequestError, NotFoundError
from metromap.gtfs_api import TABLES, GTFSReadAPI, paginate
from metromap.storage import InMemoryStore


STOPS = [
    {"stop_id": "1", "stop_code": "40001", "stop_name": "Cathedral Square", "stop_lat": "-43.5310", "stop_lon": "172.6366"},
    {"stop_id": "2", "stop_code": "40002", "stop_name": "Riccarton Mall", "stop_lat": "-43.5302", "stop_lon": "172.5985"},
    {"stop_id": "3", "stop_code": "40003", "stop_name": "University of Canterbury", "stop_lat": "-43.5235", "stop_lon": "172.5839"},
    {"stop_id": "4", "stop_code": "40004", "stop_name": "Airport Terminal", "stop_lat": "-43.4894", "stop_lon": "172.5322"},
    {"stop_id": "5", "stop_code": "CATH5", "stop_name": "Bus Interchange", "stop_lat": "-43.5335", "stop_lon": "172.6375"},
]

ROUTES = [
    {"route_id": "3", "route_short_name": "3", "route_long_name": "Airport / Sumner", "route_color": "F7941D"},
    {"route_id": "Oa", "route_short_name": "Oa", "route_long_name": "The Orbiter", "route_color": "68BD45"},
]

TRIPS = [
    {"trip_id": "t1", "route_id": "3", "service_id": "WEEK", "shape_id": "5515"},
    {"trip_id": "t2", "route_id": "3", "service_id": "SAT", "shape_id": "5515"},
    {"trip_id": "t3", "route_id": "Oa", "service_id": "WEEK", "shape_id": "5582"},
]

STOP_TIMES = [
    {"trip_id": "t1", "stop_id": "1", "stop_sequence": "1", "arrival_time": "07:00:00", "departure_time": "07:00:00"},
    {"trip_id": "t1", "stop_id": "2", "stop_sequence": "2", "arrival_time": "07:10:00", "departure_time": "07:10:00"},
    {"trip_id": "t2", "stop_id": "4", "stop_sequence": "1", "arrival_time": "08:00:00", "departure_time": "08:00:00"},
    {"trip_id": "t3", "stop_id": "3", "stop_sequence": "1", "arrival_time": "09:00:00", "departure_time": "09:00:00"},
    {"trip_id": "t3", "stop_id": "2", "stop_sequence": "2", "arrival_time": "09:05:00", "departure_time": "09:05:00"},
]


def _make_store(**overrides) -> InMemoryStore:
    tables = {
        "gtfs:stops": STOPS,
        "gtfs:routes": ROUTES,
        "gtfs:trips": TRIPS,
        "gtfs:stop_times": STOP_TIMES,
        "gtfs:agency": [{"agency_id": "MET", "agency_name": "Metro Christchurch"}],
        "gtfs:calendar": [{"service_id": "WEEK", "monday": "1"}],
        "gtfs:shapes": [
            {"shape_id": "5515", "shape_pt_lat": "-43.53", "shape_pt_lon": "172.63", "shape_pt_sequence": "1"},
            {"shape_id": "5582", "shape_pt_lat": "-43.52", "shape_pt_lon": "172.58", "shape_pt_sequence": "1"},
        ],
    }
    for key, value in overrides.items():
        table = f"gtfs:{key}"
        if value is None:
            tables.pop(table, None)
        else:
            tables[table] = value
    return InMemoryStore(tables)


def _chunked_store(records, chunk_size, with_metadata=True) -> InMemoryStore:
    store = _make_store(stop_times=None)
    chunks = [records[i:i + chunk_size] for i in range(0, len(records), chunk_size)]
    for index, chunk in enumerate(chunks):
        store.put_json(f"gtfs:stop_times:chunk:{index}", chunk)
    if with_metadata:
        store.put_json(
            "gtfs:stop_times:metadata",
            {"totalRecords": len(records), "chunkCount": len(chunks), "chunkSize": chunk_size},
        )
    return store


class TestUnpaginatedTables(unittest.TestCase):
    """Test tables served without pagination."""

    def setUp(self):
        self.api = GTFSReadAPI(_make_store())

    def test_no_filters_returns_full_table(self):
        """Test that an unfiltered query returns every stored record."""
        store = _make_store()
        for table, spec in TABLES.items():
            if spec.paginated:
                continue
            records = store.get_json(f"gtfs:{table}")
            result = self.api.query(table, {})
            self.assertEqual(result.total, len(records), table)
            self.assertEqual(result.data, records, table)

    def test_chunked_table_other_than_stop_times(self):
        """Test that trips split into chunks serve queries and route joins."""
        store = _make_store(trips=None)
        store.put_json("gtfs:trips:chunk:0", TRIPS[:2])
        store.put_json("gtfs:trips:chunk:1", TRIPS[2:])
        api = GTFSReadAPI(store, max_stop_time_chunks=1)

        result = api.query("trips", {})
        self.assertEqual(result.data, TRIPS)
        self.assertFalse(result.partial)
        self.assertEqual({s["stop_id"] for s in api.query("stops", {"route_id": "Oa"}).data}, {"2", "3"})

    def test_envelope_has_total_not_pagination(self):
        """Test the unpaginated JSON envelope."""
        body = self.api.query("agency").to_dict()
        self.assertEqual(set(body), {"data", "total"})
        self.assertEqual(body["total"], 1)

    def test_route_search_is_case_insensitive(self):
        """Test substring search over route names."""
        result = self.api.query("routes", {"search": "orbiter"})
        self.assertEqual([r["route_id"] for r in result.data], ["Oa"])

        result = self.api.query("routes", {"search": "OA"})
        self.assertEqual([r["route_id"] for r in result.data], ["Oa"])

    def test_trips_filters_are_and_combined(self):
        """Test route_id and service_id together."""
        result = self.api.query("trips", {"route_id": "3", "service_id": "SAT"})
        self.assertEqual([t["trip_id"] for t in result.data], ["t2"])

    def test_shape_id_filter(self):
        """Test exact shape_id match."""
        result = self.api.query("shapes", {"shape_id": "5582"})
        self.assertEqual(result.total, 1)
        self.assertEqual(result.data[0]["shape_id"], "5582")

    def test_empty_parameter_is_ignored(self):
        """Test that an empty filter value does not filter."""
        result = self.api.query("trips", {"route_id": ""})
        self.assertEqual(result.total, len(TRIPS))

    def test_page_params_ignored_on_unpaginated_table(self):
        """Test that page/limit do not slice unpaginated tables."""
        result = self.api.query("trips", {"limit": "1"})
        self.assertEqual(len(result.data), len(TRIPS))
        self.assertIsNone(result.pagination)


class TestNotFound(unittest.TestCase):
    """Test missing-data handling."""

    def test_missing_table_raises_not_found(self):
        """Test that an absent key is distinct from an empty result."""
        api = GTFSReadAPI(_make_store(agency=None))
        with self.assertRaises(NotFoundError) as ctx:
            api.query("agency")
        self.assertIn("Agency", str(ctx.exception))

    def test_empty_after_filtering_is_not_an_error(self):
        """Test that a filter matching nothing returns an empty result."""
        api = GTFSReadAPI(_make_store())
        result = api.query("routes", {"search": "nowhere"})
        self.assertEqual(result.data, [])
        self.assertEqual(result.total, 0)

    def test_unknown_table(self):
        """Test that an unknown table name is not found."""
        with self.assertRaises(NotFoundError):
            GTFSReadAPI(_make_store()).query("frequencies")

    def test_route_filter_without_trips(self):
        """Test that a join through a missing trips table is not found."""
        api = GTFSReadAPI(_make_store(trips=None))
        with self.assertRaises(NotFoundError):
            api.query("stops", {"route_id": "3"})

    def test_stop_times_missing_everywhere(self):
        """Test that stop_times with neither a whole key nor chunks is not found."""
        api = GTFSReadAPI(_make_store(stop_times=None))
        with self.assertRaises(NotFoundError):
            api.query("stop_times")


class TestStops(unittest.TestCase):
    """Test stop filters and pagination."""

    def setUp(self):
        self.api = GTFSReadAPI(_make_store())

    def test_default_pagination(self):
        """Test default page 1 and limit 100."""
        body = self.api.query("stops").to_dict()
        self.assertEqual(body["pagination"], {"page": 1, "limit": 100, "total": 5, "totalPages": 1})
        self.assertEqual(len(body["data"]), 5)

    def test_search_matches_name_case_insensitively(self):
        """Test that 'cathedral' matches 'Cathedral Square'."""
        result = self.api.query("stops", {"search": "cathedral"})
        self.assertEqual([s["stop_id"] for s in result.data], ["1"])

    def test_search_matches_stop_code(self):
        """Test that search also covers stop_code."""
        result = self.api.query("stops", {"search": "cath"})
        self.assertEqual({s["stop_id"] for s in result.data}, {"1", "5"})

    def test_bounding_box_example(self):
        """Test the numeric bounding box example."""
        api = GTFSReadAPI(InMemoryStore({
            "gtfs:stops": [
                {"stop_id": "1", "stop_lat": 10, "stop_lon": 20},
                {"stop_id": "2", "stop_lat": 30, "stop_lon": 40},
            ],
        }))
        result = api.query("stops", {"min_lat": "5", "max_lat": "15", "min_lon": "15", "max_lon": "25"})
        self.assertEqual([s["stop_id"] for s in result.data], ["1"])

    def test_bounding_box_is_inclusive(self):
        """Test that a stop exactly on a bound is included."""
        params = {"min_lat": "-43.5310", "max_lat": "-43.5", "min_lon": "172.6", "max_lon": "172.6366"}
        result = self.api.query("stops", params)
        self.assertEqual([s["stop_id"] for s in result.data], ["1"])

    def test_bounding_box_excludes_outside_one_bound(self):
        """Test that failing a single bound excludes the stop."""
        params = {"min_lat": "-43.54", "max_lat": "-43.5", "min_lon": "172.6", "max_lon": "172.6370"}
        result = self.api.query("stops", params)
        self.assertEqual([s["stop_id"] for s in result.data], ["1"])

    def test_partial_bounding_box_rejected(self):
        """Test that bounds must be given together."""
        with self.assertRaises(BadRequestError):
            self.api.query("stops", {"min_lat": "-44", "max_lat": "-43"})

    def test_malformed_bound_rejected(self):
        """Test that a non-numeric bound is a bad request."""
        params = {"min_lat": "abc", "max_lat": "-43", "min_lon": "172", "max_lon": "173"}
        with self.assertRaises(BadRequestError):
            self.api.query("stops", params)

    def test_nan_bound_rejected(self):
        """Test that NaN is not accepted as a bound."""
        params = {"min_lat": "nan", "max_lat": "-43", "min_lon": "172", "max_lon": "173"}
        with self.assertRaises(BadRequestError):
            self.api.query("stops", params)

    def test_inverted_bounds_rejected(self):
        """Test that min above max is a bad request."""
        params = {"min_lat": "-43", "max_lat": "-44", "min_lon": "172", "max_lon": "173"}
        with self.assertRaises(BadRequestError):
            self.api.query("stops", params)

    def test_unparseable_stop_coordinates_excluded(self):
        """Test that stops with bad coordinates never match a bbox."""
        api = GTFSReadAPI(InMemoryStore({"gtfs:stops": [{"stop_id": "x", "stop_lat": "", "stop_lon": "172"}]}))
        params = {"min_lat": "-90", "max_lat": "90", "min_lon": "-180", "max_lon": "180"}
        self.assertEqual(api.query("stops", params).data, [])

    def test_route_filter_joins_through_trips(self):
        """Test that route_id resolves stops via trips and stop_times."""
        result = self.api.query("stops", {"route_id": "3"})
        self.assertEqual({s["stop_id"] for s in result.data}, {"1", "2", "4"})

    def test_route_filter_ignores_denormalized_route_id(self):
        """Test that a stale route_id on stop_times is not used."""
        stale = [dict(st, route_id="Oa") for st in STOP_TIMES]
        api = GTFSReadAPI(_make_store(stop_times=stale))
        result = api.query("stops", {"route_id": "3"})
        self.assertEqual({s["stop_id"] for s in result.data}, {"1", "2", "4"})

    def test_route_filter_independent_of_chunk_boundaries(self):
        """Test the route join over chunked stop_times."""
        for chunk_size in (1, 2, 3, 5):
            api = GTFSReadAPI(_chunked_store(STOP_TIMES, chunk_size))
            result = api.query("stops", {"route_id": "3"})
            self.assertEqual({s["stop_id"] for s in result.data}, {"1", "2", "4"}, chunk_size)

    def test_filters_combine(self):
        """Test route_id with search."""
        result = self.api.query("stops", {"route_id": "3", "search": "mall"})
        self.assertEqual([s["stop_id"] for s in result.data], ["2"])


class TestPagination(unittest.TestCase):
    """Test page window arithmetic."""

    def setUp(self):
        self.api = GTFSReadAPI(_make_store())

    def test_window_matches_slice(self):
        """Test every page against the expected slice."""
        for limit in (1, 2, 3, 5, 7):
            for page in range(1, 5):
                result = self.api.query("stops", {"page": str(page), "limit": str(limit)})
                self.assertEqual(result.data, STOPS[(page - 1) * limit:page * limit])
                self.assertEqual(result.pagination.total, 5)
                self.assertEqual(result.pagination.total_pages, -(-5 // limit))

    def test_page_beyond_range_is_empty(self):
        """Test that a page past the end keeps the total."""
        result = self.api.query("stops", {"page": "10", "limit": "2"})
        self.assertEqual(result.data, [])
        self.assertEqual(result.pagination.total, 5)
        self.assertEqual(result.pagination.total_pages, 3)

    def test_invalid_page_and_limit(self):
        """Test that malformed page/limit values are rejected."""
        for params in ({"page": "abc"}, {"page": "0"}, {"limit": "-5"}, {"limit": "1.5"}):
            with self.assertRaises(BadRequestError, msg=str(params)):
                self.api.query("stops", params)

    def test_paginate_empty(self):
        """Test pagination of an empty sequence."""
        data, pagination = paginate([], 1, 100)
        self.assertEqual(data, [])
        self.assertEqual(pagination.total_pages, 0)

    def test_stop_times_default_limit(self):
        """Test that stop_times default to a 1000 record page."""
        result = self.api.query("stop_times")
        self.assertEqual(result.pagination.limit, 1000)


class TestStopTimes(unittest.TestCase):
    """Test stop_times filters and chunk reassembly."""

    RECORDS = [
        {"trip_id": f"t{i % 3 + 1}", "stop_id": str(i % 5 + 1), "stop_sequence": str(i)}
        for i in range(25)
    ]

    def test_stop_and_trip_filters(self):
        """Test stop_id and trip_id equality."""
        api = GTFSReadAPI(_make_store())
        result = api.query("stop_times", {"stop_id": "2", "trip_id": "t3"})
        self.assertEqual(len(result.data), 1)
        self.assertEqual(result.data[0]["arrival_time"], "09:05:00")

    def test_route_filter(self):
        """Test route_id via the trip join."""
        api = GTFSReadAPI(_make_store())
        result = api.query("stop_times", {"route_id": "Oa"})
        self.assertEqual({st["trip_id"] for st in result.data}, {"t3"})
        self.assertEqual(result.total, 2)

    def test_chunks_reassembled_in_order(self):
        """Test that chunk totals add up and order is preserved."""
        api = GTFSReadAPI(_chunked_store(self.RECORDS, 10))
        result = api.query("stop_times", {"limit": "100"})
        self.assertEqual(result.total, 25)
        self.assertEqual(result.data, self.RECORDS)
        self.assertFalse(result.partial)

    def test_chunks_without_metadata_are_probed(self):
        """Test reassembly when no metadata record exists."""
        api = GTFSReadAPI(_chunked_store(self.RECORDS, 7, with_metadata=False))
        result = api.query("stop_times", {"limit": "100"})
        self.assertEqual(result.total, 25)

    def test_whole_key_preferred_over_chunks(self):
        """Test that an unchunked stop_times key is used directly."""
        store = _chunked_store(self.RECORDS, 10)
        store.put_json("gtfs:stop_times", STOP_TIMES)
        result = GTFSReadAPI(store).query("stop_times")
        self.assertEqual(result.total, len(STOP_TIMES))

    def test_capped_scan_is_flagged_partial(self):
        """Test that a chunk cap marks the result partial."""
        api = GTFSReadAPI(_chunked_store(self.RECORDS, 10), max_stop_time_chunks=2)
        result = api.query("stop_times", {"limit": "100"})
        self.assertEqual(result.total, 20)
        self.assertTrue(result.partial)
        self.assertTrue(result.to_dict()["partial"])

    def test_capped_probe_without_more_chunks_is_complete(self):
        """Test that reaching the cap exactly on the last chunk is not partial."""
        api = GTFSReadAPI(_chunked_store(self.RECORDS, 10, with_metadata=False), max_stop_time_chunks=3)
        result = api.query("stop_times", {"limit": "100"})
        self.assertEqual(result.total, 25)
        self.assertFalse(result.partial)
        self.assertNotIn("partial", result.to_dict())

    def test_capped_probe_with_more_chunks_is_partial(self):
        """Test the probe path when chunks remain beyond the cap."""
        api = GTFSReadAPI(_chunked_store(self.RECORDS, 10, with_metadata=False), max_stop_time_chunks=1)
        result = api.query("stop_times", {"limit": "100"})
        self.assertEqual(result.total, 10)
        self.assertTrue(result.partial)


if __name__ == "__main__":
    unittest.main()

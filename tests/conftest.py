"""
Pytest configuration and shared fixtures.
"""
import sys
from pathlib import Path

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from report_graph.core_utilities import EARTH_RADIUS_METERS, MS_PER_DAY  # noqa: E402
from report_graph.graph_generator import ProximityGraphBuilder  # noqa: E402
from report_graph.graph_model import Edge, Graph, Node  # noqa: E402
from report_graph.keyed_store import InMemoryStore  # noqa: E402
from report_graph.records import Report  # noqa: E402

# 2020-09-13T12:26:40Z
BASE_TIME_MS = 1_600_000_000_000
BASE_LAT = 52.52
BASE_LON = 13.405
MS_PER_HOUR = 60 * 60 * 1000

# meters per degree of latitude along a meridian
METERS_PER_DEG_LAT = EARTH_RADIUS_METERS * 3.141592653589793 / 180.0


def make_report(report_id, north_m=0.0, days=0, hours=0, category="pothole", lat=BASE_LAT, lon=BASE_LON):
    """Report placed north_m meters north of (lat, lon) and days/hours after the base time."""
    return Report(
        id=report_id,
        lat=lat + north_m / METERS_PER_DEG_LAT,
        lon=lon,
        category=category,
        text=f"{category} report {report_id}",
        url=f"http://reports.example/{report_id}",
        creation_time=BASE_TIME_MS + days * MS_PER_DAY + hours * MS_PER_HOUR,
    )


def store_of(reports, name="reports"):
    store = InMemoryStore(name)
    for report in reports:
        store.put(report.id, report)
    return store


def graph_from_edges(node_ids, edges, weight=1.0):
    """In-memory graph with the given nodes and undirected (u, v) edges."""
    graph = Graph()
    for node_id in node_ids:
        graph.add_node(Node(node_id))
    for u, v in edges:
        graph.add_edge(Edge(u, v, weight=weight))
    return graph


@pytest.fixture
def dense_reports():
    """Five reports within 20 m and 4 hours of each other."""
    return [make_report(i, north_m=5.0 * (i - 1), hours=i - 1) for i in range(1, 6)]


@pytest.fixture
def two_site_reports():
    """Two groups of three reports, 10 km apart, plus one report far away in time."""
    site_a = [make_report(i, north_m=10.0 * i, hours=i) for i in range(1, 4)]
    site_b = [make_report(i, north_m=10_000.0 + 10.0 * i, hours=i, category="graffiti") for i in range(4, 7)]
    lonely = [make_report(7, days=365)]
    return site_a + site_b + lonely


@pytest.fixture
def reports_store(dense_reports):
    return store_of(dense_reports)


@pytest.fixture
def built_builder(two_site_reports):
    builder = ProximityGraphBuilder(store_of(two_site_reports), max_space_dist=100,
                                    max_day_dist=30, n_jobs=2, verbose=False)
    builder.build()
    return builder


@pytest.fixture
def two_triangles():
    """Triangles {1,2,3} and {4,5,6} without connection, plus isolated node 7."""
    return graph_from_edges(range(1, 8), [(1, 2), (1, 3), (2, 3), (4, 5), (4, 6), (5, 6)])

"""
Tests for the proximity graph builder and its filtering.
"""
import pytest

from conftest import METERS_PER_DEG_LAT, make_report, store_of
from report_graph.core_utilities import (
    haversine_meters,
    levenshtein_distance,
    levenshtein_similarity,
    shard_bounds,
)
from report_graph.graph_generator import ProximityGraphBuilder
from report_graph.graph_model import Graph, GraphConsistencyError
from report_graph.keyed_store import StoreManager


def edge_pairs(graph, view=None):
    ids = view.edge_ids if view is not None else graph.edge_ids
    return {(graph.get_edge(i).lowest_node_id, graph.get_edge(i).highest_node_id) for i in ids}


def build(reports, **kwargs):
    kwargs.setdefault("verbose", False)
    builder = ProximityGraphBuilder(store_of(reports), **kwargs)
    builder.build()
    return builder


class TestKernels:
    def test_haversine_along_meridian(self):
        d = haversine_meters(10.0, 20.0, 10.0 + 250.0 / METERS_PER_DEG_LAT, 20.0)
        assert d == pytest.approx(250.0, abs=1e-6)

    def test_levenshtein(self):
        assert levenshtein_distance("kitten", "sitting") == 3
        assert levenshtein_similarity("abc", "abc") == 1.0
        assert levenshtein_similarity("abcd", "wxyz") == 0.0
        assert levenshtein_similarity("", "") == 1.0
        assert levenshtein_similarity("pothole", "potholes") == pytest.approx(1 - 1 / 8)

    def test_shard_bounds_cover_range(self):
        bounds = shard_bounds(10, 3)
        assert bounds == [(0, 3), (3, 6), (6, 10)]
        assert shard_bounds(2, 4)[-1] == (0, 2)


class TestBuild:
    def test_dense_reports_form_a_clique(self, dense_reports):
        builder = build(dense_reports)
        graph = builder.graph
        assert graph.node_count == 5
        assert graph.edge_count == 10
        for node in graph.nodes():
            assert node.degree == 4

    def test_edge_annotations(self):
        reports = [make_report(1, hours=0, category="Pothole"),
                   make_report(2, north_m=42.7, days=3, hours=5, category="pothole")]
        graph = build(reports).graph
        edge = graph.get_edge(graph.edge_ids[0])
        assert edge.space_dist == 42
        assert edge.time_dist == 3
        assert edge.same_category
        assert edge.weight == pytest.approx(levenshtein_similarity("Pothole", "pothole"))

    def test_exact_spatial_threshold_yields_no_edge(self):
        # truncated distance is exactly 100 m
        at_limit = [make_report(1), make_report(2, north_m=100.4)]
        assert build(at_limit, max_space_dist=100).graph.edge_count == 0

        below = [make_report(1), make_report(2, north_m=99.6)]
        assert build(below, max_space_dist=100).graph.edge_count == 1

    def test_exact_temporal_threshold_yields_no_edge(self):
        reports = [make_report(1), make_report(2, days=30)]
        assert build(reports, max_day_dist=30).graph.edge_count == 0

        reports = [make_report(1), make_report(2, days=29, hours=23)]
        graph = build(reports, max_day_dist=30).graph
        assert graph.edge_count == 1
        assert graph.get_edge(graph.edge_ids[0]).time_dist == 29

    def test_pairs_across_adjacent_buckets(self):
        # buckets of 30 days: {1, 2}, {3}, {4}
        reports = [make_report(1, days=0), make_report(2, days=25),
                   make_report(3, days=50), make_report(4, days=75)]
        graph = build(reports, max_day_dist=30).graph
        assert edge_pairs(graph) == {(1, 2), (2, 3), (3, 4)}

    def test_result_does_not_depend_on_worker_count(self, two_site_reports):
        single = build(two_site_reports, n_jobs=1).graph
        many = build(two_site_reports, n_jobs=4).graph
        assert edge_pairs(single) == edge_pairs(many) == {(1, 2), (1, 3), (2, 3), (4, 5), (4, 6), (5, 6)}

    def test_subset_of_report_ids(self, two_site_reports):
        builder = ProximityGraphBuilder(store_of(two_site_reports), verbose=False)
        graph = builder.build(report_ids=[1, 2, 4])
        assert graph.node_ids == [1, 2, 4]
        assert edge_pairs(graph) == {(1, 2)}

    def test_rebuild_clears_previous_graph(self, built_builder):
        built_builder.build(report_ids=[1, 2])
        assert built_builder.graph.node_ids == [1, 2]
        assert built_builder.graph.edge_count == 1

    def test_zero_day_distance_admits_no_edge(self, dense_reports):
        graph = build(dense_reports, max_day_dist=0).graph
        assert graph.node_count == 5
        assert graph.edge_count == 0

    def test_missing_report_propagates_from_worker(self, dense_reports):
        builder = ProximityGraphBuilder(store_of(dense_reports), n_jobs=3, verbose=False)
        with pytest.raises(KeyError):
            builder.build(report_ids=[1, 2, 999])

    def test_empty_store(self):
        graph = build([]).graph
        assert graph.node_count == 0

    @pytest.mark.parametrize("kwargs", [
        {"max_space_dist": -1},
        {"max_day_dist": -5},
        {"n_jobs": 0},
    ])
    def test_invalid_parameters(self, kwargs):
        with pytest.raises(ValueError):
            ProximityGraphBuilder(store_of([]), verbose=False, **kwargs)


class TestFilter:
    def test_construction_thresholds_keep_every_edge(self, built_builder):
        view = built_builder.filter(100, 30)
        assert view.edge_ids == built_builder.graph.edge_ids
        assert view.node_ids == built_builder.graph.node_ids

    def test_zero_thresholds_keep_no_edge(self, built_builder):
        view = built_builder.filter(0, 0)
        assert view.edge_count == 0
        assert view.node_count == built_builder.graph.node_count

    def test_tighter_space_threshold(self, built_builder):
        # site members are 10 m apart, so 15 m keeps only consecutive pairs
        view = built_builder.filter(15, 30)
        assert edge_pairs(built_builder.graph, view) == {(1, 2), (2, 3), (4, 5), (5, 6)}

    def test_must_share_category(self):
        reports = [make_report(1, category="pothole"), make_report(2, north_m=5, category="graffiti"),
                   make_report(3, north_m=10, category="POTHOLE")]
        builder = build(reports)
        view = builder.filter(100, 30, must_share_category=True)
        assert edge_pairs(builder.graph, view) == {(1, 3)}

    @pytest.mark.parametrize("space,days", [(-1, 10), (101, 10), (50, -1), (50, 31)])
    def test_out_of_range_thresholds(self, built_builder, space, days):
        with pytest.raises(ValueError):
            built_builder.filter(space, days)


class TestFromExisting:
    def test_reload_built_graph(self, tmp_path, two_site_reports):
        manager = StoreManager(str(tmp_path))
        reports = manager.get_store("reports")
        for report in two_site_reports:
            reports.put(report.id, report)
        graph = Graph(manager.get_store("reports_nodes"), manager.get_store("reports_edges"))
        ProximityGraphBuilder(reports, graph=graph, verbose=False).build()
        expected = edge_pairs(graph)
        manager.close()

        reopened = StoreManager(str(tmp_path))
        builder = ProximityGraphBuilder.from_existing(reopened, "reports", verbose=False)
        assert builder.graph.node_count == len(two_site_reports)
        assert edge_pairs(builder.graph) == expected
        reopened.close()

    def test_missing_graph_stores(self):
        manager = StoreManager()
        manager.get_store("reports")
        with pytest.raises(GraphConsistencyError, match="reports_nodes"):
            ProximityGraphBuilder.from_existing(manager, "reports", verbose=False)
        assert not manager.store_exists("reports_edges")

    def test_report_without_node(self, dense_reports):
        manager = StoreManager()
        reports = manager.get_store("reports")
        for report in dense_reports:
            reports.put(report.id, report)
        graph = Graph(manager.get_store("reports_nodes"), manager.get_store("reports_edges"))
        ProximityGraphBuilder(reports, graph=graph, verbose=False).build(report_ids=[1, 2])
        with pytest.raises(GraphConsistencyError):
            ProximityGraphBuilder.from_existing(manager, "reports", verbose=False)


class TestTiming:
    def test_build_phases_are_timed(self, built_builder):
        report = built_builder.timing.report_nested_timing("build")
        assert report.startswith("Breakdown of build")
        for phase in ("load", "bucketing", "join"):
            assert f"• {phase}:" in report

        stats = built_builder.timing.get_stats(as_dict=True)
        assert stats["build"]["count"] == 1
        assert stats["build.join"]["total"] <= stats["build"]["total"]

    def test_unknown_parent_operation(self, built_builder):
        assert built_builder.timing.report_nested_timing("cluster") == "No data for parent operation: cluster"

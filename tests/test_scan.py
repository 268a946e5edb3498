"""
Tests for the SCAN engine.
"""
import pytest

from conftest import graph_from_edges
from report_graph.graph_model import NOISE, UNASSIGNED
from report_graph.scan import HUB_LABEL, OUTLIER_LABEL, SCAN


def labels(graph):
    return {node.id: node.cluster_id for node in graph.nodes()}


@pytest.fixture
def bridged_triangles():
    """
    Triangles {1,2,3} and {5,6,7}; node 4 touches 3 and 5; node 8 is isolated.
    """
    return graph_from_edges(range(1, 9), [(1, 2), (1, 3), (2, 3), (3, 4), (4, 5),
                                          (5, 6), (5, 7), (6, 7)])


@pytest.fixture
def noise_neighbor_graph():
    """
    Triangle {5,6,7}; node 2 touches 5 and node 1; node 1 touches only 2.
    Node 1 becomes an outlier before node 2 is classified.
    """
    return graph_from_edges(range(1, 8), [(1, 2), (2, 5), (5, 6), (5, 7), (6, 7)])


class TestStructuralMeasures:
    def test_structural_similarity(self, bridged_triangles):
        scan = SCAN(bridged_triangles, epsilon=0.7, mu=3, verbose=False)
        scan._nodes = {n.id: n for n in bridged_triangles.nodes()}
        assert scan.structural_similarity(1, 2) == pytest.approx(1.0)
        assert scan.structural_similarity(1, 3) == pytest.approx(3 / 12 ** 0.5)
        assert scan.structural_similarity(3, 4) == pytest.approx(2 / 12 ** 0.5)
        assert scan.get_epsilon_neighborhood(3) == [3, 1, 2]
        assert scan.is_core(1)
        assert not scan.is_core(4)


class TestRun:
    def test_clusters_hub_and_outlier(self, bridged_triangles):
        scan = SCAN(bridged_triangles, epsilon=0.7, mu=3, verbose=False)
        highest = scan.run(1)

        assert highest == 2
        assert labels(bridged_triangles) == {1: 1, 2: 1, 3: 1, 4: NOISE, 5: 2, 6: 2, 7: 2, 8: NOISE}
        assert [n.id for n in scan.hubs] == [4]
        assert [n.id for n in scan.outliers] == [8]
        assert sorted(scan.clusters_map[1]) == [1, 2, 3]
        assert sorted(scan.clusters_map[NOISE]) == [4, 8]
        assert bridged_triangles.get_node(4).is_labeled_as(HUB_LABEL)
        assert bridged_triangles.get_node(8).is_labeled_as(OUTLIER_LABEL)

    def test_start_from(self, bridged_triangles):
        scan = SCAN(bridged_triangles, epsilon=0.7, mu=3, verbose=False)
        assert scan.run(10) == 11
        assert bridged_triangles.get_node(1).cluster_id == 10

    def test_no_core_returns_start_minus_one(self):
        graph = graph_from_edges([1, 2, 3], [])
        scan = SCAN(graph, epsilon=0.5, mu=2, verbose=False)
        assert scan.run(1) == 0
        assert set(labels(graph).values()) == {NOISE}

    def test_epsilon_zero_gives_one_cluster_per_component(self):
        graph = graph_from_edges(range(1, 7), [(1, 2), (2, 3), (1, 3), (4, 5), (5, 6)])
        scan = SCAN(graph, epsilon=0.0, mu=2, verbose=False)
        assert scan.run(1) == 2
        assert labels(graph) == {1: 1, 2: 1, 3: 1, 4: 2, 5: 2, 6: 2}
        assert not scan.hubs and not scan.outliers

    def test_no_unassigned_label_survives(self, bridged_triangles):
        SCAN(bridged_triangles, epsilon=0.9, mu=4, verbose=False).run(1)
        assert UNASSIGNED not in labels(bridged_triangles).values()

    def test_higher_mu_never_adds_cores(self, bridged_triangles):
        counts = []
        for mu in (2, 3, 4, 5):
            scan = SCAN(bridged_triangles, epsilon=0.5, mu=mu, verbose=False)
            scan.run(1)
            counts.append(sum(scan.is_core(n) for n in bridged_triangles.node_ids))
        assert counts == sorted(counts, reverse=True)

    def test_cores_are_never_outliers(self, bridged_triangles):
        scan = SCAN(bridged_triangles, epsilon=0.6, mu=3, verbose=False)
        scan.run(1)
        outliers = {n.id for n in scan.outliers}
        for node_id in bridged_triangles.node_ids:
            if scan.is_core(node_id):
                assert node_id not in outliers
                assert bridged_triangles.get_node(node_id).cluster_id >= 1


@pytest.fixture
def pendant_graph():
    """Triangle {1,2,3} with node 4 hanging off node 3."""
    return graph_from_edges(range(1, 5), [(1, 2), (1, 3), (2, 3), (3, 4)])


class TestHubRules:
    def test_first_difference_pendant_node_is_hub(self, pendant_graph):
        scan = SCAN(pendant_graph, epsilon=0.75, mu=3, verbose=False)
        assert scan.run(1) == 1
        assert labels(pendant_graph) == {1: 1, 2: 1, 3: 1, 4: NOISE}
        assert [n.id for n in scan.hubs] == [4]
        assert scan.outliers == []
        assert pendant_graph.get_node(4).is_labeled_as(HUB_LABEL)

    def test_distinct_clusters_pendant_node_is_outlier(self, pendant_graph):
        scan = SCAN(pendant_graph, epsilon=0.75, mu=3, hub_rule="distinct-clusters", verbose=False)
        scan.run(1)
        assert scan.hubs == []
        assert [n.id for n in scan.outliers] == [4]
        assert pendant_graph.get_node(4).is_labeled_as(OUTLIER_LABEL)

    @pytest.mark.parametrize("hub_rule", ["first-difference", "distinct-clusters"])
    def test_bridge_between_two_clusters_is_hub(self, bridged_triangles, hub_rule):
        scan = SCAN(bridged_triangles, epsilon=0.7, mu=3, hub_rule=hub_rule, verbose=False)
        assert scan.run(1) == 2
        assert [n.id for n in scan.hubs] == [4]
        assert [n.id for n in scan.outliers] == [8]

    def test_first_difference_counts_noise_labels(self, noise_neighbor_graph):
        scan = SCAN(noise_neighbor_graph, epsilon=0.7, mu=3, verbose=False)
        scan.run(1)
        assert [n.id for n in scan.outliers] == [1, 3, 4]
        assert [n.id for n in scan.hubs] == [2]

    def test_distinct_clusters_ignores_noise_labels(self, noise_neighbor_graph):
        scan = SCAN(noise_neighbor_graph, epsilon=0.7, mu=3, hub_rule="distinct-clusters", verbose=False)
        scan.run(1)
        assert scan.hubs == []
        assert [n.id for n in scan.outliers] == [1, 2, 3, 4]


@pytest.mark.parametrize("epsilon,mu", [(-0.1, 2), (1.1, 2), (0.5, 1)])
def test_invalid_parameters(epsilon, mu):
    with pytest.raises(ValueError):
        SCAN(graph_from_edges([1], []), epsilon=epsilon, mu=mu, verbose=False)


def test_unknown_hub_rule():
    with pytest.raises(ValueError):
        SCAN(graph_from_edges([1], []), hub_rule="majority", verbose=False)

"""
Clustering entry points over a built proximity graph and the materialization
of node labels into Cluster aggregates.
"""
import numpy as np
from scipy.sparse import coo_matrix
from scipy.sparse.csgraph import connected_components

from .core_utilities import TimingStats
from .graph_model import NOISE, UNASSIGNED, GraphConsistencyError
from .modularity import ModularityOptimizer
from .records import Cluster
from .scan import SCAN


def assign_component_labels(graph, view=None, verbose=False):
    """
    Label every connected component with 2+ nodes with its own positive id
    (1, 2, ... in ascending order of the component's smallest node id) and
    every isolated node with -1.

    With a view, only the view's edges connect nodes; all graph nodes are
    labeled. Returns the number of multi-node components.
    """
    node_ids = np.asarray(graph.node_ids, dtype=np.int64)
    n = node_ids.shape[0]
    if n == 0:
        return 0

    edge_ids = view.edge_ids if view is not None else graph.edge_ids
    rows, cols = [], []
    for edge_id in edge_ids:
        edge = graph.get_edge(edge_id)
        if edge is None:
            raise KeyError(f"Edge {edge_id} of the view is not in the graph")
        rows.append(edge.source_id)
        cols.append(edge.target_id)

    rows = np.searchsorted(node_ids, np.asarray(rows, dtype=np.int64))
    cols = np.searchsorted(node_ids, np.asarray(cols, dtype=np.int64))
    adjacency = coo_matrix((np.ones(rows.shape[0]), (rows, cols)), shape=(n, n)).tocsr()
    _, raw_labels = connected_components(adjacency, directed=False)

    # renumber components by first appearance in ascending id order
    _, first_index, inverse = np.unique(raw_labels, return_index=True, return_inverse=True)
    rank = np.empty(first_index.shape[0], dtype=np.int64)
    rank[np.argsort(first_index, kind="stable")] = np.arange(first_index.shape[0])
    component = rank[inverse.ravel()]
    sizes = np.bincount(component)

    label_of_component = np.full(sizes.shape[0], NOISE, dtype=np.int64)
    multi = sizes > 1
    label_of_component[multi] = np.arange(1, int(multi.sum()) + 1)

    labeled = 0
    for node_id, comp in zip(node_ids, component):
        node = graph.get_node(int(node_id))
        node.cluster_id = int(label_of_component[comp])
        graph.save_node(node)
        labeled += 1

    if labeled != graph.node_count:
        raise GraphConsistencyError(f"Labeled {labeled} nodes, graph holds {graph.node_count}")
    if verbose:
        print(f"         Labeled {int(multi.sum())} connected components, "
              f"{int((~multi).sum())} isolated nodes")
    return int(multi.sum())


class ClusterMaterializer:
    """
    Copies node cluster labels onto the stored reports and regenerates the
    Cluster aggregates (one per label other than -1 with 2+ members).
    """

    def __init__(self, graph, reports_store, clusters_store, verbose=True):
        self.graph = graph
        self.reports_store = reports_store
        self.clusters_store = clusters_store
        self.verbose = verbose
        self.timing = TimingStats()

    def materialize(self, view=None):
        """
        Returns:
        --------
        dict
            label -> Cluster for every stored aggregate
        """
        self.timing.start("materialize")
        cluster_map = {}
        for node_id in self.graph.node_ids:
            if view is not None and not view.contains_node(node_id):
                continue
            node = self.graph.get_node(node_id)
            if node.cluster_id == UNASSIGNED:
                raise GraphConsistencyError(f"Node {node_id} has no valid cluster id")
            report = self.reports_store.get(node_id)
            if report is None:
                raise KeyError(f"Report {node_id} not found in store '{self.reports_store.name}'")
            report.cluster_id = node.cluster_id
            self.reports_store.put(node_id, report)
            cluster_map.setdefault(node.cluster_id, []).append(report)

        self.clusters_store.remove_all()
        clusters = {}
        for label, reports in cluster_map.items():
            if label == NOISE:
                continue
            if len(reports) == 1:
                self._demote(reports[0])
                continue
            cluster = Cluster(reports, label)
            self.clusters_store.put(label, cluster)
            clusters[label] = cluster
        self.timing.end("materialize")

        if self.verbose:
            print(f"[Materialize] {len(clusters)} clusters stored "
                  f"({self.timing.get_operation_total('materialize'):.3f}s)")
            if clusters:
                sizes = [c.size for c in clusters.values()]
                print(f"         Biggest cluster has {max(sizes)} nodes; smallest cluster has {min(sizes)} nodes")
        return clusters

    def _demote(self, report):
        report.cluster_id = NOISE
        self.reports_store.put(report.id, report)
        node = self.graph.get_node(report.id)
        node.cluster_id = NOISE
        self.graph.save_node(node)


class GraphClustering:
    """Runs SCAN, modularity optimization or component labeling on one graph."""

    def __init__(self, graph, reports_store, clusters_store, verbose=True):
        self.graph = graph
        self.reports_store = reports_store
        self.clusters_store = clusters_store
        self.verbose = verbose
        self.timing = TimingStats()
        self.valid_clusters = 0
        self._optimizer = None
        self._optimizer_shape = None

    def run_scan(self, epsilon=0.7, mu=2, hub_rule="first-difference", start_from=1):
        """Cluster with SCAN. Returns the highest cluster id assigned."""
        scan = SCAN(self.graph, epsilon=epsilon, mu=mu, hub_rule=hub_rule, verbose=self.verbose)
        with self.timing.timed("scan"):
            final_id = scan.run(start_from)

        self.valid_clusters = sum(1 for cid, members in scan.clusters_map.items()
                                  if cid != NOISE and len(members) > 1)
        if self.verbose:
            print(f"Finished clustering using SCAN after {self.timing.get_operation_total('scan'):.3f}s, "
                  f"number of clusters: {final_id - start_from + 1}, #valid clusters: {self.valid_clusters}")
        return final_id

    def run_modularity_optimizer(self, modularity_function="standard", resolution=1.0,
                                 algorithm="slm", random_starts=10, iterations=10,
                                 random_seed=None, truncate_isolated_tail=True):
        """
        Cluster by modularity optimization. The compact network is reused
        across calls while the graph is unchanged.
        """
        shape = (id(self.graph), self.graph.node_count, self.graph.edge_count, truncate_isolated_tail)
        if self._optimizer is None or self._optimizer_shape != shape:
            self._optimizer = ModularityOptimizer(self.graph, truncate_isolated_tail=truncate_isolated_tail,
                                                  verbose=self.verbose)
            self._optimizer_shape = shape
        with self.timing.timed("modularity"):
            result = self._optimizer.run(modularity_function=modularity_function, resolution=resolution,
                                         algorithm=algorithm, random_starts=random_starts,
                                         iterations=iterations, random_seed=random_seed)
        self.valid_clusters = result["n_communities"]
        return result

    def label_connected_components(self, view=None):
        with self.timing.timed("components"):
            return assign_component_labels(self.graph, view, verbose=self.verbose)

    def generate_and_transfer_clusters(self, view=None):
        materializer = ClusterMaterializer(self.graph, self.reports_store, self.clusters_store,
                                           verbose=self.verbose)
        with self.timing.timed("materialize"):
            return materializer.materialize(view)

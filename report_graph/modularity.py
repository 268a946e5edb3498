"""
Modularity-based community detection on the proximity graph.

The graph is compacted into a CSR network over indices 0..n_nodes-1 and
optimized with one of three algorithms:

- Louvain (Blondel et al., 2008)
- Louvain with multilevel refinement (Rotta & Noack, 2011)
- Smart local moving (Waltman & van Eck, 2013)

The local moving sweep, shared by all three, is a numba kernel; network
reduction and subnetwork extraction are numpy operations.
"""
from enum import Enum

import numpy as np
from numba import njit

from .config import ModularityConfig
from .core_utilities import TimingStats
from .graph_model import NOISE


class Algorithm(str, Enum):
    LOUVAIN = "louvain"
    LOUVAIN_MULTILEVEL = "louvain_mlv"
    SLM = "slm"


class ModularityFunction(str, Enum):
    STANDARD = "standard"
    ALTERNATIVE = "alternative"


@njit(cache=True)
def _local_moving(first_neighbor_index, neighbor, edge_weight, node_weight,
                  cluster, resolution, node_order):
    """
    Move nodes (visited cyclically in node_order) to the neighboring cluster
    with the largest quality gain until every node is stable, then relabel
    clusters to 0..n_clusters-1 in ascending order of their old ids.

    cluster is modified in place. Returns (update, n_clusters).
    """
    n = node_weight.shape[0]
    cluster_weight = np.zeros(n)
    n_nodes_per_cluster = np.zeros(n, dtype=np.int64)
    for i in range(n):
        cluster_weight[cluster[i]] += node_weight[i]
        n_nodes_per_cluster[cluster[i]] += 1

    unused_cluster = np.empty(n, dtype=np.int64)
    n_unused = 0
    for i in range(n):
        if n_nodes_per_cluster[i] == 0:
            unused_cluster[n_unused] = i
            n_unused += 1

    edge_weight_per_cluster = np.zeros(n)
    neighboring_cluster = np.empty(n, dtype=np.int64)
    update = False
    n_stable = 0
    i = 0
    while n_stable < n:
        j = node_order[i]

        n_neighboring = 0
        for k in range(first_neighbor_index[j], first_neighbor_index[j + 1]):
            l = cluster[neighbor[k]]
            if edge_weight_per_cluster[l] == 0:
                neighboring_cluster[n_neighboring] = l
                n_neighboring += 1
            edge_weight_per_cluster[l] += edge_weight[k]

        cluster_weight[cluster[j]] -= node_weight[j]
        n_nodes_per_cluster[cluster[j]] -= 1
        if n_nodes_per_cluster[cluster[j]] == 0:
            unused_cluster[n_unused] = cluster[j]
            n_unused += 1

        best_cluster = -1
        max_quality = 0.0
        for k in range(n_neighboring):
            l = neighboring_cluster[k]
            quality = edge_weight_per_cluster[l] - node_weight[j] * cluster_weight[l] * resolution
            if quality > max_quality or (quality == max_quality and l < best_cluster):
                best_cluster = l
                max_quality = quality
            edge_weight_per_cluster[l] = 0.0

        if max_quality == 0.0:
            best_cluster = unused_cluster[n_unused - 1]
            n_unused -= 1

        cluster_weight[best_cluster] += node_weight[j]
        n_nodes_per_cluster[best_cluster] += 1
        if best_cluster == cluster[j]:
            n_stable += 1
        else:
            cluster[j] = best_cluster
            n_stable = 1
            update = True

        i = i + 1 if i < n - 1 else 0

    new_cluster = np.full(n, -1, dtype=np.int64)
    n_clusters = 0
    for i in range(n):
        if n_nodes_per_cluster[i] > 0:
            new_cluster[i] = n_clusters
            n_clusters += 1
    for i in range(n):
        cluster[i] = new_cluster[cluster[i]]
    return update, n_clusters


def _csr_from_directed(n_nodes, src, dst, weight):
    """CSR arrays from directed entries whose src is already in ascending order."""
    counts = np.bincount(src, minlength=n_nodes)
    first_neighbor_index = np.zeros(n_nodes + 1, dtype=np.int64)
    np.cumsum(counts, out=first_neighbor_index[1:])
    return first_neighbor_index, dst.astype(np.int64), weight.astype(np.float64)


class Network:
    """
    Compact weighted network in CSR form plus a cluster assignment.

    Every undirected edge is stored in both directions, so total_edge_weight
    (the sum of edge_weight) is twice the undirected edge weight. Edge
    weight collapsed inside clusters by get_reduced_network() is carried in
    total_edge_weight_self_links.
    """

    def __init__(self, n_nodes, first_neighbor_index, neighbor, edge_weight,
                 node_weight=None, total_edge_weight_self_links=0.0):
        self.n_nodes = int(n_nodes)
        self.first_neighbor_index = np.asarray(first_neighbor_index, dtype=np.int64)
        self.neighbor = np.asarray(neighbor, dtype=np.int64)
        self.edge_weight = np.asarray(edge_weight, dtype=np.float64)
        if node_weight is None:
            node_weight = np.ones(self.n_nodes)
        self.node_weight = np.asarray(node_weight, dtype=np.float64)
        self.total_edge_weight_self_links = float(total_edge_weight_self_links)
        self.node_ids = None
        self.init_singleton_clusters()

    @classmethod
    def from_graph(cls, graph, truncate_isolated_tail=True, unit_node_weights=False):
        """
        Compact network of graph, indices assigned by ascending node id.

        Each undirected edge is read once (from its lower-id endpoint). With
        truncate_isolated_tail, n_nodes is the highest index touched by an
        edge plus one, so edgeless nodes above it are left out; the original
        ids of the included nodes are kept in network.node_ids.
        """
        node_ids = graph.node_ids
        id_map = {node_id: i for i, node_id in enumerate(node_ids)}

        node1, node2, weights = [], [], []
        for node in graph.nodes():
            for neighbor_id in node.neighbor_ids():
                if neighbor_id > node.id:
                    node1.append(id_map[node.id])
                    node2.append(id_map[neighbor_id])
                    weights.append(graph.get_edge(node.connecting_edge_id(neighbor_id)).weight)

        node1 = np.asarray(node1, dtype=np.int64)
        node2 = np.asarray(node2, dtype=np.int64)
        weights = np.asarray(weights, dtype=np.float64)

        if truncate_isolated_tail:
            n_nodes = int(max(node1.max(), node2.max())) + 1 if node1.size else 0
        else:
            n_nodes = len(node_ids)

        src = np.concatenate([node1, node2])
        dst = np.concatenate([node2, node1])
        both = np.concatenate([weights, weights])
        order = np.argsort(src, kind="stable")
        first_neighbor_index, neighbor, edge_weight = _csr_from_directed(
            n_nodes, src[order], dst[order], both[order])

        if unit_node_weights:
            node_weight = np.ones(n_nodes)
        else:
            node_weight = np.bincount(neighbor, weights=edge_weight, minlength=n_nodes).astype(np.float64)

        network = cls(n_nodes, first_neighbor_index, neighbor, edge_weight, node_weight)
        network.node_ids = node_ids[:n_nodes]
        return network

    # ------------------------------------------------------------------
    # Basic properties
    # ------------------------------------------------------------------
    @property
    def n_edges(self):
        """Number of directed entries (twice the number of undirected edges)."""
        return self.neighbor.shape[0]

    @property
    def total_edge_weight(self):
        return float(self.edge_weight.sum())

    def _edge_sources(self):
        return np.repeat(np.arange(self.n_nodes, dtype=np.int64), np.diff(self.first_neighbor_index))

    # ------------------------------------------------------------------
    # Clusters
    # ------------------------------------------------------------------
    def init_singleton_clusters(self):
        self.cluster = np.arange(self.n_nodes, dtype=np.int64)
        self.n_clusters = self.n_nodes

    def set_clusters(self, cluster):
        self.cluster = np.asarray(cluster, dtype=np.int64).copy()
        self.n_clusters = int(self.cluster.max()) + 1 if self.cluster.size else 0

    def get_clusters(self):
        return self.cluster.copy()

    def get_n_nodes_per_cluster(self):
        return np.bincount(self.cluster, minlength=self.n_clusters)

    def merge_clusters(self, new_cluster):
        """Map every cluster c to new_cluster[c]."""
        self.cluster = np.asarray(new_cluster, dtype=np.int64)[self.cluster]
        self.n_clusters = int(self.cluster.max()) + 1 if self.cluster.size else 0

    def order_clusters_by_n_nodes(self):
        """Relabel clusters by descending size; ties keep their current order."""
        sizes = self.get_n_nodes_per_cluster()
        order = np.argsort(-sizes, kind="stable")
        new_id = np.empty(self.n_clusters, dtype=np.int64)
        new_id[order] = np.arange(self.n_clusters)
        self.cluster = new_id[self.cluster]

    def calc_quality_function(self, resolution):
        """
        Quality of the current partition:
        (internal weight + self links - resolution * sum_c K_c^2) / (total weight + self links)
        where K_c is the summed node weight of cluster c.
        """
        if self.n_nodes == 0:
            return 0.0
        src = self._edge_sources()
        internal = self.cluster[src] == self.cluster[self.neighbor]
        quality = self.edge_weight[internal].sum() + self.total_edge_weight_self_links
        cluster_weight = np.bincount(self.cluster, weights=self.node_weight, minlength=self.n_clusters)
        quality -= (cluster_weight ** 2).sum() * resolution

        denominator = self.total_edge_weight + self.total_edge_weight_self_links
        if denominator == 0:
            return 0.0
        return float(quality / denominator)

    # ------------------------------------------------------------------
    # Derived networks
    # ------------------------------------------------------------------
    def get_reduced_network(self):
        """Network with one node per cluster; intra-cluster weight becomes self links."""
        n_clusters = self.n_clusters
        src_cluster = self.cluster[self._edge_sources()]
        dst_cluster = self.cluster[self.neighbor]
        internal = src_cluster == dst_cluster

        self_links = self.total_edge_weight_self_links + float(self.edge_weight[internal].sum())
        keys = src_cluster[~internal] * n_clusters + dst_cluster[~internal]
        unique_keys, inverse = np.unique(keys, return_inverse=True)
        weights = np.bincount(inverse.ravel(), weights=self.edge_weight[~internal],
                              minlength=unique_keys.shape[0])

        first_neighbor_index, neighbor, edge_weight = _csr_from_directed(
            n_clusters, unique_keys // n_clusters, unique_keys % n_clusters, weights)
        node_weight = np.bincount(self.cluster, weights=self.node_weight, minlength=n_clusters)
        return Network(n_clusters, first_neighbor_index, neighbor, edge_weight,
                       node_weight, self_links)

    def get_subnetworks(self):
        """
        One network per cluster holding its nodes (ascending index) and the
        edges between them. Also returns, per cluster, the node indices.
        """
        n_per_cluster = self.get_n_nodes_per_cluster()
        members = np.argsort(self.cluster, kind="stable")
        starts = np.concatenate([[0], np.cumsum(n_per_cluster)[:-1]])
        local_index = np.empty(self.n_nodes, dtype=np.int64)
        local_index[members] = np.arange(self.n_nodes) - np.repeat(starts, n_per_cluster)

        src = self._edge_sources()
        internal = self.cluster[src] == self.cluster[self.neighbor]
        int_src = src[internal]
        int_dst = self.neighbor[internal]
        int_weight = self.edge_weight[internal]
        edge_order = np.argsort(self.cluster[int_src], kind="stable")
        int_src, int_dst, int_weight = int_src[edge_order], int_dst[edge_order], int_weight[edge_order]
        edges_per_cluster = np.bincount(self.cluster[int_src], minlength=self.n_clusters)
        edge_starts = np.concatenate([[0], np.cumsum(edges_per_cluster)])

        subnetworks = []
        node_sets = []
        for c in range(self.n_clusters):
            nodes = members[starts[c]:starts[c] + n_per_cluster[c]]
            lo, hi = edge_starts[c], edge_starts[c + 1]
            first_neighbor_index, neighbor, edge_weight = _csr_from_directed(
                nodes.shape[0], local_index[int_src[lo:hi]], local_index[int_dst[lo:hi]], int_weight[lo:hi])
            subnetworks.append(Network(nodes.shape[0], first_neighbor_index, neighbor, edge_weight,
                                       self.node_weight[nodes]))
            node_sets.append(nodes)
        return subnetworks, node_sets

    # ------------------------------------------------------------------
    # Algorithms
    # ------------------------------------------------------------------
    def run_local_moving_algorithm(self, resolution, rng):
        if self.n_nodes <= 1:
            return False
        update, n_clusters = _local_moving(
            self.first_neighbor_index, self.neighbor, self.edge_weight, self.node_weight,
            self.cluster, float(resolution), rng.permutation(self.n_nodes).astype(np.int64))
        self.n_clusters = int(n_clusters)
        return bool(update)

    def run_louvain_algorithm(self, resolution, rng):
        if self.n_nodes <= 1:
            return False
        update = self.run_local_moving_algorithm(resolution, rng)
        if self.n_clusters < self.n_nodes:
            reduced = self.get_reduced_network()
            if reduced.run_louvain_algorithm(resolution, rng):
                update = True
                self.merge_clusters(reduced.get_clusters())
        return update

    def run_louvain_algorithm_with_multilevel_refinement(self, resolution, rng):
        if self.n_nodes <= 1:
            return False
        update = self.run_local_moving_algorithm(resolution, rng)
        if self.n_clusters < self.n_nodes:
            reduced = self.get_reduced_network()
            if reduced.run_louvain_algorithm_with_multilevel_refinement(resolution, rng):
                update = True
                self.merge_clusters(reduced.get_clusters())
                self.run_local_moving_algorithm(resolution, rng)
        return update

    def run_smart_local_moving_algorithm(self, resolution, rng):
        if self.n_nodes <= 1:
            return False
        update = self.run_local_moving_algorithm(resolution, rng)
        if self.n_clusters < self.n_nodes:
            subnetworks, node_sets = self.get_subnetworks()

            # split every cluster into the communities local moving finds inside it
            refined = np.empty(self.n_nodes, dtype=np.int64)
            reduced_initial = []
            n_refined = 0
            for c, (sub, nodes) in enumerate(zip(subnetworks, node_sets)):
                sub.run_local_moving_algorithm(resolution, rng)
                refined[nodes] = n_refined + sub.get_clusters()
                reduced_initial.extend([c] * sub.n_clusters)
                n_refined += sub.n_clusters
            self.set_clusters(refined)

            reduced = self.get_reduced_network()
            reduced.set_clusters(reduced_initial)
            update = reduced.run_smart_local_moving_algorithm(resolution, rng) or update
            self.merge_clusters(reduced.get_clusters())
        return update


class ModularityOptimizer:
    def __init__(self, graph, truncate_isolated_tail=True, verbose=True):
        """
        Modularity optimizer over a Graph.

        Parameters:
        -----------
        graph : Graph
            Graph whose node cluster labels are overwritten by run()
        truncate_isolated_tail : bool, default=True
            Leave out edgeless nodes whose index lies above the highest
            index touched by an edge. Left-out nodes are labeled -1.
        verbose : bool, default=True
            Whether to print progress messages
        """
        if graph.node_count == 0:
            raise ValueError("Cannot optimize modularity of a graph without nodes")
        self.graph = graph
        self.verbose = verbose
        self.timing = TimingStats()
        self.truncate_isolated_tail = truncate_isolated_tail

        if verbose:
            print("Initializing Modularity Optimizer...")
        self.timing.start("precompute_network")
        self._network = Network.from_graph(graph, truncate_isolated_tail=truncate_isolated_tail)
        self.timing.end("precompute_network")

        self.network_node_ids = list(self._network.node_ids)
        self.excluded_node_ids = graph.node_ids[len(self.network_node_ids):]
        self.clusters = None
        if verbose:
            print(f"         Network precomputed: {self._network.n_nodes} nodes, "
                  f"{self._network.n_edges // 2} edges, {len(self.excluded_node_ids)} nodes left out")

    @property
    def n_nodes(self):
        return self._network.n_nodes

    def _build_network(self, modularity_function):
        base = self._network
        node_weight = base.node_weight if modularity_function == ModularityFunction.STANDARD else None
        return Network(base.n_nodes, base.first_neighbor_index, base.neighbor,
                       base.edge_weight, node_weight)

    def run(self, modularity_function="standard", resolution=1.0, algorithm="slm",
            random_starts=10, iterations=10, random_seed=None):
        """
        Optimize modularity and write the best partition onto the graph nodes.

        Multi-member communities are labeled 1, 2, ... by descending size;
        singleton communities and nodes left out of the network get -1.

        Returns:
        --------
        dict
            modularity, n_communities, random_seed, algorithm and modularity_function
        """
        config = ModularityConfig(modularity_function=modularity_function, resolution=resolution,
                                  algorithm=algorithm, random_starts=random_starts,
                                  iterations=iterations, random_seed=random_seed).validate()
        modularity_function = ModularityFunction(modularity_function)
        algorithm = Algorithm(algorithm)
        seed = config.resolved_seed()

        step = {
            Algorithm.LOUVAIN: Network.run_louvain_algorithm,
            Algorithm.LOUVAIN_MULTILEVEL: Network.run_louvain_algorithm_with_multilevel_refinement,
            Algorithm.SLM: Network.run_smart_local_moving_algorithm,
        }[algorithm]

        network = self._build_network(modularity_function)
        total_weight = network.total_edge_weight
        if modularity_function == ModularityFunction.STANDARD and total_weight > 0:
            effective_resolution = resolution / total_weight
        else:
            effective_resolution = resolution

        self.timing.start("run")
        if self.verbose:
            print(f"[Modularity] {algorithm.value} on {network.n_nodes} nodes and {network.n_edges // 2} edges, "
                  f"{modularity_function.value} modularity, resolution={resolution}, "
                  f"random_starts={random_starts}, iterations={iterations}, seed={seed}")

        rng = np.random.default_rng(seed)
        best_cluster = np.zeros(0, dtype=np.int64)
        max_modularity = -np.inf
        for _ in range(random_starts):
            network.init_singleton_clusters()
            modularity = network.calc_quality_function(effective_resolution)
            for _ in range(iterations):
                update = step(network, effective_resolution, rng)
                modularity = network.calc_quality_function(effective_resolution)
                if not update:
                    break
            if modularity > max_modularity:
                network.order_clusters_by_n_nodes()
                best_cluster = network.get_clusters()
                max_modularity = modularity

        labels, n_communities = self.adapt_cluster_ids(best_cluster)
        self.clusters = labels
        self._write_labels(labels)
        self.timing.end("run")

        if self.verbose:
            print(f"         Maximum modularity in {random_starts} random starts: {max_modularity:.4f}")
            print(f"         Number of communities: {n_communities}")
            print(f"         Elapsed time: {self.timing.get_operation_total('run'):.3f}s")

        return {
            "modularity": float(max_modularity),
            "n_communities": n_communities,
            "random_seed": seed,
            "algorithm": algorithm.value,
            "modularity_function": modularity_function.value,
        }

    @staticmethod
    def adapt_cluster_ids(cluster):
        """
        Demote singleton clusters to -1 and shift the others by +1.

        Returns the new label array and the number of multi-member clusters.
        """
        cluster = np.asarray(cluster, dtype=np.int64)
        if cluster.size == 0:
            return cluster.copy(), 0
        sizes = np.bincount(cluster)
        labels = np.where(sizes[cluster] == 1, NOISE, cluster + 1)
        return labels, int(np.count_nonzero(sizes > 1))

    def _write_labels(self, labels):
        for node_id, label in zip(self.network_node_ids, labels):
            node = self.graph.get_node(node_id)
            node.cluster_id = int(label)
            self.graph.save_node(node)
        for node_id in self.excluded_node_ids:
            node = self.graph.get_node(node_id)
            node.cluster_id = NOISE
            self.graph.save_node(node)

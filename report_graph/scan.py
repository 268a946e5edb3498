"""
SCAN - structural clustering of the proximity graph.

Xu et al., "SCAN: A Structural Clustering Algorithm for Networks" (KDD 2007).
Nodes are grown into clusters from cores (nodes with at least mu members in
their epsilon-neighborhood); whatever is left is classified as hub or
outlier and labeled -1.
"""
from collections import deque

import numpy as np

from .config import ScanConfig
from .core_utilities import TimingStats
from .graph_model import NOISE, UNASSIGNED

UNCLASSIFIED_LABEL = "unclassified"
NON_MEMBER_LABEL = "non-member"
HUB_LABEL = "hub"
OUTLIER_LABEL = "outlier"


class SCAN:
    def __init__(self, graph, epsilon=0.7, mu=2, hub_rule="first-difference", verbose=True):
        """
        Parameters:
        -----------
        graph : Graph
            Graph whose node cluster labels are overwritten by run()
        epsilon : float, default=0.7
            Minimal structural similarity, in [0, 1]
        mu : int, default=2
            Minimal epsilon-neighborhood size of a core, at least 2
        hub_rule : {"first-difference", "distinct-clusters"}
            "first-difference" marks a non-member as hub as soon as one of
            its structure members carries a label different from the first
            label seen, which is the node's own unassigned label. Any
            non-member next to a labeled node (noise included) is a hub.
            "distinct-clusters" requires two distinct real cluster labels
            among the structure members.
        verbose : bool, default=True
            Whether to print progress messages
        """
        ScanConfig(epsilon=epsilon, mu=mu, hub_rule=hub_rule).validate()
        self.graph = graph
        self.epsilon = epsilon
        self.mu = mu
        self.hub_rule = hub_rule
        self.verbose = verbose
        self.timing = TimingStats()

        self.clusters_map = {}
        self.hubs = []
        self.outliers = []
        self.cluster_ids = []

        self._nodes = {}
        self._structures = {}
        self._eps_neighborhoods = {}

    @classmethod
    def from_config(cls, graph, config, verbose=True):
        return cls(graph, epsilon=config.epsilon, mu=config.mu,
                   hub_rule=config.hub_rule, verbose=verbose)

    # ------------------------------------------------------------------
    # Structural measures
    # ------------------------------------------------------------------
    def get_structure(self, node_id):
        """The node itself followed by its neighbors in ascending id order."""
        structure = self._structures.get(node_id)
        if structure is None:
            structure = [node_id] + self._nodes[node_id].neighbor_ids()
            self._structures[node_id] = structure
        return structure

    def structural_similarity(self, v, w):
        v_struct = self.get_structure(v)
        w_struct = self.get_structure(w)
        shared = len(set(v_struct).intersection(w_struct))
        return shared / np.sqrt(len(v_struct) * len(w_struct))

    def get_epsilon_neighborhood(self, node_id):
        neighborhood = self._eps_neighborhoods.get(node_id)
        if neighborhood is None:
            neighborhood = [w for w in self.get_structure(node_id)
                            if self.structural_similarity(node_id, w) >= self.epsilon]
            self._eps_neighborhoods[node_id] = neighborhood
        return neighborhood

    def is_core(self, node_id):
        return len(self.get_epsilon_neighborhood(node_id)) >= self.mu

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------
    def _assign(self, node, cluster_id):
        node.cluster_id = cluster_id
        self.clusters_map.setdefault(cluster_id, []).append(node.id)

    def run(self, start_from=1):
        """
        Cluster the graph. Every node ends with a cluster id >= start_from
        or -1 (hub/outlier).

        Returns:
        --------
        int
            The highest cluster id assigned (start_from - 1 if no cluster was found)
        """
        self.timing.start("run")
        if self.verbose:
            print(f"[SCAN] epsilon={self.epsilon}, mu={self.mu}, nodes={self.graph.node_count}")

        self.clusters_map = {}
        self.hubs = []
        self.outliers = []
        self.cluster_ids = []
        self._structures = {}
        self._eps_neighborhoods = {}
        self._nodes = {node.id: node for node in self.graph.nodes()}

        for node in self._nodes.values():
            node.set_attribute(UNCLASSIFIED_LABEL, "TRUE")
            node.set_attribute(NON_MEMBER_LABEL, "FALSE")
            node.set_attribute(HUB_LABEL, "FALSE")
            node.set_attribute(OUTLIER_LABEL, "FALSE")
            node.cluster_id = UNASSIGNED

        self.timing.start("run.grow_clusters")
        non_members = {}
        current_cluster_id = start_from
        for node_id in self.graph.node_ids:
            v = self._nodes[node_id]
            if not v.is_labeled_as(UNCLASSIFIED_LABEL):
                continue

            if not self.is_core(node_id):
                v.set_attribute(NON_MEMBER_LABEL, "TRUE")
                v.set_attribute(UNCLASSIFIED_LABEL, "FALSE")
                non_members[node_id] = v
                continue

            self.cluster_ids.append(current_cluster_id)
            queue = deque(self.get_epsilon_neighborhood(node_id))
            queued = set(queue)
            while queue:
                # y stays marked as queued while its neighborhood is pulled in
                y = queue[0]
                if self.is_core(y):
                    self._expand_from(y, current_cluster_id, queue, queued, non_members)
                queue.popleft()
                queued.discard(y)
            current_cluster_id += 1
        self.timing.end("run.grow_clusters")

        self.timing.start("run.classify_non_members")
        for v in non_members.values():
            if self._is_hub(v.id):
                v.set_attribute(HUB_LABEL, "TRUE")
                self.hubs.append(v)
            else:
                v.set_attribute(OUTLIER_LABEL, "TRUE")
                self.outliers.append(v)
            self._assign(v, NOISE)
        self.timing.end("run.classify_non_members")

        for node in self._nodes.values():
            self.graph.save_node(node)

        self.timing.end("run")
        highest = current_cluster_id - 1
        if self.verbose:
            print(f"         Found {len(self.cluster_ids)} clusters, {len(self.hubs)} hubs, "
                  f"{len(self.outliers)} outliers ({self.timing.get_operation_total('run'):.3f}s)")
        return highest

    def _expand_from(self, y, cluster_id, queue, queued, non_members):
        """Pull the epsilon-neighborhood of core y into cluster_id."""
        for x_id in self.get_epsilon_neighborhood(y):
            x = self._nodes[x_id]
            if x.is_labeled_as(NON_MEMBER_LABEL):
                x.set_attribute(NON_MEMBER_LABEL, "FALSE")
                self._assign(x, cluster_id)
                non_members.pop(x_id, None)
            if x.is_labeled_as(UNCLASSIFIED_LABEL):
                x.set_attribute(UNCLASSIFIED_LABEL, "FALSE")
                self._assign(x, cluster_id)
                if x_id not in queued:
                    queue.append(x_id)
                    queued.add(x_id)

    def _is_hub(self, node_id):
        structure = self.get_structure(node_id)
        if self.hub_rule == "distinct-clusters":
            seen = set()
            for x_id in structure:
                label = self._nodes[x_id].cluster_id
                if label != UNASSIGNED and label != NOISE:
                    seen.add(label)
            return len(seen) >= 2

        # structure[0] is the node itself, so its unassigned label comes first
        first = self._nodes[structure[0]].cluster_id
        for x_id in structure[1:]:
            if self._nodes[x_id].cluster_id != first:
                return True
        return False

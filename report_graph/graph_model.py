"""
Graph model - undirected attributed graph over integer node ids.

Nodes and edges live in keyed stores; the Graph keeps ascending id indices
for membership tests and deterministic iteration. A GraphView is a subset of
node and edge ids over one Graph, used to express filtered graphs without
copying anything.
"""
import threading
from bisect import bisect_left, insort

from .keyed_store import InMemoryStore

# Cluster label of a node no clustering pass has touched yet
UNASSIGNED = -(2 ** 31)
# Noise / isolated / outlier label
NOISE = -1


class GraphConsistencyError(RuntimeError):
    """Raised when a structural invariant of the graph is found broken."""


class Node:
    """
    Graph vertex. Its id equals the id of the report it was created from.

    attributes is a free string -> string label bag (SCAN keeps its
    classification flags there). Adjacency maps neighbor id -> connecting
    edge id, plus the set of incident edge ids.
    """

    def __init__(self, id, attributes=None):
        self.id = int(id)
        self.attributes = dict(attributes) if attributes else {}
        self.cluster_id = UNASSIGNED
        self._edges = {}
        self._neighbors = {}

    def set_attribute(self, key, value):
        if value is None:
            self.attributes.pop(key, None)
        else:
            self.attributes[key] = value

    def get_attribute(self, key, default=None):
        return self.attributes.get(key, default)

    def is_labeled_as(self, key, value="TRUE"):
        return self.attributes.get(key) == value

    def neighbor_ids(self):
        return sorted(self._neighbors)

    def adjacent_edge_ids(self):
        return sorted(self._edges)

    def connecting_edge_id(self, neighbor_id):
        return self._neighbors.get(neighbor_id)

    def is_neighbor(self, other):
        other_id = other.id if isinstance(other, Node) else other
        return other_id in self._neighbors

    @property
    def degree(self):
        return len(self._neighbors)

    def _add_adjacent_edge(self, edge):
        neighbor_id = edge.other_end(self.id)
        if neighbor_id in self._neighbors:
            return False
        self._neighbors[neighbor_id] = edge.id
        self._edges[edge.id] = edge.id
        return True

    def _remove_adjacent_edge(self, edge):
        neighbor_id = edge.other_end(self.id)
        self._neighbors.pop(neighbor_id, None)
        self._edges.pop(edge.id, None)

    def __eq__(self, other):
        return isinstance(other, Node) and other.id == self.id

    def __hash__(self):
        return hash(self.id)

    def __repr__(self):
        return f"Node(id={self.id}, cluster_id={self.cluster_id}, degree={self.degree})"


class Edge:
    """
    Undirected edge annotated with the proximity measures it was built from.

    weight is the category similarity in [0, 1], space_dist is in meters and
    time_dist in whole days. Equality ignores the declared direction.
    """

    def __init__(self, source_id, target_id, weight=1.0, space_dist=0, time_dist=0,
                 same_category=False, id=-1):
        self.id = int(id)
        self.source_id = int(source_id)
        self.target_id = int(target_id)
        self.weight = float(weight)
        self.space_dist = int(space_dist)
        self.time_dist = int(time_dist)
        self.same_category = bool(same_category)

    def other_end(self, node_id):
        if node_id == self.source_id:
            return self.target_id
        if node_id == self.target_id:
            return self.source_id
        raise ValueError(f"Node {node_id} is not an endpoint of edge {self.id}")

    @property
    def lowest_node_id(self):
        return min(self.source_id, self.target_id)

    @property
    def highest_node_id(self):
        return max(self.source_id, self.target_id)

    def is_self_loop(self):
        return self.source_id == self.target_id

    def __eq__(self, other):
        if not isinstance(other, Edge):
            return NotImplemented
        return (self.lowest_node_id, self.highest_node_id) == (other.lowest_node_id, other.highest_node_id)

    def __hash__(self):
        return hash((self.lowest_node_id, self.highest_node_id))

    def __lt__(self, other):
        return (self.lowest_node_id, self.highest_node_id) < (other.lowest_node_id, other.highest_node_id)

    def __repr__(self):
        return (f"Edge(id={self.id}, {self.source_id}-{self.target_id}, weight={self.weight:.3f}, "
                f"space={self.space_dist}m, time={self.time_dist}d)")


class Graph:
    """
    Undirected graph backed by two keyed stores (nodes and edges).

    Passing stores that already hold nodes and edges reloads that graph:
    the id indices and the edge id counter are rebuilt from the store keys.
    add_node/add_edge are serialized so builder workers may call them
    concurrently.
    """

    def __init__(self, nodes_store=None, edges_store=None):
        self.nodes_store = nodes_store if nodes_store is not None else InMemoryStore("nodes")
        self.edges_store = edges_store if edges_store is not None else InMemoryStore("edges")
        self._lock = threading.RLock()

        self._node_ids = sorted(self.nodes_store.keys())
        self._edge_ids = sorted(self.edges_store.keys())
        self._node_id_set = set(self._node_ids)
        self._edge_id_set = set(self._edge_ids)
        self._next_edge_id = self._edge_ids[-1] + 1 if self._edge_ids else 0

        # adjacency is rebuilt from the stored edges
        for edge_id in self._edge_ids:
            edge = self.edges_store.get(edge_id)
            for end in (edge.source_id, edge.target_id):
                if end not in self._node_id_set:
                    raise GraphConsistencyError(
                        f"Stored edge {edge_id} references missing node {end}")
                node = self.nodes_store.get(end)
                if node.connecting_edge_id(edge.other_end(end)) != edge.id:
                    node._add_adjacent_edge(edge)
                    self.nodes_store.put(end, node)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------
    def add_node(self, node):
        """Insert node. Returns False (and changes nothing) if its id is already present."""
        with self._lock:
            if node.id in self._node_id_set:
                return False
            self.nodes_store.put(node.id, node)
            insort(self._node_ids, node.id)
            self._node_id_set.add(node.id)
            return True

    def add_edge(self, edge):
        """
        Insert an undirected edge and assign it a fresh id.

        Both endpoints must exist (ValueError otherwise). Adding an edge
        between nodes that are already neighbors is a no-op returning False.
        """
        with self._lock:
            source = self.get_node(edge.source_id)
            target = self.get_node(edge.target_id)
            if source is None or target is None:
                raise ValueError(f"Cannot add edge {edge.source_id}-{edge.target_id}: "
                                 f"both endpoints must be in the graph")

            forward = source.is_neighbor(target.id)
            backward = target.is_neighbor(source.id)
            if forward != backward:
                raise GraphConsistencyError(
                    f"Asymmetric neighborhood between nodes {source.id} and {target.id}")
            if forward:
                return False

            edge.id = self._next_edge_id
            self._next_edge_id += 1
            source._add_adjacent_edge(edge)
            target._add_adjacent_edge(edge)

            self.edges_store.put(edge.id, edge)
            insort(self._edge_ids, edge.id)
            self._edge_id_set.add(edge.id)
            self.nodes_store.put(source.id, source)
            self.nodes_store.put(target.id, target)
            return True

    def remove_edge(self, edge_id):
        with self._lock:
            edge = self.get_edge(edge_id)
            if edge is None:
                return False
            for end in (edge.source_id, edge.target_id):
                node = self.get_node(end)
                if node is not None:
                    node._remove_adjacent_edge(edge)
                    self.nodes_store.put(node.id, node)
            self.edges_store.remove(edge_id)
            self._edge_ids.pop(bisect_left(self._edge_ids, edge_id))
            self._edge_id_set.discard(edge_id)
            return True

    def remove_all_edges(self, node_id):
        """Remove every edge incident to node_id. Returns the number removed."""
        with self._lock:
            node = self.get_node(node_id)
            if node is None:
                return 0
            removed = 0
            for edge_id in node.adjacent_edge_ids():
                removed += self.remove_edge(edge_id)
            return removed

    def remove_node(self, node_id):
        """Remove a node after removing all of its incident edges."""
        with self._lock:
            if node_id not in self._node_id_set:
                return False
            self.remove_all_edges(node_id)
            self.nodes_store.remove(node_id)
            self._node_ids.pop(bisect_left(self._node_ids, node_id))
            self._node_id_set.discard(node_id)
            return True

    def clear(self):
        with self._lock:
            self.nodes_store.remove_all()
            self.edges_store.remove_all()
            self._node_ids = []
            self._edge_ids = []
            self._node_id_set = set()
            self._edge_id_set = set()
            self._next_edge_id = 0

    def save_node(self, node):
        """Persist a node whose label or attributes were changed in place."""
        if node.id not in self._node_id_set:
            raise KeyError(f"Node {node.id} is not in the graph")
        self.nodes_store.put(node.id, node)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------
    def get_node(self, node_id):
        if node_id not in self._node_id_set:
            return None
        node = self.nodes_store.get(node_id)
        if node is None:
            raise GraphConsistencyError(f"Node {node_id} is indexed but missing from the store")
        return node

    def get_edge(self, edge_id):
        if edge_id not in self._edge_id_set:
            return None
        edge = self.edges_store.get(edge_id)
        if edge is None:
            raise GraphConsistencyError(f"Edge {edge_id} is indexed but missing from the store")
        return edge

    def get_neighbors(self, node_id):
        """Neighbor nodes in ascending id order, or None if node_id is unknown."""
        node = self.get_node(node_id)
        if node is None:
            return None
        return [self.get_node(n) for n in node.neighbor_ids()]

    def are_neighbors(self, node_id1, node_id2):
        node = self.get_node(node_id1)
        return node is not None and node.is_neighbor(node_id2)

    def contains_node(self, node_id):
        return node_id in self._node_id_set

    def contains_edge(self, edge_id):
        return edge_id in self._edge_id_set

    @property
    def node_ids(self):
        return list(self._node_ids)

    @property
    def edge_ids(self):
        return list(self._edge_ids)

    @property
    def node_count(self):
        return len(self._node_ids)

    @property
    def edge_count(self):
        return len(self._edge_ids)

    def nodes(self):
        """Iterate nodes in ascending id order."""
        for node_id in list(self._node_ids):
            yield self.get_node(node_id)

    def edges(self):
        for edge_id in list(self._edge_ids):
            yield self.get_edge(edge_id)

    def get_view(self):
        return GraphView(self, self._node_ids, self._edge_ids)

    def __repr__(self):
        return f"Graph(nodes={self.node_count}, edges={self.edge_count})"


class GraphView:
    """
    Subset of node and edge ids over one Graph.

    Node ids absent from the graph are silently dropped. Edge ids are taken
    as given, without checking that the graph holds them.
    """

    def __init__(self, graph, node_ids=(), edge_ids=()):
        self.graph = graph
        self._node_ids = []
        self._edge_ids = []
        self._node_id_set = set()
        self._edge_id_set = set()
        for node_id in node_ids:
            self.add_node_id(node_id)
        for edge_id in edge_ids:
            self.add_edge_id(edge_id)

    def add_node_id(self, node_id):
        if not self.graph.contains_node(node_id) or node_id in self._node_id_set:
            return False
        self._node_ids.append(node_id)
        self._node_id_set.add(node_id)
        return True

    def add_edge_id(self, edge_id):
        if edge_id in self._edge_id_set:
            return False
        self._edge_ids.append(edge_id)
        self._edge_id_set.add(edge_id)
        return True

    def contains_node(self, node_id):
        return node_id in self._node_id_set

    def contains_edge(self, edge_id):
        return edge_id in self._edge_id_set

    @property
    def node_ids(self):
        return sorted(self._node_ids)

    @property
    def edge_ids(self):
        return sorted(self._edge_ids)

    @property
    def node_count(self):
        return len(self._node_ids)

    @property
    def edge_count(self):
        return len(self._edge_ids)

    def __repr__(self):
        return f"GraphView(nodes={self.node_count}, edges={self.edge_count})"

"""
Proximity graph construction over geotagged, time-stamped reports.

Reports become nodes; two reports are joined by an edge when their truncated
haversine distance is below max_space_dist meters and their creation times
are less than max_day_dist days apart. The pairwise join is restricted to
fixed-width time buckets (and adjacent bucket pairs) and runs on a thread
pool; the distance work happens in nogil numba kernels.
"""
import math
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed

import numpy as np

from .config import BuildConfig, FilterConfig
from .core_utilities import (
    MS_PER_DAY,
    TimingStats,
    levenshtein_similarity,
    proximity_pairs,
    resolve_n_jobs,
    shard_bounds,
)
from .graph_model import Edge, Graph, GraphConsistencyError, GraphView, Node


def graph_store_names(reports_name):
    """Names of the node and edge stores belonging to a reports namespace."""
    return f"{reports_name}_nodes", f"{reports_name}_edges"


class _BucketArrays:
    """Column arrays of the reports of one time bucket, as fed to the join kernel."""

    def __init__(self, reports):
        self.ids = np.array([r.id for r in reports], dtype=np.int64)
        self.lat = np.array([r.lat for r in reports], dtype=np.float64)
        self.lon = np.array([r.lon for r in reports], dtype=np.float64)
        self.time = np.array([r.creation_time for r in reports], dtype=np.int64)
        self.categories = [r.category or "" for r in reports]


class ProximityGraphBuilder:
    def __init__(self, reports_store, graph=None, max_space_dist=100, max_day_dist=30,
                 n_jobs=-1, verbose=True):
        """
        Builder of the spatio-temporal proximity graph.

        Parameters:
        -----------
        reports_store : KeyedStore
            Store of Report records keyed by report id
        graph : Graph, optional
            Graph to populate. A fresh in-memory Graph is created if None.
        max_space_dist : int, default=100
            Maximal spatial distance in meters (exclusive) for an edge
        max_day_dist : int, default=30
            Maximal temporal distance in days (exclusive) for an edge
        n_jobs : int, default=-1
            Number of worker threads, -1 for all cores
        verbose : bool, default=True
            Whether to print progress messages
        """
        BuildConfig(max_space_dist, max_day_dist, n_jobs).validate()
        self.reports_store = reports_store
        self.graph = graph if graph is not None else Graph()
        self.max_space_dist = max_space_dist
        self.max_day_dist = int(max_day_dist)
        self.n_jobs = n_jobs
        self.verbose = verbose
        self.timing = TimingStats()

        self.min_time = None
        self.max_time = None
        self.buckets = {}

    @classmethod
    def from_config(cls, reports_store, config, graph=None, verbose=True):
        return cls(reports_store, graph=graph,
                   max_space_dist=config.max_space_dist,
                   max_day_dist=config.max_day_dist,
                   n_jobs=config.n_jobs,
                   verbose=verbose)

    @classmethod
    def from_existing(cls, store_manager, reports_name="reports", max_space_dist=100,
                      max_day_dist=30, n_jobs=-1, verbose=True):
        """
        Reload a graph built earlier into the stores of store_manager.

        Every report id must be present as a node; the thresholds must be
        the ones the graph was built with, since filter() validates against them.
        """
        nodes_name, edges_name = graph_store_names(reports_name)
        missing_stores = [name for name in (reports_name, nodes_name, edges_name)
                          if not store_manager.store_exists(name)]
        if missing_stores:
            raise GraphConsistencyError(f"Cannot reload graph: missing stores {missing_stores}")

        reports_store = store_manager.get_store(reports_name)
        graph = Graph(store_manager.get_store(nodes_name), store_manager.get_store(edges_name))
        missing = [rid for rid in reports_store.keys() if not graph.contains_node(rid)]
        if missing:
            raise GraphConsistencyError(
                f"Graph is out of sync with '{reports_name}': {len(missing)} reports have no node")

        builder = cls(reports_store, graph=graph, max_space_dist=max_space_dist,
                      max_day_dist=max_day_dist, n_jobs=n_jobs, verbose=verbose)
        if verbose:
            print(f"Reloaded graph with {graph.node_count} nodes and {graph.edge_count} edges")
        return builder

    # ------------------------------------------------------------------
    # Worker pool
    # ------------------------------------------------------------------
    def _run_tasks(self, fn, task_args, n_workers):
        """
        Run fn(*args) for every entry of task_args on a thread pool and
        yield the results in completion order. The first failure cancels
        all outstanding tasks, tears the pool down and is re-raised.
        """
        pool = ThreadPoolExecutor(max_workers=max(1, n_workers))
        futures = [pool.submit(fn, *args) for args in task_args]
        try:
            for future in as_completed(futures):
                yield future.result()
        except BaseException:
            for future in futures:
                future.cancel()
            pool.shutdown(wait=False, cancel_futures=True)
            raise
        pool.shutdown(wait=True)

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------
    def build(self, report_ids=None):
        """
        Build the proximity graph over report_ids (all stored reports if None).

        The graph is cleared first. Returns the populated Graph.
        """
        if report_ids is None:
            ids = sorted(self.reports_store.keys())
        else:
            ids = sorted(set(int(i) for i in report_ids))

        n_workers = resolve_n_jobs(self.n_jobs)
        self.timing.start("build")
        if self.verbose:
            print(f"[Build] Proximity graph over {len(ids)} reports: "
                  f"max_space_dist={self.max_space_dist}m, max_day_dist={self.max_day_dist}d, "
                  f"workers={n_workers}")

        self.graph.clear()
        self.buckets = {}
        self.min_time = self.max_time = None
        if not ids:
            self.timing.end("build")
            return self.graph

        reports = self._load_nodes(ids, n_workers)

        if self.max_day_dist == 0:
            if self.verbose:
                print("         max_day_dist is 0, no pair can qualify; skipping bucketing and join")
        else:
            self._bucket_reports(reports, n_workers)
            self._join_buckets(n_workers)

        self.timing.end("build")
        if self.verbose:
            print(f"         Graph has {self.graph.node_count} nodes and {self.graph.edge_count} edges "
                  f"({self.timing.get_operation_total('build'):.3f}s)")
        return self.graph

    def _load_nodes(self, ids, n_workers):
        self.timing.start("build.load")
        lock = threading.Lock()

        def load_shard(lower, upper):
            loaded = []
            local_min = local_max = None
            for report_id in ids[lower:upper]:
                report = self.reports_store.get(report_id)
                if report is None:
                    raise KeyError(f"Report {report_id} not found in store '{self.reports_store.name}'")
                self.graph.add_node(Node(report_id))
                loaded.append(report)
                t = report.creation_time
                local_min = t if local_min is None else min(local_min, t)
                local_max = t if local_max is None else max(local_max, t)

            if loaded:
                with lock:
                    if self.min_time is None or local_min < self.min_time:
                        self.min_time = local_min
                    if self.max_time is None or local_max > self.max_time:
                        self.max_time = local_max
            return loaded

        reports = []
        bounds = shard_bounds(len(ids), n_workers)
        for loaded in self._run_tasks(load_shard, bounds, n_workers):
            reports.extend(loaded)

        if len(reports) != len(ids) or self.graph.node_count != len(ids):
            raise GraphConsistencyError(
                f"Load phase mismatch: requested {len(ids)} reports, processed {len(reports)}, "
                f"graph holds {self.graph.node_count} nodes")

        self.timing.end("build.load")
        if self.verbose:
            print(f"         Loaded {len(reports)} nodes "
                  f"({self.timing.get_operation_total('build.load'):.3f}s)")
        return reports

    def _bucket_reports(self, reports, n_workers):
        self.timing.start("build.bucketing")
        width_ms = self.max_day_dist * MS_PER_DAY
        span = self.max_time - self.min_time
        n_buckets = max(1, math.ceil(span / width_ms))
        # a timestamp at an exact multiple of the width lands one past the last bucket
        lists = {k: [] for k in range(n_buckets + 1)}
        locks = {k: threading.Lock() for k in lists}

        def bucket_shard(lower, upper):
            assigned = 0
            for report in reports[lower:upper]:
                k = abs(report.creation_time - self.min_time) // width_ms
                with locks[k]:
                    lists[k].append(report)
                assigned += 1
            return assigned

        bounds = shard_bounds(len(reports), n_workers)
        total_assigned = sum(self._run_tasks(bucket_shard, bounds, n_workers))
        total_bucketed = sum(len(lst) for lst in lists.values())
        if total_assigned != len(reports) or total_bucketed != total_assigned:
            raise GraphConsistencyError(
                f"Bucketing phase mismatch: {len(reports)} reports, {total_assigned} assigned, "
                f"{total_bucketed} in buckets")

        # keep ascending id order inside each bucket so the join is deterministic
        self.buckets = {k: _BucketArrays(sorted(lst, key=lambda r: r.id))
                        for k, lst in lists.items() if lst}
        self.timing.end("build.bucketing")
        if self.verbose:
            print(f"         Distributed reports over {len(self.buckets)} non-empty buckets "
                  f"of {self.max_day_dist} days ({self.timing.get_operation_total('build.bucketing'):.3f}s)")

    def _join_pair(self, a, b, same_list):
        idx_a, idx_b, space_dist, time_dist = proximity_pairs(
            a.lat, a.lon, a.time, b.lat, b.lon, b.time, same_list,
            self.max_space_dist, self.max_day_dist * MS_PER_DAY)

        edges = []
        for i, j, d, dt in zip(idx_a, idx_b, space_dist, time_dist):
            cat_a = a.categories[i]
            cat_b = b.categories[j]
            edges.append(Edge(int(a.ids[i]), int(b.ids[j]),
                              weight=levenshtein_similarity(cat_a, cat_b),
                              space_dist=int(d),
                              time_dist=int(dt) // MS_PER_DAY,
                              same_category=cat_a.lower() == cat_b.lower()))
        return edges

    def _join_buckets(self, n_workers):
        self.timing.start("build.join")
        keys = sorted(self.buckets)
        tasks = [(self.buckets[k], self.buckets[k], True) for k in keys]
        for parity in (0, 1):
            for k in keys:
                if k % 2 == parity and k + 1 in self.buckets:
                    tasks.append((self.buckets[k], self.buckets[k + 1], False))

        n_added = 0
        for edges in self._run_tasks(self._join_pair, tasks, n_workers):
            for edge in edges:
                n_added += self.graph.add_edge(edge)

        self.timing.end("build.join")
        if self.verbose:
            print(f"         Joined {len(tasks)} bucket tasks, added {n_added} edges "
                  f"({self.timing.get_operation_total('build.join'):.3f}s)")

    # ------------------------------------------------------------------
    # Filtering
    # ------------------------------------------------------------------
    def filter(self, space_dist, day_dist, must_share_category=False):
        """
        View of the graph keeping every node and only the edges within the
        tighter thresholds (inclusive). No distance is recomputed.

        Parameters:
        -----------
        space_dist : float
            New maximal spatial distance, in [0, max_space_dist]
        day_dist : int
            New maximal temporal distance, in [0, max_day_dist]
        must_share_category : bool, default=False
            Keep only edges joining reports of the same category

        Returns:
        --------
        GraphView
        """
        FilterConfig(space_dist, day_dist, must_share_category).validate(
            self.max_space_dist, self.max_day_dist)

        self.timing.start("filter")
        if self.verbose:
            print(f"[Filter] space_dist={space_dist}m, day_dist={day_dist}d, "
                  f"must_share_category={must_share_category}")

        view = GraphView(self.graph, self.graph.node_ids)
        for edge in self.graph.edges():
            if must_share_category and not edge.same_category:
                continue
            if edge.space_dist <= space_dist and edge.time_dist <= day_dist:
                view.add_edge_id(edge.id)

        self.timing.end("filter")
        if self.verbose:
            print(f"         Original graph has {self.graph.node_count} nodes and {self.graph.edge_count} edges")
            print(f"         Filtered view has {view.node_count} nodes and {view.edge_count} edges "
                  f"({self.timing.get_operation_total('filter'):.3f}s)")
        return view

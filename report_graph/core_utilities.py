"""
Core utilities for the report graph framework.
Contains timing helpers and the numba kernels shared by the graph builder
and the cluster records (great-circle distance, edit distance, pairwise join).
"""
import os
import time
from collections import defaultdict
from contextlib import contextmanager

import numpy as np
from numba import njit

# Earth radius used for every spatial distance in the dataset (meters)
EARTH_RADIUS_METERS = 6371.0 * 1000
MS_PER_DAY = 24 * 60 * 60 * 1000


class TimingStats:
    """Utility class to track timing statistics for different operations"""
    def __init__(self):
        self.stats = defaultdict(list)
        self.current_timers = {}

    def start(self, operation):
        """Start timing an operation"""
        self.current_timers[operation] = time.perf_counter()

    def end(self, operation):
        """End timing an operation and record the elapsed time"""
        if operation in self.current_timers:
            elapsed = time.perf_counter() - self.current_timers.pop(operation)
            self.stats[operation].append(elapsed)
            return elapsed
        return None

    @contextmanager
    def timed(self, operation):
        """Context manager wrapping start()/end() for a block."""
        self.start(operation)
        try:
            yield
        finally:
            self.end(operation)

    def get_stats(self, as_dict=False):
        """Get statistics for all operations"""
        result = {}
        for op, times in self.stats.items():
            result[op] = {
                'count': len(times),
                'total': sum(times),
                'mean': sum(times) / len(times) if times else 0,
                'min': min(times) if times else 0,
                'max': max(times) if times else 0
            }

        if as_dict:
            return result

        lines = ["Detailed Timing Statistics:"]
        for op, stats in sorted(result.items(), key=lambda x: x[1]['total'], reverse=True):
            lines.append(f"  • {op}: {stats['total']:.3f}s total, "
                         f"{stats['count']} calls, "
                         f"{stats['mean']:.3f}s avg/call")
        return "\n".join(lines)

    def get_operation_total(self, operation):
        """Get total time for a specific operation"""
        if operation in self.stats:
            return sum(self.stats[operation])
        return 0

    def report_nested_timing(self, parent_op, indent=2):
        """Report timing of the 'parent_op.child' operations as percentage of the parent"""
        if parent_op not in self.stats:
            return f"No data for parent operation: {parent_op}"

        parent_total = sum(self.stats[parent_op])
        if parent_total <= 0:
            return f"Parent operation {parent_op} has no timing data"

        lines = [f"Breakdown of {parent_op} ({parent_total:.3f}s total):"]
        children = [(op, sum(times)) for op, times in self.stats.items()
                    if op.startswith(f"{parent_op}.")]
        children.sort(key=lambda x: x[1], reverse=True)

        indent_str = " " * indent
        for op, total in children:
            percentage = (total / parent_total) * 100
            lines.append(f"{indent_str}• {op[len(parent_op) + 1:]}: {total:.3f}s ({percentage:.1f}%)")

        other_time = parent_total - sum(t for _, t in children)
        if other_time > 0:
            percentage = (other_time / parent_total) * 100
            lines.append(f"{indent_str}• other operations: {other_time:.3f}s ({percentage:.1f}%)")

        return "\n".join(lines)


def resolve_n_jobs(n_jobs):
    """Map the n_jobs convention (-1 = all cores) to a positive worker count."""
    if n_jobs is None or n_jobs == -1:
        return os.cpu_count() or 1
    if n_jobs < 1:
        raise ValueError(f"n_jobs must be -1 or a positive integer, got {n_jobs}")
    return int(n_jobs)


def shard_bounds(n_items, n_shards):
    """
    Split range(n_items) into n_shards contiguous [lower, upper) slices.
    The last shard takes the remainder; leading shards may be empty when
    n_items < n_shards.
    """
    step = n_items // n_shards
    bounds = []
    upper = 0
    for i in range(n_shards):
        lower = upper
        upper = n_items if i == n_shards - 1 else upper + step
        bounds.append((lower, upper))
    return bounds


@njit(cache=True, nogil=True)
def haversine_meters(lat1, lon1, lat2, lon2):
    """Great-circle distance between two (lat, lon) points in meters."""
    d_lat = np.radians(lat1 - lat2)
    d_lon = np.radians(lon1 - lon2)
    phi1 = np.radians(lat1)
    phi2 = np.radians(lat2)

    a = np.sin(d_lat / 2) ** 2 + np.sin(d_lon / 2) ** 2 * np.cos(phi1) * np.cos(phi2)
    c = 2 * np.arctan2(np.sqrt(a), np.sqrt(1 - a))
    return EARTH_RADIUS_METERS * c


@njit(cache=True, nogil=True)
def _levenshtein_codes(a, b):
    n = a.shape[0]
    m = b.shape[0]
    if n == 0:
        return m
    if m == 0:
        return n

    prev = np.arange(m + 1)
    curr = np.empty(m + 1, dtype=prev.dtype)
    for i in range(1, n + 1):
        curr[0] = i
        for j in range(1, m + 1):
            cost = 0 if a[i - 1] == b[j - 1] else 1
            curr[j] = min(prev[j] + 1, curr[j - 1] + 1, prev[j - 1] + cost)
        prev, curr = curr, prev
    return prev[m]


def _text_codes(text):
    return np.array([ord(ch) for ch in text], dtype=np.int64)


def levenshtein_distance(text1, text2):
    """Edit distance (insert/delete/substitute, unit costs) between two strings."""
    return int(_levenshtein_codes(_text_codes(text1), _text_codes(text2)))


def levenshtein_similarity(text1, text2):
    """
    Normalized edit similarity: 1 - d(text1, text2) / max(len(text1), len(text2)).

    Returns a value in [0, 1] where 1 means identical. Two empty strings are
    considered identical.
    """
    longest = max(len(text1), len(text2))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein_distance(text1, text2) / longest


@njit(cache=True, nogil=True)
def proximity_pairs(lat_a, lon_a, time_a, lat_b, lon_b, time_b,
                    same_list, max_space_dist, max_time_ms):
    """
    Pairwise spatio-temporal join between two report batches.

    Compares every report of batch a with every report of batch b (only the
    upper triangle when same_list is True) and keeps the pairs whose truncated
    haversine distance is < max_space_dist meters and whose absolute time gap
    is < max_time_ms milliseconds.

    Returns:
    --------
    idx_a, idx_b : int64 arrays
        Positions of the matching pair inside each batch
    space_dist : int64 array
        Truncated spatial distance in meters
    time_dist : int64 array
        Absolute time gap in milliseconds
    """
    n_a = lat_a.shape[0]
    n_b = lat_b.shape[0]

    # first pass: count matches so the outputs can be allocated once
    count = 0
    for i in range(n_a):
        start = i + 1 if same_list else 0
        for j in range(start, n_b):
            d = int(haversine_meters(lat_a[i], lon_a[i], lat_b[j], lon_b[j]))
            if d < max_space_dist:
                if abs(time_a[i] - time_b[j]) < max_time_ms:
                    count += 1

    idx_a = np.empty(count, dtype=np.int64)
    idx_b = np.empty(count, dtype=np.int64)
    space_dist = np.empty(count, dtype=np.int64)
    time_dist = np.empty(count, dtype=np.int64)

    out = 0
    for i in range(n_a):
        start = i + 1 if same_list else 0
        for j in range(start, n_b):
            d = int(haversine_meters(lat_a[i], lon_a[i], lat_b[j], lon_b[j]))
            if d < max_space_dist:
                dt = abs(time_a[i] - time_b[j])
                if dt < max_time_ms:
                    idx_a[out] = i
                    idx_b[out] = j
                    space_dist[out] = d
                    time_dist[out] = dt
                    out += 1

    return idx_a, idx_b, space_dist, time_dist

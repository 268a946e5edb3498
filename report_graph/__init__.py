"""
Report Graph Package - Spatio-temporal proximity graphs over geotagged reports,
with SCAN and modularity-based clustering.
"""

# Import main classes for easy access
from .graph_model import Node, Edge, Graph, GraphView, GraphConsistencyError, UNASSIGNED, NOISE
from .graph_generator import ProximityGraphBuilder
from .scan import SCAN
from .modularity import Network, ModularityOptimizer, Algorithm, ModularityFunction
from .clustering import GraphClustering, ClusterMaterializer, assign_component_labels
from .records import Report, Cluster
from .keyed_store import KeyedStore, InMemoryStore, ShelveStore, StoreManager
from .config import BuildConfig, FilterConfig, ScanConfig, ModularityConfig

# Import core utilities that might be directly useful
from .core_utilities import (
    TimingStats,
    haversine_meters,
    levenshtein_distance,
    levenshtein_similarity,
)

__all__ = [
    # Graph model
    'Node',
    'Edge',
    'Graph',
    'GraphView',
    'GraphConsistencyError',
    'UNASSIGNED',
    'NOISE',

    # Engines
    'ProximityGraphBuilder',
    'SCAN',
    'Network',
    'ModularityOptimizer',
    'Algorithm',
    'ModularityFunction',
    'GraphClustering',
    'ClusterMaterializer',
    'assign_component_labels',

    # Records and storage
    'Report',
    'Cluster',
    'KeyedStore',
    'InMemoryStore',
    'ShelveStore',
    'StoreManager',

    # Configuration
    'BuildConfig',
    'FilterConfig',
    'ScanConfig',
    'ModularityConfig',

    # Utilities
    'TimingStats',
    'haversine_meters',
    'levenshtein_distance',
    'levenshtein_similarity',
]

# Package metadata
__version__ = '1.0.0'

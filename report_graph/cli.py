"""
Command line interface: load reports, build the proximity graph and cluster it.

Every store lives as a shelve file inside --store-dir, so each step can run
as a separate invocation:

    report-graph --store-dir data --load reports.csv filter --meters 100 --days 30
    report-graph --store-dir data cluster --algorithm slm --random-seed 7
    report-graph --store-dir data export --reports-out points.csv --clusters-out clusters.csv
"""
import functools
import time

import click

from .clustering import GraphClustering
from .config import BuildConfig, ModularityConfig, ScanConfig
from .graph_generator import ProximityGraphBuilder, graph_store_names
from .graph_model import Graph, GraphConsistencyError
from .io import export_results, load_reports, store_reports
from .keyed_store import StoreManager

META_STORE = "meta"
BUILD_META_KEY = 0


class _Session:
    def __init__(self, store_dir, reports_name, clusters_name, verbose):
        self.manager = StoreManager(store_dir)
        self.reports_name = reports_name
        self.clusters_name = clusters_name
        self.verbose = verbose

    def reports(self):
        return self.manager.get_store(self.reports_name)

    def clusters(self):
        return self.manager.get_store(self.clusters_name)

    def close(self):
        if self.verbose:
            click.echo("Stores in database:")
            for name in self.manager.store_names():
                click.echo(f"\t{name}")
        self.manager.close()


def _fail_on_errors(fn):
    """Turn domain errors into a clean click failure (exit status 1)."""
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except (ValueError, KeyError, GraphConsistencyError) as e:
            raise click.ClickException(str(e)) from e
    return wrapper


@click.group(invoke_without_command=True)
@click.option('--store-dir', type=click.Path(file_okay=False), default="report_graph_store",
              show_default=True, help="Directory holding the shelve stores.")
@click.option('--reports-store', default="reports", show_default=True,
              help="Name of the store holding the reports.")
@click.option('--clusters-store', default="clusters", show_default=True,
              help="Name of the store holding the cluster aggregates.")
@click.option('-l', '--load', 'load_path', type=click.Path(exists=True), default=None,
              help="Load the reports in this file (or directory) before running a command.")
@click.option('-t', '--type', 'file_type', type=click.Choice(['csv', 'json']), default='csv',
              show_default=True, help="Type of the file(s) to be loaded.")
@click.option('-r', '--ratio', type=float, default=1.0, show_default=True,
              help="Fraction of the data to be loaded, in [0, 1].")
@click.option('--seed', type=int, default=None, help="Seed for the load sampling.")
@click.option('--verbose/--quiet', default=True, help="Print progress messages.")
@click.pass_context
@_fail_on_errors
def main(ctx, store_dir, reports_store, clusters_store, load_path, file_type, ratio, seed, verbose):
    """Spatio-temporal clustering of geotagged reports."""
    session = _Session(store_dir, reports_store, clusters_store, verbose)
    ctx.obj = session
    ctx.call_on_close(session.close)

    if load_path is not None:
        reports = load_reports(load_path, file_type=file_type, ratio=ratio,
                               random_seed=seed, verbose=verbose)
        n = store_reports(reports, session.reports())
        if verbose:
            click.echo(f"Stored {n} reports in '{reports_store}'")


@main.command("filter")
@click.option('-m', '--meters', type=int, required=True, help="Maximal spatial distance in meters.")
@click.option('-d', '--days', type=int, required=True, help="Maximal temporal distance in days.")
@click.option('--n-jobs', type=int, default=-1, show_default=True,
              help="Number of worker threads (-1 = all cores).")
@click.pass_obj
@_fail_on_errors
def filter_command(session, meters, days, n_jobs):
    """Build the proximity graph and cluster its connected components."""
    config = BuildConfig(max_space_dist=meters, max_day_dist=days, n_jobs=n_jobs).validate()
    start = time.perf_counter()

    nodes_name, edges_name = graph_store_names(session.reports_name)
    graph = Graph(session.manager.get_store(nodes_name), session.manager.get_store(edges_name))
    builder = ProximityGraphBuilder.from_config(session.reports(), config, graph=graph,
                                                verbose=session.verbose)
    builder.build()
    session.manager.get_store(META_STORE).put(
        BUILD_META_KEY, {"max_space_dist": meters, "max_day_dist": days})

    clustering = GraphClustering(graph, session.reports(), session.clusters(), verbose=session.verbose)
    clustering.label_connected_components()
    clustering.generate_and_transfer_clusters()
    if session.verbose:
        click.echo(f"First step took: {time.perf_counter() - start:.3f}s")
        click.echo(builder.timing.report_nested_timing("build"))
        click.echo(clustering.timing.get_stats())


@main.command("cluster")
@click.option('--algorithm', type=click.Choice(['scan', 'louvain', 'louvain_mlv', 'slm'],
                                               case_sensitive=False),
              required=True, help="Clustering algorithm to run on the built graph.")
@click.option('--mu', type=int, default=2, show_default=True, help="SCAN: minimal core neighborhood size.")
@click.option('--eps', type=float, default=0.7, show_default=True, help="SCAN: similarity threshold in [0, 1].")
@click.option('--hub-rule', type=click.Choice(['first-difference', 'distinct-clusters']),
              default='first-difference', show_default=True, help="SCAN: hub classification rule.")
@click.option('--modularity-function', type=click.Choice(['standard', 'alternative']),
              default='standard', show_default=True, help="Modularity function to optimize.")
@click.option('--resolution', type=float, default=1.0, show_default=True, help="Resolution parameter.")
@click.option('--random-starts', type=int, default=10, show_default=True, help="Number of random starts.")
@click.option('--iterations', type=int, default=10, show_default=True, help="Iterations per random start.")
@click.option('--random-seed', type=int, default=None, help="Seed of the random generator (default: random).")
@click.pass_obj
@_fail_on_errors
def cluster_command(session, algorithm, mu, eps, hub_rule, modularity_function, resolution,
                    random_starts, iterations, random_seed):
    """Cluster a previously built graph with SCAN or a modularity optimizer."""
    algorithm = algorithm.lower()
    meta = session.manager.get_store(META_STORE).get(BUILD_META_KEY)
    if meta is None:
        raise GraphConsistencyError("Cannot continue: missing existing graph structure, run 'filter' first")

    builder = ProximityGraphBuilder.from_existing(session.manager, session.reports_name,
                                                  verbose=session.verbose, **meta)
    graph = builder.graph
    clustering = GraphClustering(graph, session.reports(), session.clusters(), verbose=session.verbose)
    start = time.perf_counter()

    if algorithm == "scan":
        config = ScanConfig(epsilon=eps, mu=mu, hub_rule=hub_rule).validate()
        clustering.run_scan(epsilon=config.epsilon, mu=config.mu, hub_rule=config.hub_rule,
                            start_from=config.start_from)
    else:
        config = ModularityConfig(modularity_function=modularity_function, resolution=resolution,
                                  algorithm=algorithm, random_starts=random_starts,
                                  iterations=iterations, random_seed=random_seed).validate()
        clustering.run_modularity_optimizer(
            modularity_function=config.modularity_function, resolution=config.resolution,
            algorithm=config.algorithm, random_starts=config.random_starts,
            iterations=config.iterations, random_seed=config.resolved_seed(),
            truncate_isolated_tail=config.truncate_isolated_tail)

    clustering.generate_and_transfer_clusters()
    if session.verbose:
        click.echo(f"Clustering with {algorithm} took: {time.perf_counter() - start:.3f}s")
        click.echo(clustering.timing.get_stats())


@main.command("export")
@click.option('--reports-out', type=click.Path(dir_okay=False), required=True,
              help="CSV file receiving the labeled reports.")
@click.option('--clusters-out', type=click.Path(dir_okay=False), required=True,
              help="CSV file receiving the cluster aggregates.")
@click.pass_obj
@_fail_on_errors
def export_command(session, reports_out, clusters_out):
    """Export the labeled reports and cluster aggregates to CSV."""
    export_results(session.reports(), reports_out, clusters_out,
                   clusters_store=session.clusters(), verbose=session.verbose)


@main.command("clean")
@click.pass_obj
def clean_command(session):
    """Remove every store."""
    session.manager.remove_all_stores()
    if session.verbose:
        click.echo("Removed all stores")


if __name__ == "__main__":
    main()

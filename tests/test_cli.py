"""
End-to-end tests of the command line interface on shelve stores.
"""
import pandas as pd
import pytest
from click.testing import CliRunner

from report_graph.cli import main


@pytest.fixture
def reports_csv(tmp_path, two_site_reports):
    path = tmp_path / "reports.csv"
    rows = [dict(r.to_csv_row(), created_at=r.creation_time) for r in two_site_reports]
    pd.DataFrame(rows).drop(columns="cluster_id").to_csv(path, index=False)
    return str(path)


@pytest.fixture
def invoke(tmp_path):
    runner = CliRunner()
    store_dir = str(tmp_path / "store")

    def _invoke(*args):
        return runner.invoke(main, ["--store-dir", store_dir, "--quiet", *args])
    return _invoke


def exported_groups(invoke, tmp_path):
    points, clusters = tmp_path / "points.csv", tmp_path / "clusters.csv"
    result = invoke("export", "--reports-out", str(points), "--clusters-out", str(clusters))
    assert result.exit_code == 0, result.output
    df = pd.read_csv(points)
    groups = df[df["cluster_id"] != -1].groupby("cluster_id")["id"].apply(sorted).tolist()
    return sorted(groups), pd.read_csv(clusters)


def test_filter_then_export(invoke, reports_csv, tmp_path):
    result = invoke("--load", reports_csv, "filter", "-m", "100", "-d", "30", "--n-jobs", "2")
    assert result.exit_code == 0, result.output

    groups, clusters = exported_groups(invoke, tmp_path)
    assert groups == [[1, 2, 3], [4, 5, 6]]
    assert sorted(clusters["size"].tolist()) == [3, 3]


@pytest.mark.parametrize("args", [
    ["--algorithm", "scan", "--eps", "0.5", "--mu", "2"],
    ["--algorithm", "slm", "--random-seed", "3", "--random-starts", "2"],
    ["--algorithm", "louvain", "--random-seed", "3"],
])
def test_cluster_after_filter(invoke, reports_csv, tmp_path, args):
    assert invoke("--load", reports_csv, "filter", "-m", "100", "-d", "30").exit_code == 0
    result = invoke("cluster", *args)
    assert result.exit_code == 0, result.output

    groups, _ = exported_groups(invoke, tmp_path)
    assert groups == [[1, 2, 3], [4, 5, 6]]


def test_cluster_without_graph_fails(invoke, reports_csv):
    result = invoke("--load", reports_csv, "cluster", "--algorithm", "scan")
    assert result.exit_code == 1
    assert "filter" in result.output


def test_invalid_scan_parameters_fail(invoke, reports_csv):
    assert invoke("--load", reports_csv, "filter", "-m", "100", "-d", "30").exit_code == 0
    result = invoke("cluster", "--algorithm", "scan", "--mu", "1")
    assert result.exit_code == 1


def test_clean_removes_stores(invoke, reports_csv, tmp_path):
    assert invoke("--load", reports_csv, "filter", "-m", "100", "-d", "30").exit_code == 0
    assert invoke("clean").exit_code == 0
    assert not any(".db" in entry.name for entry in (tmp_path / "store").iterdir())


def test_verbose_filter_and_cluster_print_timing(tmp_path, reports_csv):
    runner = CliRunner()
    store_dir = str(tmp_path / "store")
    result = runner.invoke(main, ["--store-dir", store_dir, "--load", reports_csv,
                                  "filter", "-m", "100", "-d", "30"])
    assert result.exit_code == 0, result.output
    assert "Breakdown of build" in result.output
    assert "load:" in result.output and "join:" in result.output
    assert "Detailed Timing Statistics:" in result.output

    result = runner.invoke(main, ["--store-dir", store_dir, "cluster", "--algorithm", "scan"])
    assert result.exit_code == 0, result.output
    assert "• scan:" in result.output
    assert "• materialize:" in result.output

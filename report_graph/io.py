"""
Report ingestion (CSV / JSON through pandas) and CSV export of clustering results.
"""
import os

import numpy as np
import pandas as pd

from .config import validate_ratio
from .records import Cluster, NOISE_LABEL, Report

REQUIRED_COLUMNS = ["id", "lat", "lon", "category", "text", "url", "created_at"]


def _read_frame(path, file_type):
    if os.path.isdir(path):
        # a directory contributes every file of the requested type
        file_type = file_type or "csv"
        files = sorted(os.path.join(path, f) for f in os.listdir(path)
                       if f.lower().endswith("." + file_type))
        if not files:
            raise ValueError(f"No .{file_type} files found in {path}")
        return pd.concat([_read_frame(f, file_type) for f in files], ignore_index=True)

    if file_type is None:
        file_type = os.path.splitext(path)[1].lstrip(".").lower()
    if file_type == "csv":
        return pd.read_csv(path)
    if file_type == "json":
        return pd.read_json(path, orient="records", convert_dates=False)
    raise ValueError(f"Unsupported report file type: {file_type!r}, expected 'csv' or 'json'")


def _to_epoch_ms(column):
    if pd.api.types.is_numeric_dtype(column):
        return pd.to_numeric(column, errors="coerce")
    ts = pd.to_datetime(column, utc=True, errors="coerce")
    return (ts - pd.Timestamp(0, tz="UTC")) // pd.Timedelta(milliseconds=1)


def load_reports(path, file_type=None, ratio=1.0, random_seed=None, verbose=True):
    """
    Read reports from a CSV or JSON file.

    Parameters:
    -----------
    path : str
        File holding one report per row / record, or a directory whose
        files of the given type are all read
    file_type : {"csv", "json"}, optional
        Inferred from the file extension when None
    ratio : float, default=1.0
        Fraction of the rows to keep, each row kept independently
    random_seed : int, optional
        Seed of the sampling generator
    verbose : bool, default=True
        Whether to print progress messages

    Returns:
    --------
    list of Report, sorted by creation time
    """
    validate_ratio(ratio)
    df = _read_frame(path, file_type)

    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"Report file {path} is missing columns: {missing}")

    if abs(ratio - 1.0) > 1e-4:
        rng = np.random.default_rng(random_seed)
        df = df[rng.random(len(df)) < ratio]

    n_read = len(df)
    df = df.assign(
        id=pd.to_numeric(df["id"], errors="coerce"),
        lat=pd.to_numeric(df["lat"], errors="coerce"),
        lon=pd.to_numeric(df["lon"], errors="coerce"),
        created_at=_to_epoch_ms(df["created_at"]),
    )
    df = df.dropna(subset=["id", "lat", "lon", "created_at"])
    df = df.drop_duplicates(subset="id", keep="first")
    df = df.assign(**{col: df[col].fillna("").astype(str) for col in ("category", "text", "url")})

    if verbose:
        dropped = n_read - len(df)
        print(f"Loaded {len(df)} reports from {path}")
        if dropped:
            print(f"         WARNING: dropped {dropped} rows with invalid id, coordinates, "
                  f"timestamp or a duplicate id")

    reports = [
        Report(id=int(row.id), lat=float(row.lat), lon=float(row.lon),
               category=row.category, text=row.text, url=row.url,
               creation_time=int(row.created_at))
        for row in df.itertuples(index=False)
    ]
    reports.sort(key=lambda r: (r.creation_time, r.id))
    return reports


def store_reports(reports, store):
    """Put every report into store under its id. Returns the number stored."""
    for report in reports:
        store.put(report.id, report)
    return len(reports)


def _clusters_from_reports(reports):
    grouped = {}
    for report in reports:
        grouped.setdefault(report.cluster_id, []).append(report)
    return [Cluster(members, label) for label, members in sorted(grouped.items())]


def export_results(reports_store, reports_path, clusters_path, clusters_store=None, verbose=True):
    """
    Write the clustered reports and the cluster aggregates to CSV.

    Cluster rows use the extended format and only labels > 0 are written.
    Without stored aggregates, clusters are regrouped from the report labels.
    """
    reports = sorted(reports_store.values(), key=lambda r: r.id)
    clusters = list(clusters_store.values()) if clusters_store is not None else []
    if not clusters:
        clusters = _clusters_from_reports(reports)
    clusters = sorted((c for c in clusters if c.label > 0), key=lambda c: c.label)

    pd.DataFrame([c.to_csv_extended_row() for c in clusters],
                 columns=["label", "latitude", "longitude", "size", "spatial_diameter",
                          "temporal_diameter", "created_at", "updated_at", "category",
                          "description"]).to_csv(clusters_path, index=False)
    pd.DataFrame([r.to_csv_row() for r in reports],
                 columns=["id", "lat", "lon", "category", "text", "url", "created_at",
                          "cluster_id"]).to_csv(reports_path, index=False)

    if verbose:
        n_noise = sum(1 for r in reports if r.cluster_id == NOISE_LABEL)
        print(f"Exported {len(reports)} reports ({n_noise} noise) to {reports_path}")
        print(f"Exported {len(clusters)} clusters to {clusters_path}")
    return len(reports), len(clusters)

"""
Report and Cluster records exchanged with the keyed stores.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from .core_utilities import haversine_meters

NOISE_LABEL = -1


def ms_to_datetime(ms):
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)


@dataclass
class Report:
    """A geotagged, time-stamped short-text report. creation_time is epoch milliseconds."""
    id: int
    lat: float
    lon: float
    category: str
    text: str = ""
    url: str = ""
    creation_time: int = 0
    cluster_id: int = NOISE_LABEL

    @property
    def created_at(self):
        return ms_to_datetime(self.creation_time)

    def spatial_distance(self, other):
        """Haversine distance to another report in meters."""
        return haversine_meters(self.lat, self.lon, other.lat, other.lon)

    def to_csv_row(self):
        return {
            "id": self.id,
            "lat": self.lat,
            "lon": self.lon,
            "category": self.category,
            "text": self.text,
            "url": self.url,
            "created_at": self.created_at.isoformat(),
            "cluster_id": self.cluster_id,
        }


@dataclass
class TemporalDiameter:
    diameter_ms: int
    start: Optional[datetime]
    end: Optional[datetime]


@dataclass
class Cluster:
    """
    Aggregate of the reports sharing one cluster label.

    min_time/max_time and the centroid (arithmetic mean of the member
    coordinates) are computed once at construction.
    """
    reports: List[Report]
    label: int
    min_time: int = field(init=False)
    max_time: int = field(init=False)
    lat_center: float = field(init=False)
    lon_center: float = field(init=False)

    def __post_init__(self):
        if not self.reports:
            raise ValueError(f"Cluster {self.label} cannot be built without reports")
        times = [r.creation_time for r in self.reports]
        self.min_time = min(times)
        self.max_time = max(times)
        self.lat_center = sum(r.lat for r in self.reports) / len(self.reports)
        self.lon_center = sum(r.lon for r in self.reports) / len(self.reports)

    @property
    def size(self):
        return len(self.reports)

    @property
    def member_ids(self):
        return [r.id for r in self.reports]

    def spatial_diameter(self):
        """Largest pairwise haversine distance between members (meters)."""
        diameter = 0.0
        for i, r1 in enumerate(self.reports):
            for r2 in self.reports[i + 1:]:
                diameter = max(diameter, r1.spatial_distance(r2))
        return diameter

    def temporal_diameter(self):
        """Largest pairwise creation time gap and the two dates spanning it."""
        first = min(self.reports, key=lambda r: r.creation_time)
        last = max(self.reports, key=lambda r: r.creation_time)
        return TemporalDiameter(last.creation_time - first.creation_time,
                                first.created_at, last.created_at)

    @property
    def category(self):
        # the first member's text stands in for the whole cluster
        return self.reports[0].text

    @property
    def description(self):
        return "; ".join(r.url for r in self.reports) + "; "

    def to_csv_extended_row(self):
        temporal = self.temporal_diameter()
        return {
            "label": self.label,
            "latitude": self.lat_center,
            "longitude": self.lon_center,
            "size": self.size,
            "spatial_diameter": self.spatial_diameter(),
            "temporal_diameter": temporal.diameter_ms,
            "created_at": temporal.start.isoformat(),
            "updated_at": temporal.end.isoformat(),
            "category": self.category,
            "description": self.description,
        }

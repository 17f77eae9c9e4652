"""PostGIS-backed district index for point-in-polygon and ZIP overlap lookups.

Drop-in replacement for DistrictBoundaryIndex that queries PostGIS instead of
in-memory geopandas DataFrames. Provides instant startup since no shapefiles
need loading. Tables are created by import_district_boundaries_to_postgis.py.
"""

import logging
from typing import List, Optional, Tuple

import psycopg2
import psycopg2.extras

from .models import CHAMBERS
from .spatial_index import parse_district_number

logger = logging.getLogger(__name__)

_TABLES = {
    "congressional": "congressional_districts",
    "state_senate": "state_senate_districts",
    "state_assembly": "state_assembly_districts",
}
_ZCTA_TABLE = "zcta_boundaries"

# Point-in-polygon, sorted by area ascending (smallest first)
_QUERY_POINT = """
    SELECT district, state, area_km2
    FROM {table}
    WHERE ST_Covers(geometry, ST_SetSRID(ST_MakePoint(%s, %s), 4326))
    ORDER BY area_km2 ASC
"""

# Share of the ZCTA polygon falling in each district, equal-area projection
_QUERY_OVERLAP = """
    SELECT d.district, d.state,
           ST_Area(ST_Transform(ST_Intersection(d.geometry, z.geometry), 5070))
             / NULLIF(ST_Area(ST_Transform(z.geometry, 5070)), 0) AS share
    FROM {table} d
    JOIN {zcta} z ON ST_Intersects(d.geometry, z.geometry)
    WHERE z.zcta5 = %s
    ORDER BY share DESC
"""

_QUERY_ZCTA_POINT = """
    SELECT ST_Y(ST_PointOnSurface(geometry)), ST_X(ST_PointOnSurface(geometry))
    FROM {zcta}
    WHERE zcta5 = %s
    LIMIT 1
"""


class PostGISDistrictIndex:
    """PostGIS-backed district index. Same interface as DistrictBoundaryIndex."""

    def __init__(self, db_url: str, min_overlap_share: float = 0.02):
        self._db_url = db_url
        self.min_overlap_share = min_overlap_share
        self._conn = None
        self._available = False
        self._table_counts = {c: 0 for c in CHAMBERS}
        self._table_counts["zcta"] = 0
        self._connect()

    def _connect(self):
        try:
            self._conn = psycopg2.connect(self._db_url)
            self._conn.autocommit = True
            # Verify tables exist and get counts
            with self._conn.cursor() as cur:
                for key, table in list(_TABLES.items()) + [("zcta", _ZCTA_TABLE)]:
                    try:
                        cur.execute(f"SELECT COUNT(*) FROM {table}")
                        self._table_counts[key] = cur.fetchone()[0]
                    except psycopg2.Error:
                        self._table_counts[key] = 0

            if any(self._table_counts[c] for c in CHAMBERS):
                self._available = True
                logger.info(
                    "PostGIS district index: "
                    + ", ".join(f"{k}={v}" for k, v in self._table_counts.items())
                )
            else:
                logger.warning("PostGIS district tables are empty")
        except psycopg2.Error as e:
            logger.warning(f"PostGIS district index unavailable: {e}")
            self._available = False

    def _ensure_connection(self):
        """Reconnect if connection was lost."""
        if self._conn is None or self._conn.closed:
            self._connect()

    def _fetch(self, query: str, params: tuple) -> List[dict]:
        self._ensure_connection()
        try:
            with self._conn.cursor(cursor_factory=psycopg2.extras.DictCursor) as cur:
                cur.execute(query, params)
                return [dict(row) for row in cur.fetchall()]
        except psycopg2.Error as e:
            logger.warning(f"PostGIS query error: {e}")
            self._conn = None  # Force reconnect next time
            return []

    def query_point(self, lat: float, lon: float, chamber: str) -> List[dict]:
        if not self._available or chamber not in _TABLES:
            return []
        rows = self._fetch(_QUERY_POINT.format(table=_TABLES[chamber]), (lon, lat))  # PostGIS uses (x=lon, y=lat)
        results = []
        for row in rows:
            district = parse_district_number(row.get("district"))
            if district is None:
                continue
            results.append({
                "district": district,
                "state": row.get("state") or "",
                "area_km2": float(row.get("area_km2") or 0),
            })
        return results

    def zip_overlaps(self, zip_code: str, chamber: str) -> List[dict]:
        if not self._available or chamber not in _TABLES or not self._table_counts["zcta"]:
            return []
        query = _QUERY_OVERLAP.format(table=_TABLES[chamber], zcta=_ZCTA_TABLE)
        results = []
        for row in self._fetch(query, (zip_code,)):
            share = float(row.get("share") or 0)
            district = parse_district_number(row.get("district"))
            if district is None or share < self.min_overlap_share:
                continue
            results.append({"district": district, "state": row.get("state") or "", "share": round(share, 4)})
        return results

    def zcta_point(self, zip_code: str) -> Optional[Tuple[float, float]]:
        if not self._available or not self._table_counts["zcta"]:
            return None
        self._ensure_connection()
        try:
            with self._conn.cursor() as cur:
                cur.execute(_QUERY_ZCTA_POINT.format(zcta=_ZCTA_TABLE), (zip_code,))
                row = cur.fetchone()
        except psycopg2.Error as e:
            logger.warning(f"PostGIS query error: {e}")
            self._conn = None
            return None
        return (row[0], row[1]) if row else None

    @property
    def is_loaded(self) -> bool:
        return self._available

    @property
    def layer_counts(self) -> dict:
        return self._table_counts.copy()

    def load_all(self):
        """No-op; PostGIS tables are always available. Matches DistrictBoundaryIndex interface."""
        pass

"""Spatial index for point-in-polygon district lookups and ZIP/district overlap."""

import logging
import time
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import geopandas as gpd
from shapely.geometry import Point
from shapely.validation import make_valid

from .config import Config
from .models import CHAMBERS
from .zip_ranges import STATE_FIPS

logger = logging.getLogger(__name__)

# TIGER/Line district number columns, newest vintage first
_DISTRICT_COLUMNS = {
    "congressional": ("CD119FP", "CD118FP", "DISTRICT"),
    "state_senate": ("SLDUST", "DISTRICT"),
    "state_assembly": ("SLDLST", "DISTRICT"),
}
_ZCTA_COLUMNS = ("ZCTA5CE20", "ZCTA5CE10", "ZCTA5")


def parse_district_number(raw) -> Optional[int]:
    """TIGER district codes are zero-padded strings; 'ZZZ' marks water / undefined."""
    if raw is None:
        return None
    try:
        return int(str(raw).strip())
    except ValueError:
        return None


class DistrictBoundaryIndex:
    """Loads district boundary shapefiles into memory and provides fast point-in-polygon queries."""

    def __init__(self, config: Config):
        self.config = config
        self._layers: Dict[str, Optional[gpd.GeoDataFrame]] = {c: None for c in CHAMBERS}
        self._zcta: Optional[gpd.GeoDataFrame] = None

    def load_all(self):
        """Load all shapefiles. Call once at startup."""
        t0 = time.time()
        paths = {
            "congressional": self.config.congressional_shp,
            "state_senate": self.config.state_senate_shp,
            "state_assembly": self.config.state_assembly_shp,
        }
        for chamber, path in paths.items():
            self._layers[chamber] = self._load_layer(Path(path), chamber)
        self._zcta = self._load_layer(Path(self.config.zcta_shp), "ZCTA")
        elapsed = time.time() - t0
        logger.info(f"All district layers loaded in {elapsed:.1f}s")

    def _load_layer(self, path: Path, label: str) -> Optional[gpd.GeoDataFrame]:
        if not path.exists():
            logger.warning(f"{label} file not found: {path}")
            return None
        t0 = time.time()
        gdf = self._prepare(gpd.read_file(path), label)
        elapsed = time.time() - t0
        logger.info(f"{label}: {len(gdf)} records loaded in {elapsed:.1f}s")
        return gdf

    def _prepare(self, gdf: gpd.GeoDataFrame, label: str) -> gpd.GeoDataFrame:
        """Geometry validation, reprojection, area and spatial index."""
        gdf = gdf.reset_index(drop=True)
        # Fix invalid geometries
        invalid = ~gdf.geometry.is_valid
        if invalid.any():
            logger.info(f"{label}: fixing {invalid.sum()} invalid geometries")
            gdf.loc[invalid, "geometry"] = gdf.loc[invalid, "geometry"].apply(make_valid)
        if gdf.crs is None:
            gdf = gdf.set_crs(self.config.target_crs)
        elif str(gdf.crs) != self.config.target_crs:
            gdf = gdf.to_crs(self.config.target_crs)
        # Pre-compute area in km² (equal-area projection)
        gdf["_area_km2"] = gdf.to_crs(self.config.area_crs).geometry.area / 1e6
        _ = gdf.sindex
        return gdf

    def add_layer(self, chamber: str, gdf: gpd.GeoDataFrame):
        """Register an already-loaded district layer (or "zcta")."""
        if chamber == "zcta":
            self._zcta = self._prepare(gdf, "ZCTA")
            return
        if chamber not in CHAMBERS:
            raise ValueError(f"Unknown chamber '{chamber}'")
        self._layers[chamber] = self._prepare(gdf, chamber)

    def query_point(self, lat: float, lon: float, chamber: str) -> List[dict]:
        """
        Find all districts containing the point, sorted by area ascending.

        Returns:
            List of dicts with district, state, area_km2, smallest first.
        """
        gdf = self._layers.get(chamber)
        if gdf is None:
            return []

        point = Point(lon, lat)  # shapely uses (x=lon, y=lat)
        candidates_idx = list(gdf.sindex.intersection(point.bounds))
        if not candidates_idx:
            return []

        results = []
        for idx in candidates_idx:
            row = gdf.iloc[idx]
            try:
                if row.geometry is not None and row.geometry.covers(point):
                    attrs = self._extract_attributes(row, chamber)
                    if attrs["district"] is not None:
                        results.append(attrs)
            except Exception as e:
                logger.warning(f"Skipping {chamber} geometry {idx}: {e}")
                continue

        results.sort(key=lambda r: r.get("area_km2", float("inf")))
        return results

    def zip_overlaps(self, zip_code: str, chamber: str) -> List[dict]:
        """
        Districts overlapping the ZIP's ZCTA polygon, largest share first.

        Shares below config.min_overlap_share (boundary slivers) are dropped.
        Returns [] when the ZCTA or district layer is not loaded.
        """
        gdf = self._layers.get(chamber)
        zcta_geom = self._zcta_geometry(zip_code)
        if gdf is None or zcta_geom is None:
            return []

        candidates_idx = list(gdf.sindex.intersection(zcta_geom.bounds))
        if not candidates_idx:
            return []
        candidates = gdf.iloc[candidates_idx]
        candidates = candidates[candidates.geometry.intersects(zcta_geom)]
        if candidates.empty:
            return []

        zcta_area = gpd.GeoSeries([zcta_geom], crs=self.config.target_crs).to_crs(self.config.area_crs).area.iloc[0]
        if not zcta_area:
            return []
        piece_areas = candidates.geometry.intersection(zcta_geom).to_crs(self.config.area_crs).area

        results = []
        for (_, row), area in zip(candidates.iterrows(), piece_areas):
            share = float(area / zcta_area)
            if share < self.config.min_overlap_share:
                continue
            attrs = self._extract_attributes(row, chamber)
            if attrs["district"] is None:
                continue
            attrs["share"] = round(share, 4)
            results.append(attrs)

        results.sort(key=lambda r: -r["share"])
        return results

    def zcta_point(self, zip_code: str) -> Optional[Tuple[float, float]]:
        """(lat, lon) of a point guaranteed inside the ZIP's ZCTA polygon."""
        geom = self._zcta_geometry(zip_code)
        if geom is None:
            return None
        pt = geom.representative_point()
        return pt.y, pt.x

    def _zcta_geometry(self, zip_code: str):
        if self._zcta is None:
            return None
        col = next((c for c in _ZCTA_COLUMNS if c in self._zcta.columns), None)
        if col is None:
            return None
        matches = self._zcta[self._zcta[col].astype(str) == zip_code]
        if matches.empty:
            return None
        return matches.geometry.iloc[0]

    def _extract_attributes(self, row, chamber: str) -> dict:
        """Extract district number and state from a GeoDataFrame row."""
        raw = None
        for col in _DISTRICT_COLUMNS[chamber]:
            if col in row.index:
                raw = row.get(col)
                break
        statefp = str(row.get("STATEFP", "") or "")
        state = STATE_FIPS.get(statefp.zfill(2), str(row.get("STATE", "") or ""))
        return {
            "district": parse_district_number(raw),
            "state": state,
            "area_km2": float(row.get("_area_km2", 0) or 0),
        }

    @property
    def is_loaded(self) -> bool:
        return any(gdf is not None for gdf in self._layers.values())

    @property
    def layer_counts(self) -> dict:
        counts = {c: len(gdf) if gdf is not None else 0 for c, gdf in self._layers.items()}
        counts["zcta"] = len(self._zcta) if self._zcta is not None else 0
        return counts

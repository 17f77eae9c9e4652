"""Manual ZIP corrections — highest priority source.

Human-verified corrections override the reference table and the geocoder.
Two stores, merged per ZIP in this order:
- ZIP-level corrections from a JSON file (reviewed batches)
- Individual corrections in corrections.db (recorded through the API / CLI)
"""

import json
import logging
import sqlite3
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .models import CHAMBERS, JurisdictionType
from .reference import ReferenceEntry

logger = logging.getLogger(__name__)

CORRECTABLE_FIELDS = {
    "state", "county", "city", "place_name", "jurisdiction_type",
    "secondary_counties", *CHAMBERS,
}


@dataclass(frozen=True)
class Correction:
    zip_code: str
    fields: Dict
    notes: Tuple[str, ...] = ()
    revision: int = 1

    def apply(self, entry: Optional[ReferenceEntry]) -> ReferenceEntry:
        """Overlay corrected fields on a reference entry (or build one from scratch)."""
        changes = dict(self.fields)
        if "jurisdiction_type" in changes:
            changes["jurisdiction_type"] = JurisdictionType(changes["jurisdiction_type"])
        if "secondary_counties" in changes:
            changes["secondary_counties"] = tuple(changes["secondary_counties"])
        if "city" in changes:
            # Setting or clearing the city flips incorporation unless the type was given too
            if "jurisdiction_type" not in changes:
                changes["jurisdiction_type"] = (
                    JurisdictionType.INCORPORATED_CITY if changes["city"]
                    else JurisdictionType.UNINCORPORATED_AREA
                )
            if changes["city"] and "place_name" not in changes:
                changes["place_name"] = changes["city"]
        elif changes.get("jurisdiction_type", JurisdictionType.INCORPORATED_CITY) != JurisdictionType.INCORPORATED_CITY:
            changes["city"] = None

        if entry is None:
            if not changes.get("state") or not changes.get("county"):
                raise ValueError(f"{self.zip_code} is not in the reference table; state and county are required")
            corrected = ReferenceEntry(
                zip_code=self.zip_code,
                state=changes.pop("state"),
                county=changes.pop("county"),
                jurisdiction_type=changes.pop("jurisdiction_type", JurisdictionType.UNINCORPORATED_AREA),
                **changes,
            )
        else:
            # A district correction supersedes any alternates recorded for that chamber
            alternates = {c: v for c, v in entry.alternates.items() if c not in changes}
            corrected = replace(entry, alternates=alternates, **changes)

        if (corrected.jurisdiction_type == JurisdictionType.INCORPORATED_CITY) != (corrected.city is not None):
            raise ValueError(f"{self.zip_code}: an incorporated_city correction needs a city name")
        return corrected


def validate_fields(fields: dict):
    """Raise ValueError for fields that cannot be corrected or have the wrong shape."""
    if not fields:
        raise ValueError("Correction must change at least one field")
    unknown = set(fields) - CORRECTABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown correction fields: {sorted(unknown)}")
    for chamber in CHAMBERS:
        if chamber in fields and fields[chamber] is not None:
            value = fields[chamber]
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ValueError(f"{chamber} must be a positive integer")
    if "jurisdiction_type" in fields:
        JurisdictionType(fields["jurisdiction_type"])
    for key in ("state", "county"):
        if key in fields and not fields[key]:
            raise ValueError(f"{key} cannot be cleared")


class CorrectionsStore:
    """Highest-priority source — human-verified ZIP corrections."""

    def __init__(self, db_path: Path = None, corrections_file: Path = None):
        if db_path is None:
            db_path = Path(__file__).parent.parent / "data" / "corrections.db"
        if corrections_file is None:
            corrections_file = Path(__file__).parent.parent / "data" / "corrections" / "zip_corrections.json"

        self._db_path = Path(db_path)
        self._file_corrections: Dict[str, dict] = {}
        self._ensure_tables()
        self._load_zip_corrections(Path(corrections_file))

    def _ensure_tables(self):
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self._db_path))
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS zip_corrections (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    zip_code TEXT NOT NULL,
                    fields_json TEXT NOT NULL,
                    note TEXT,
                    corrected_by TEXT DEFAULT 'admin',
                    corrected_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );
                CREATE INDEX IF NOT EXISTS idx_zc_zip ON zip_corrections(zip_code);
            """)
            conn.close()
        except (sqlite3.Error, OSError) as e:
            logger.warning(f"Could not create correction tables: {e}")

    def _load_zip_corrections(self, fpath: Path):
        """Load the ZIP-level correction JSON file, if present."""
        if not fpath.exists():
            return
        try:
            with open(fpath) as f:
                data = json.load(f)
            # Handle nested structure: {_metadata: ..., corrections: {zip: ...}}
            if isinstance(data, dict) and "corrections" in data:
                data = data["corrections"]
            for zip_code, rec in data.items():
                fields = {k: v for k, v in rec.items() if k != "note"}
                try:
                    validate_fields(fields)
                except ValueError as e:
                    logger.warning(f"Corrections: skipping {zip_code} in {fpath.name}: {e}")
                    continue
                self._file_corrections[zip_code] = rec
            logger.info(f"Corrections: loaded {len(self._file_corrections)} ZIP corrections from {fpath.name}")
        except (json.JSONDecodeError, IOError, AttributeError) as e:
            logger.warning(f"Failed to load {fpath}: {e}")

    def _db_rows(self, zip_code: str) -> List[tuple]:
        try:
            conn = sqlite3.connect(str(self._db_path))
            rows = conn.execute(
                "SELECT fields_json, note, corrected_by FROM zip_corrections "
                "WHERE zip_code = ? ORDER BY id",
                (zip_code,),
            ).fetchall()
            conn.close()
            return rows
        except sqlite3.Error as e:
            logger.warning(f"Corrections DB error: {e}")
            return []

    def lookup(self, zip_code: str) -> Optional[Correction]:
        """Merged correction for a ZIP, later corrections winning per field."""
        fields: Dict = {}
        notes: List[str] = []
        revision = 0

        file_rec = self._file_corrections.get(zip_code)
        if file_rec:
            fields.update({k: v for k, v in file_rec.items() if k != "note"})
            notes.append(f"Corrected: {file_rec.get('note') or 'reviewed ZIP correction'}")
            revision += 1

        for fields_json, note, corrected_by in self._db_rows(zip_code):
            try:
                fields.update(json.loads(fields_json))
            except json.JSONDecodeError:
                logger.warning(f"Corrections: unreadable row for {zip_code}")
                continue
            notes.append(f"Corrected by {corrected_by}: {note or 'manual correction'}")
            revision += 1

        if not revision:
            return None
        return Correction(zip_code=zip_code, fields=fields, notes=tuple(notes), revision=revision)

    def record(self, zip_code: str, fields: dict, note: str = "", corrected_by: str = "admin") -> Correction:
        """Persist a correction and return the merged correction for the ZIP."""
        validate_fields(fields)
        conn = sqlite3.connect(str(self._db_path))
        try:
            conn.execute(
                "INSERT INTO zip_corrections (zip_code, fields_json, note, corrected_by) VALUES (?, ?, ?, ?)",
                (zip_code, json.dumps(fields, sort_keys=True), note, corrected_by),
            )
            conn.commit()
        finally:
            conn.close()
        logger.info(f"Corrections: recorded {sorted(fields)} for {zip_code} by {corrected_by}")
        return self.lookup(zip_code)

    def zip_codes(self) -> List[str]:
        zips = set(self._file_corrections)
        try:
            conn = sqlite3.connect(str(self._db_path))
            zips.update(r[0] for r in conn.execute("SELECT DISTINCT zip_code FROM zip_corrections"))
            conn.close()
        except sqlite3.Error as e:
            logger.warning(f"Corrections DB error: {e}")
        return sorted(zips)

    @property
    def loaded(self) -> bool:
        return bool(self.zip_codes())

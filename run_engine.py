#!/usr/bin/env python3
"""
CLI for the ZIP-to-Jurisdiction Resolution Engine.

Usage:
    python run_engine.py 95814
    python run_engine.py --batch zips.csv --output results.csv
    python run_engine.py --invalidate-state CA
    python run_engine.py --no-cache -v 95818-1234
"""

import argparse
import csv
import json
import logging
import sys
import time

from jurisdiction_engine.config import Config
from jurisdiction_engine.engine import ResolutionEngine
from jurisdiction_engine.exceptions import JurisdictionEngineError


def setup_logging(verbose: bool = False):
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def single_lookup(engine: ResolutionEngine, zip_code: str, use_cache: bool) -> int:
    """Resolve a single ZIP and print the JSON result. Returns the exit code."""
    try:
        result = engine.resolve(zip_code, use_cache=use_cache)
    except JurisdictionEngineError as e:
        print(json.dumps({"valid": False, "error": getattr(e, "code", "LOOKUP_FAILED"), "message": str(e)}, indent=2))
        return 2
    print(json.dumps(result.to_dict(), indent=2))
    return 0


def read_zip_codes(input_csv: str) -> list:
    """ZIP codes from the first zip-like column of a CSV (or the first column)."""
    zip_codes = []
    with open(input_csv, "r", newline="") as f:
        reader = csv.DictReader(f)
        zip_col = None
        for col in reader.fieldnames or []:
            if col.lower() in ("zip", "zip_code", "zipcode", "postal_code"):
                zip_col = col
                break
        if not zip_col:
            zip_col = (reader.fieldnames or ["zip"])[0]
        for row in reader:
            value = (row.get(zip_col) or "").strip()
            if value:
                zip_codes.append(value)
    return zip_codes


def batch_lookup(engine: ResolutionEngine, input_csv: str, output_csv: str, use_cache: bool):
    """Batch resolve from CSV file."""
    zip_codes = read_zip_codes(input_csv)
    print(f"Loaded {len(zip_codes)} ZIP codes from {input_csv}")
    results = engine.resolve_many(zip_codes, use_cache=use_cache)

    errors = 0
    with open(output_csv, "w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow([
            "input", "zip_code", "city", "county", "state", "jurisdiction_type",
            "is_incorporated", "congressional_district", "state_senate_district",
            "state_assembly_district", "multi_district", "jurisdiction_level",
            "source", "data_quality_score", "error",
        ])
        for raw, r in results:
            if isinstance(r, JurisdictionEngineError):
                errors += 1
                writer.writerow([raw] + [""] * 13 + [getattr(r, "code", type(r).__name__)])
                continue
            writer.writerow([
                raw, r.zip_code, r.city or "", r.county, r.state, r.jurisdiction_type.value,
                r.is_incorporated,
                r.congressional_district if r.congressional_district is not None else "",
                r.state_senate_district if r.state_senate_district is not None else "",
                r.state_assembly_district if r.state_assembly_district is not None else "",
                r.multi_district, r.jurisdiction_level.value,
                r.source.value, round(r.data_quality_score, 3), "",
            ])

    print(f"Wrote {len(results)} results to {output_csv} ({errors} errors)")


def main():
    parser = argparse.ArgumentParser(description="ZIP-to-Jurisdiction Resolution Engine")
    parser.add_argument("zip_code", nargs="?", help="ZIP code (or ZIP+4) to resolve")
    parser.add_argument("--batch", help="Input CSV file for batch processing")
    parser.add_argument("--output", default="results.csv", help="Output CSV for batch mode")
    parser.add_argument("--invalidate-state", metavar="STATE", help="Drop cached results for a state and exit")
    parser.add_argument("--no-cache", action="store_true", help="Disable cache")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")
    parser.add_argument("--geocoder", choices=["geocodio", "google", "chained"], default=None)
    parser.add_argument("--skip-boundaries", action="store_true", help="Don't load district shapefiles")

    args = parser.parse_args()
    setup_logging(args.verbose)

    if not args.zip_code and not args.batch and not args.invalidate_state:
        parser.print_help()
        sys.exit(1)

    overrides = {}
    if args.geocoder:
        overrides["geocoder_type"] = args.geocoder
    if args.skip_boundaries:
        overrides["load_boundaries"] = False
    config = Config.from_env(**overrides)

    t0 = time.time()
    engine = ResolutionEngine(config, use_cache=not args.no_cache or bool(args.invalidate_state))
    print(f"Engine ready in {time.time() - t0:.1f}s", file=sys.stderr)

    try:
        if args.invalidate_state:
            removed = engine.invalidate(state=args.invalidate_state)
            print(f"Invalidated {removed} cached results for {args.invalidate_state.upper()}")
        elif args.batch:
            batch_lookup(engine, args.batch, args.output, use_cache=not args.no_cache)
        else:
            sys.exit(single_lookup(engine, args.zip_code, use_cache=not args.no_cache))
    finally:
        engine.close()


if __name__ == "__main__":
    main()

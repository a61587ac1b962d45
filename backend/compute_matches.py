# backend/compute_matches.py
# Batch job: recompute POTENTIAL_MATCH edges (cross-industry Jaccard on material profiles).
#
#   python compute_matches.py [--threshold 0.12] [--dry-run] [--top 10]
#
# Exit codes: 0 ok (zero matches included), 1 config/connection/read/delete failure,
# 2 another run holds the lock.

from __future__ import annotations
import argparse
import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

from filelock import FileLock, Timeout

import config
from config import ConfigError
from engine import SHARED_NAMES_LIMIT, build_profiles, format_match, score_pairs, summarize
from graph_store import GraphStoreError, Neo4jGraphStore
from models import PotentialMatch

log = logging.getLogger("compute_matches")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_LOCKED = 2


# =========================
# Materializer
# =========================
@dataclass
class RunReport:
    found: int = 0
    deleted: int = 0
    written: int = 0
    skipped: int = 0
    verified_total: int = 0
    verified_average: float = 0.0
    dry_run: bool = False
    matches: List[PotentialMatch] = field(default_factory=list)


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def materialize(store, matches: Sequence[PotentialMatch], computed_at: str) -> Tuple[int, int, int]:
    """Wipe every POTENTIAL_MATCH edge, then write one edge per match.
    A failing pair is logged and skipped; a failing delete propagates."""
    deleted = store.delete_potential_matches()
    written = skipped = 0
    for m in matches:
        try:
            ok = store.create_potential_match(m, computed_at)
        except GraphStoreError as e:
            log.warning("write failed for %s -> %s: %s", m.source.id, m.target.id, e)
            skipped += 1
            continue
        if ok:
            written += 1
        else:
            log.warning("skipped %s -> %s: endpoint no longer exists", m.source.id, m.target.id)
            skipped += 1
    return deleted, written, skipped


def run(store, threshold: float, dry_run: bool = False,
        sample_size: int = SHARED_NAMES_LIMIT, now: Optional[str] = None) -> RunReport:
    """Read profiles, score, then (unless dry_run) wipe and rewrite matches and verify."""
    profiles, names = build_profiles(store.fetch_company_profiles())
    matches = score_pairs(profiles, names, threshold=threshold, sample_size=sample_size)
    report = RunReport(found=len(matches), dry_run=dry_run, matches=matches)
    log.debug("scored %d profiles, %d matches retained", len(profiles), len(matches))
    if dry_run:
        report.verified_total, report.verified_average = summarize(matches)
        return report

    report.deleted, report.written, report.skipped = materialize(store, matches, now or utcnow_iso())
    report.verified_total, report.verified_average = store.match_summary()
    return report


def print_report(report: RunReport, threshold: float, top: int, out=sys.stdout) -> None:
    print(f"Computing Jaccard similarity (threshold >= {threshold})...", file=out)
    print(f"  Found {report.found} potential partnerships.", file=out)
    if report.dry_run:
        print("  Dry run: graph left untouched.", file=out)
    else:
        print(f"  Removed {report.deleted} old matches.", file=out)
        print(f"  Wrote {report.written} matches ({report.skipped} skipped).", file=out)
    if report.matches and top > 0:
        print(f"  Top {min(top, len(report.matches))} matches:", file=out)
        for m in report.matches[:top]:
            print(f"    {format_match(m)}", file=out)
    label = "matches scored" if report.dry_run else "POTENTIAL_MATCH edges in graph"
    print(f"  {report.verified_total} {label} (avg score: {report.verified_average:.3f})", file=out)


# =========================
# Entry point
# =========================
def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Recompute cross-industry POTENTIAL_MATCH edges.")
    parser.add_argument("--threshold", type=float, default=None,
                        help="minimum Jaccard similarity (default: MATCH_THRESHOLD or 0.12)")
    parser.add_argument("--dry-run", action="store_true", help="score and report without writing")
    parser.add_argument("--top", type=int, default=10, help="number of top matches to print")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None, store_factory=None) -> int:
    args = _parse_args(argv)
    config.load_env()
    logging.basicConfig(level=config.log_level(), format="%(levelname)s %(name)s: %(message)s")

    try:
        threshold = args.threshold if args.threshold is not None else config.match_threshold()
        if not 0.0 < threshold <= 1.0:
            raise ConfigError(f"threshold must be in (0, 1], got {threshold}")
        if store_factory is None:
            settings = config.neo4j_settings()
            print(f"Connecting to Neo4j at {settings.uri}...")
            store_factory = lambda: Neo4jGraphStore.connect(settings)
    except ConfigError as e:
        log.error("%s", e)
        return EXIT_FAILURE

    try:
        # OS-level lock: released by the kernel if the process dies
        with FileLock(config.lock_path(), timeout=0):
            with store_factory() as store:
                store.verify_connectivity()
                print("  Connected.")
                report = run(store, threshold, dry_run=args.dry_run)
    except Timeout as e:
        log.error("compute_matches already running (lock %s)", e.lock_file)
        return EXIT_LOCKED
    except GraphStoreError as e:
        log.exception("compute_matches failed: %s", e)
        return EXIT_FAILURE

    print_report(report, threshold, args.top)
    print("=== Link prediction complete ===")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
# filter_lichess_games.py
#
# Extract per-game header fields and the last engine evaluation from monthly Lichess PGN dumps.
#
# Output: one CSV row per game that reached an [%eval ...] line, columns in LICHESS_TAGS order:
#   Event,White,Black,WhiteElo,BlackElo,TimeControl,Result,Site,Termination,Eval
#
# Notes:
# - Game boundaries come only from the [%eval line; a game without one does not close, and its
#   headers stay in the record until the next game overwrites them.
# - Inputs may be plain .pgn or .pgn.zst; '-' reads stdin.
# - A missing/unreadable input is reported and skipped; other months still run (exit status 1 at the end).

from __future__ import annotations

import argparse
import csv
import io
import re
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence, TextIO, Tuple

import zstandard as zstd

from pgn_fields import (
    LICHESS_TAGS,
    LICHESS_TAGS_WITH_CLOCK,
    GameAssembler,
    Record,
    TagSpec,
    format_row,
    header_row,
)


# ----------------------------
# Constants
# ----------------------------

FIRST_MONTH = "2019-01"
LAST_MONTH = "2021-03"

IN_NAME_TEMPLATE = "lichess_db_standard_rated_{month}.pgn"
OUT_NAME_TEMPLATE = "filtering_results_{month}.csv"

MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")


# ----------------------------
# Months / paths
# ----------------------------

def _parse_month(month: str) -> Tuple[int, int]:
    m = MONTH_RE.match(month)
    if not m or not (1 <= int(m.group(2)) <= 12):
        raise ValueError(f"Invalid month (expected YYYY-MM): {month!r}")
    return int(m.group(1)), int(m.group(2))


def month_range(first: str, last: str) -> List[str]:
    """Inclusive list of YYYY-MM labels from `first` to `last`."""
    y, m = _parse_month(first)
    end = _parse_month(last)
    if (y, m) > end:
        raise ValueError(f"Month range is empty: {first} > {last}")
    months: List[str] = []
    while (y, m) <= end:
        months.append(f"{y:04d}-{m:02d}")
        m += 1
        if m > 12:
            y += 1
            m = 1
    return months


DEFAULT_MONTHS: List[str] = month_range(FIRST_MONTH, LAST_MONTH)


def in_path_for(month: str, in_dir: Path) -> Path:
    plain = in_dir / IN_NAME_TEMPLATE.format(month=month)
    compressed = plain.with_name(plain.name + ".zst")
    if not plain.exists() and compressed.exists():
        return compressed
    return plain


def out_path_for(month: str, out_dir: Path) -> Path:
    return out_dir / OUT_NAME_TEMPLATE.format(month=month)


# ----------------------------
# Input streams
# ----------------------------

def open_pgn_text(path: str | Path) -> TextIO:
    """Open a PGN source as text: '-' is stdin, '*.zst' is decompressed while reading."""
    if str(path) == "-":
        return sys.stdin

    path = Path(path)
    if path.suffix == ".zst":
        fh = open(path, "rb")
        reader = zstd.ZstdDecompressor().stream_reader(fh, closefd=True)
        return io.TextIOWrapper(reader, encoding="utf-8", errors="replace", newline="\n")

    return open(path, "r", encoding="utf-8", errors="replace", newline="\n")


# ----------------------------
# Extraction / output
# ----------------------------

@dataclass
class StreamStats:
    lines: int = 0
    games: int = 0


def fmt_int(n: int) -> str:
    return f"{n:,}".replace(",", " ")


def iter_stream_records(
    src: Iterable[str],
    tags: Sequence[TagSpec],
    stats: StreamStats,
    label: str = "",
    log_every: float = 60.0,
) -> Iterator[Record]:
    assembler = GameAssembler(tags)
    t0 = time.time()
    last_log = t0

    for line in src:
        stats.lines += 1
        record = assembler.feed(line.rstrip("\r\n"))
        if record is not None:
            stats.games += 1
            yield record

        if log_every > 0 and stats.lines % 10000 == 0:
            now = time.time()
            if (now - last_log) >= log_every:
                print(
                    f"progress: {label} elapsed={(now - t0) / 60:.1f}m "
                    f"lines={fmt_int(stats.lines)} games={fmt_int(stats.games)}",
                    file=sys.stderr,
                    flush=True,
                )
                last_log = now


def _write_rows(dst: TextIO, records: Iterable[Record], tags: Sequence[TagSpec], write_header: bool) -> None:
    writer = csv.writer(dst, lineterminator="\n")
    if write_header:
        writer.writerow(header_row(tags))
    for record in records:
        writer.writerow(format_row(record, tags))


def write_records(
    records: Iterable[Record],
    out: str | Path,
    tags: Sequence[TagSpec] = LICHESS_TAGS,
    write_header: bool = False,
) -> None:
    """Write records as CSV rows; a file target is written to .tmp then moved into place."""
    if str(out) == "-":
        _write_rows(sys.stdout, records, tags, write_header)
        sys.stdout.flush()
        return

    out_path = Path(out)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    tmp = out_path.with_suffix(out_path.suffix + ".tmp")
    try:
        with open(tmp, "w", encoding="utf-8", newline="") as dst:
            _write_rows(dst, records, tags, write_header)
    except Exception:
        tmp.unlink(missing_ok=True)
        raise
    tmp.replace(out_path)


def process_stream(
    src: Iterable[str],
    out: str | Path,
    tags: Sequence[TagSpec] = LICHESS_TAGS,
    label: str = "",
    write_header: bool = False,
    log_every: float = 60.0,
) -> StreamStats:
    stats = StreamStats()
    records = iter_stream_records(src, tags, stats, label=label, log_every=log_every)
    write_records(records, out, tags, write_header=write_header)
    print(
        f"done: {label} out={out} lines={fmt_int(stats.lines)} games={fmt_int(stats.games)}",
        file=sys.stderr,
        flush=True,
    )
    return stats


def run_file(
    in_path: str | Path,
    out: str | Path,
    tags: Sequence[TagSpec] = LICHESS_TAGS,
    label: str = "",
    write_header: bool = False,
    log_every: float = 60.0,
) -> Optional[StreamStats]:
    """Process one input file; returns None (after logging) if the input cannot be opened."""
    try:
        src = open_pgn_text(in_path)
    except FileNotFoundError:
        print(f"ERROR: input not found: {in_path}", file=sys.stderr, flush=True)
        return None
    except OSError as e:
        print(f"ERROR: cannot open {in_path}: {e}", file=sys.stderr, flush=True)
        return None

    try:
        return process_stream(src, out, tags, label=label or str(in_path),
                              write_header=write_header, log_every=log_every)
    finally:
        if src is not sys.stdin:
            src.close()


# ----------------------------
# CLI
# ----------------------------

def _month_arg(value: str) -> str:
    try:
        _parse_month(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e
    return value


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(
        description="Extract header fields and the last [%eval] of each Lichess game into CSV."
    )
    ap.add_argument("--pgn", default=None, help="Single input PGN (.pgn or .pgn.zst), '-' for stdin.")
    ap.add_argument("--out", default="-", help="Output CSV for --pgn mode, '-' for stdout.")

    ap.add_argument("--months", nargs="+", type=_month_arg, default=None,
                    help=f"Months to process (YYYY-MM). Default: {FIRST_MONTH}..{LAST_MONTH}.")
    ap.add_argument("--from", dest="month_from", type=_month_arg, default=None, help="First month (inclusive).")
    ap.add_argument("--to", dest="month_to", type=_month_arg, default=None, help="Last month (inclusive).")
    ap.add_argument("--in-dir", type=Path, default=Path("."), help="Directory holding the monthly dumps.")
    ap.add_argument("--out-dir", type=Path, default=Path("."), help="Directory for the monthly CSVs.")

    ap.add_argument("--with-clock", action="store_true", help="Append the last [%%clk] reading as a Clock column.")
    ap.add_argument("--write-header", action="store_true", help="Write a column-name row first.")
    ap.add_argument("--log-every", type=float, default=60.0, help="Seconds between progress logs; 0 disables.")

    args = ap.parse_args(argv)

    if args.pgn is not None and (args.months or args.month_from or args.month_to):
        ap.error("--pgn cannot be combined with --months/--from/--to")
    if args.months and (args.month_from or args.month_to):
        ap.error("--months cannot be combined with --from/--to")
    if args.month_from or args.month_to:
        try:
            args.months = month_range(args.month_from or FIRST_MONTH, args.month_to or LAST_MONTH)
        except ValueError as e:
            ap.error(str(e))
    return args


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    tags = LICHESS_TAGS_WITH_CLOCK if args.with_clock else LICHESS_TAGS

    if args.pgn is not None:
        stats = run_file(args.pgn, args.out, tags, write_header=args.write_header, log_every=args.log_every)
        return 0 if stats is not None else 1

    months = args.months or DEFAULT_MONTHS
    failed: List[str] = []
    total_games = 0

    for month in months:
        stats = run_file(
            in_path_for(month, args.in_dir),
            out_path_for(month, args.out_dir),
            tags,
            label=month,
            write_header=args.write_header,
            log_every=args.log_every,
        )
        if stats is None:
            failed.append(month)
            continue
        total_games += stats.games

    print(
        f"done: months={len(months)} failed={len(failed)} games={fmt_int(total_games)}",
        file=sys.stderr,
        flush=True,
    )
    if failed:
        print(f"ERROR: failed months: {' '.join(failed)}", file=sys.stderr, flush=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

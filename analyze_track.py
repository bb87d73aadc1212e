"""
Command-line chord tool: print the estimated key and chord timeline of a file.

    python analyze_track.py song.mp3 [--max-seconds 60] [--key "A minor"] [-v]
"""

import argparse
import asyncio
from dataclasses import replace
import logging
import sys

from analysis import analyze_file
from chords import parse_key, use_flats_for_key
from utils import AnalysisSettings, analysis_settings


def format_time(t: float) -> str:
    m, s = divmod(max(0.0, float(t)), 60.0)
    return f"{int(m)}:{s:04.1f}"


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Estimate key and chords of an audio file.")
    ap.add_argument("path", help="audio file (wav/flac/mp3/m4a/...)")
    ap.add_argument("--max-seconds", type=float, default=None,
                    help="analyse only the first N seconds")
    ap.add_argument("--live-key", action="store_true",
                    help="use the quick key-only preset (first 30 s)")
    ap.add_argument("--key", default=None,
                    help="label chords against this key instead of the estimated one")
    ap.add_argument("--flats", action="store_true",
                    help="spell chord roots with flats where the key prefers them")
    ap.add_argument("-v", "--verbose", action="store_true")
    return ap


def main(argv=None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(levelname)s %(name)s: %(message)s")

    if args.live_key:
        settings = AnalysisSettings.live_key()
    else:
        settings = analysis_settings()
    if args.max_seconds is not None:
        try:
            settings = replace(settings, max_seconds=args.max_seconds)
        except ValueError as e:
            ap.error(str(e))

    key_hint = None
    if args.key:
        try:
            key_hint = parse_key(args.key)
        except ValueError as e:
            ap.error(str(e))

    def progress(pct: int):
        if args.verbose:
            print(f"\ranalysing… {pct:3d}%", end="", file=sys.stderr, flush=True)

    result = asyncio.run(analyze_file(args.path, settings, key_hint, progress))
    if args.verbose:
        print(file=sys.stderr)

    print(f"Key: {result.key.label}")
    if result.error:
        print(f"(analysis failed: {result.error})", file=sys.stderr)
        return 0
    label_key = key_hint if key_hint is not None and key_hint.known else result.key
    use_flats = args.flats and label_key.known and use_flats_for_key(label_key.root, label_key.mode)
    for ev in result.chords:
        print(f"{format_time(ev.time)}  {ev.display_name(use_flats)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())

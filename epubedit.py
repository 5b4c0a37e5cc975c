#!/usr/bin/env python3
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from folio.book import Epub, ProcessOptions, process_epub
from folio.env import log_level
from folio.errors import FolioError


def setup_logging() -> logging.Logger:
    logger = logging.getLogger("folio")
    logger.setLevel(log_level())
    if not logger.handlers:
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        logger.addHandler(console)
    return logger


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Edit an EPUB in place: replace text, drop chapters, import chapters with their images."
    )
    parser.add_argument("input", help="Input EPUB file path")
    parser.add_argument("-o", "--output", help="Output EPUB file path")
    parser.add_argument("--find", help="List chapters containing this text and exit")
    parser.add_argument(
        "--replace",
        nargs=2,
        action="append",
        default=[],
        metavar=("OLD", "NEW"),
        help="Replace OLD with NEW in every chapter (repeatable)",
    )
    parser.add_argument(
        "--remove-keyword",
        action="append",
        default=[],
        metavar="KEYWORD",
        help="Remove chapters containing KEYWORD (repeatable, case-sensitive)",
    )
    parser.add_argument(
        "--add-chapter",
        nargs=2,
        action="append",
        default=[],
        metavar=("ZIP_PATH", "HTML_FILE"),
        help="Import a local HTML file and its images as a new chapter (repeatable)",
    )
    parser.add_argument(
        "--spine-index",
        type=int,
        default=-1,
        help="Spine position for added chapters (-1 appends)",
    )
    return parser.parse_args(argv)


def main(argv: list[str]) -> int:
    args = parse_args(argv)
    setup_logging()
    input_path = Path(args.input)
    if not input_path.exists():
        print(f"Input file not found: {input_path}", file=sys.stderr)
        return 1

    try:
        if args.find:
            for name in Epub.open(input_path).find_html_by_text(args.find):
                print(name)
            return 0

        output_path = Path(args.output) if args.output else input_path.with_suffix(".edited.epub")

        def customize(epub: Epub) -> None:
            for old, new in args.replace:
                count = epub.replace_all_html(old, new)
                print(f"Replaced {count} occurrence(s) of {old!r}")
            spine_index = args.spine_index
            for zip_path, html_file in args.add_chapter:
                item_id = epub.add_chapter_from_file(zip_path, html_file, spine_index)
                print(f"Added chapter {zip_path} ({item_id})")
                if spine_index >= 0:
                    spine_index += 1

        report = process_epub(
            ProcessOptions(
                input_path=input_path,
                output_path=output_path,
                remove_html_keywords=list(args.remove_keyword),
                customize=customize,
            )
        )
    except (FolioError, OSError) as exc:
        print(f"Failed to edit {input_path}: {exc}", file=sys.stderr)
        return 1

    for name in report.removed:
        print(f"Removed chapter {name}")
    print(f"EPUB saved to: {output_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))

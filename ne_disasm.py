#!/usr/bin/env python3
"""Command-line interface for the NE (16-bit Windows / BBS module) disassembler."""

from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path
from typing import Optional, Sequence

from nedisasm import Analyzer, Disassembler, KnowledgeBase, ListingRenderer, NEFile


logger = logging.getLogger("ne_disasm")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("input", type=Path, help="NE executable or DLL to disassemble")
    parser.add_argument(
        "-o",
        "--output",
        type=Path,
        default=None,
        help="Write the listing to this file instead of stdout",
    )
    parser.add_argument(
        "--minimal",
        action="store_true",
        help="Only decode instructions; skip relocation, string and branch resolution",
    )
    parser.add_argument(
        "--analysis",
        action="store_true",
        help="Run the knowledge base, subroutine, loop and global variable passes",
    )
    parser.add_argument(
        "--strings",
        action="store_true",
        help="Append the strings found in DATA segments to the listing",
    )
    parser.add_argument(
        "--segment",
        type=int,
        action="append",
        dest="segments",
        help="Restrict the listing to the selected code segment ordinals",
    )
    parser.add_argument(
        "--knowledge-base",
        type=Path,
        default=Path("knowledge"),
        help="Directory of *_def.json module definitions (or a single file)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s\t%(message)s",
        datefmt="%Y-%m-%d\t%H:%M:%S",
        stream=sys.stderr,
    )


def run(args: argparse.Namespace) -> ListingRenderer:
    if not args.input.exists():
        raise SystemExit(f"missing input file: {args.input}")

    analysis = args.analysis
    if args.minimal and analysis:
        logger.warning("--analysis requires reference resolution and is ignored with --minimal")
        analysis = False

    logger.info("Inspecting file: %s", args.input)
    ne_file = NEFile.load(args.input)
    Disassembler().disassemble(ne_file, minimal=args.minimal)

    if analysis:
        knowledge = KnowledgeBase.load(args.knowledge_base)
        report = Analyzer(knowledge).analyse(ne_file)
        logger.info(
            "analysis: %d imported calls resolved, %d subroutines, %d global variables",
            report.resolved_imports,
            report.subroutines,
            len(report.global_variables),
        )

    return ListingRenderer(ne_file)


def main(argv: Optional[Sequence[str]] = None) -> None:
    start_time = time.perf_counter()
    args = parse_args(argv)
    configure_logging(args.verbose)

    include_strings = args.strings and not args.minimal
    segments = tuple(args.segments or ())

    try:
        renderer = run(args)
        if args.output is None:
            sys.stdout.write(renderer.generate_listing(include_strings=include_strings, segments=segments))
        else:
            renderer.write_listing(args.output, include_strings=include_strings, segments=segments)
            print(f"listing written to {args.output}")
    except (ValueError, OSError) as exc:
        raise SystemExit(f"error: {exc}") from exc

    total_time = time.perf_counter() - start_time
    logger.info("total execution time: %.2fs", total_time)


if __name__ == "__main__":
    main()

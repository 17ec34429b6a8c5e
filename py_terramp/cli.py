"""Command line entry point for batch terrain amplification."""

import logging
import sys
from typing import List, Optional

import structlog

from .config import settings
from .core.amplification import amplify_terrain
from .core.dictionary import DictionaryError, load_dictionaries
from .io.grid_io import read_height_grid, read_selection_grid, write_height_grid

logger = structlog.get_logger()


def configure_logging(level: Optional[str] = None, log_format: Optional[str] = None) -> None:
    """Route structlog through stdlib logging with a JSON or console renderer."""
    level = (level or settings.log_level).upper()
    log_format = log_format or settings.log_format
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level)

    renderer = (
        structlog.processors.JSONRenderer()
        if log_format == "json"
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def run(
    input_path: str,
    hints_path: str,
    output_path: str,
    factor: int,
    dictionary_paths: List[str],
    workers: Optional[int] = None,
) -> None:
    """Amplify one terrain image and write the result."""
    dictionary_set = load_dictionaries(factor, dictionary_paths)
    terrain = read_height_grid(input_path)
    hints = read_selection_grid(hints_path)

    result = amplify_terrain(terrain, hints, factor, dictionary_set, workers)

    write_height_grid(
        output_path,
        result.grid,
        offset=result.offset,
        scale=result.scale,
        rows=result.rows,
        columns=result.columns,
        padding=result.padding,
    )


def main(argv: Optional[List[str]] = None) -> int:
    import argparse

    parser = argparse.ArgumentParser(
        description="Amplify a low-resolution terrain heightmap with trained dictionaries"
    )
    parser.add_argument("input", help="16-bit grayscale input heightmap")
    parser.add_argument("hints", help="8-bit per-pixel dictionary selection image")
    parser.add_argument("output", help="Output 16-bit heightmap")
    parser.add_argument("factor", type=int, help="Upsample factor (2, 4 or 8)")
    parser.add_argument("dictionaries", nargs="+", help="Dictionary files, in selection index order")
    parser.add_argument("--workers", type=int, default=None, help="Thread pool size")
    parser.add_argument("--log-level", default=None, help="Logging level")

    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    try:
        run(args.input, args.hints, args.output, args.factor, args.dictionaries, args.workers)
    except DictionaryError as e:
        logger.error("Amplification aborted", error=str(e))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

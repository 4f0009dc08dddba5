"""
Command-line entry point.

Usage:
    landchange-run --config configs/config.yaml
    landchange-run --config configs/config.yaml --output outputs/run1 --workers 8
"""

import argparse
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

from .config import load_config
from .errors import ConfigError
from .pipeline import LandCoverChangePipeline


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description='Land cover classification and change detection between two periods'
    )
    parser.add_argument('--config', type=str, required=True, help='Path to config file')
    parser.add_argument('--output', type=str, help='Override export root directory')
    parser.add_argument('--workers', type=int, help='Override number of tile workers')
    parser.add_argument('--quiet', action='store_true', help='Hide progress bars')
    parser.add_argument('--verbose', action='store_true', help='Debug logging')
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )
    logger = logging.getLogger('landchange')

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        logger.error(str(exc))
        return 2

    tiling = config.tiling
    if args.workers:
        tiling = replace(tiling, workers=args.workers)
    if args.quiet:
        tiling = replace(tiling, progress=False)
    config = replace(config, tiling=tiling)
    if args.output:
        config = replace(config, export=replace(config.export, root=Path(args.output)))

    try:
        result = LandCoverChangePipeline(config).run()
    except OSError as exc:
        logger.error(f"Cannot read reference data: {exc}")
        return 1

    if result.report_text:
        print(result.report_text)
    for name, period in result.periods.items():
        if period.error is not None:
            logger.error(f"Period {name} failed: {period.error}")
    logger.info(f"Exported {len(result.exported)} artifacts, {len(result.export_errors)} failed")

    return 0 if result.succeeded else 1


if __name__ == '__main__':
    sys.exit(main())

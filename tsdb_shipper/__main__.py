"""
tsdb-shipper CLI entry point.
"""

import asyncio
import sys
import argparse
import logging
from pathlib import Path

from tsdb_shipper.config import ShipperConfig
from tsdb_shipper.logging_config import setup_from_config
from tsdb_shipper.service import ShipperService
from tsdb_shipper.storage.fifo_file import dump_file, file_index, is_compressed_file


def setup_logging(config: ShipperConfig, verbose: bool = False) -> None:
    """Setup logging from the configuration's logging section."""
    logging_config = config.logging
    if verbose:
        logging_config = logging_config.model_copy(update={"console_level": "DEBUG"})

    try:
        setup_from_config(logging_config)
    except PermissionError:
        # Fall back to basic logging if file logging fails
        logging.basicConfig(
            level=getattr(logging, logging_config.console_level),
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            handlers=[logging.StreamHandler(sys.stdout)],
        )


def dump_offline(config: ShipperConfig, verbose: bool = False) -> int:
    """Print the offline files of the configured storage directory."""
    directory = config.offline.storage_dir
    if not directory.is_dir():
        print(f"No offline directory at {directory}")
        return 0
    files = sorted(
        (p for p in directory.iterdir() if file_index(p) is not None),
        key=lambda p: file_index(p) or 0,
    )
    if not files:
        print(f"No offline files in {directory}")
        return 0
    for path in files:
        if verbose:
            dump_file(path, sys.stdout)
        else:
            listing = dump_file(path).splitlines()[0]
            gz = "gzip" if is_compressed_file(path) else "raw"
            print(f"{listing} ({gz})")
    return 0


def main() -> int:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="tsdb-shipper - Durable metric shipping to an OpenTSDB-style endpoint"
    )

    parser.add_argument(
        "--config",
        "-c",
        type=str,
        default="/etc/tsdb-shipper/config.yml",
        help="Path to configuration file",
    )

    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    parser.add_argument(
        "--generate-config",
        action="store_true",
        help="Generate default configuration file and exit",
    )

    parser.add_argument(
        "--validate-config", action="store_true", help="Validate configuration file and exit"
    )

    parser.add_argument(
        "--dump-offline",
        action="store_true",
        help="List offline files (with entries when verbose) and exit",
    )

    args = parser.parse_args()

    # Handle config generation
    if args.generate_config:
        config = ShipperConfig()
        config.save(args.config)
        print(f"Generated default configuration at: {args.config}")
        return 0

    # Handle config validation
    if args.validate_config:
        try:
            config = ShipperConfig.from_file(args.config)
            print(f"Configuration valid: {args.config}")
            return 0
        except Exception as e:
            print(f"Configuration invalid: {e}")
            return 1

    try:
        config = ShipperConfig.from_file(args.config)
    except Exception as e:
        print(f"Error loading configuration {args.config}: {e}", file=sys.stderr)
        return 1

    if args.dump_offline:
        return dump_offline(config, args.verbose)

    setup_logging(config, args.verbose)
    logger = logging.getLogger(__name__)

    # Run the shipper
    try:
        logger.info(f"Configuration loaded from {Path(args.config)}")
        service = ShipperService(config)
        asyncio.run(service.run())

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        # Print to stderr for systemd journal
        print(f"Error running tsdb-shipper: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())

"""Command-line entry point: ``proxsave``."""

import argparse
import json
import sys
from pathlib import Path

from proxsave.__version__ import __version__
from proxsave.config.settings import CONFIG_PATH, EngineConfig, load_config
from proxsave.context import RunContext
from proxsave.exceptions import ConfigurationError, OperationCancelledError, ProxsaveError
from proxsave.logging import LoggerFactory, setup_logging
from proxsave.orchestrator import Orchestrator

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_CANCELLED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="proxsave",
        description="Snapshot the configuration of a Proxmox VE or Backup Server host",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-c", "--config", type=Path, default=None, help=f"Config file (default: {CONFIG_PATH})")
    parser.add_argument("-o", "--output-dir", help="Directory for the finished archive")
    parser.add_argument("--compression", help="gzip, pigz, bzip2, xz, lzma, zstd or none")
    parser.add_argument("--compression-level", type=int, help="Compression level (1-22, per algorithm)")
    parser.add_argument("--compression-mode", choices=["fast", "standard", "maximum", "ultra"])
    parser.add_argument("--compression-threads", type=int, help="Compressor threads (0 = auto)")
    parser.add_argument("--encrypt", action="store_true", help="Encrypt the archive with age")
    parser.add_argument(
        "--recipient",
        action="append",
        default=[],
        metavar="KEY",
        help="age recipient public key (repeatable, implies --encrypt)",
    )
    parser.add_argument("-n", "--dry-run", action="store_true", help="Collect without running commands or archiving")
    parser.add_argument("--keep-staging", action="store_true", help="Keep the staging directory if the backup fails")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Enable trace output (very verbose)")
    parser.add_argument("--log-dir", type=Path, help="Directory for log files")
    parser.add_argument("--json", action="store_true", help="Print the run summary as JSON")
    return parser


def apply_cli_overrides(config: EngineConfig, args: argparse.Namespace) -> EngineConfig:
    tuning = config.tuning
    if args.output_dir:
        config.paths.output_dir = args.output_dir
    if args.compression:
        tuning.compression = args.compression
    if args.compression_level is not None:
        tuning.compression_level = args.compression_level
    if args.compression_mode:
        tuning.compression_mode = args.compression_mode
    if args.compression_threads is not None:
        tuning.compression_threads = args.compression_threads
    if args.recipient:
        config.encryption.recipients = list(args.recipient)
        config.encryption.enabled = True
    elif args.encrypt:
        config.encryption.enabled = True
    if args.dry_run:
        config.dry_run = True
    if args.keep_staging:
        config.keep_staging_on_failure = True
    return config


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    log_dir = args.log_dir
    setup_logging(debug=args.debug, trace=args.trace, log_dir=log_dir)
    log = LoggerFactory.for_system()
    log.debug(f"proxsave {__version__} starting")

    try:
        config = apply_cli_overrides(load_config(args.config), args)
        if log_dir is None and config.paths.log_dir:
            setup_logging(debug=args.debug, trace=args.trace, log_dir=Path(config.paths.log_dir))
        config.validate()
    except ConfigurationError as error:
        log.error(str(error))
        return EXIT_CONFIG

    ctx = RunContext.background()
    try:
        result = Orchestrator(config, ctx=ctx).run()
    except ConfigurationError as error:
        log.error(str(error))
        return EXIT_CONFIG
    except KeyboardInterrupt:
        ctx.cancel()
        log.warning("Backup interrupted")
        return EXIT_CANCELLED
    except OperationCancelledError as error:
        log.warning(f"Backup cancelled: {error}")
        return EXIT_CANCELLED
    except (ProxsaveError, OSError) as error:
        log.error(f"Backup failed: {error}")
        return EXIT_FAILURE

    if args.json:
        print(json.dumps(result.summary(), indent=2, sort_keys=True))
    elif result.archive_path is not None:
        log.success(f"Backup written to {result.archive_path}")
    if result.collector_errors:
        for name, error in sorted(result.collector_errors.items()):
            log.warning(f"{name}: {error}")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())

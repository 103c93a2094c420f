#!/usr/bin/env python3
"""Command line entry points for tiered retrieval."""

from __future__ import annotations

import argparse
import json
import logging
from collections.abc import Callable
from pathlib import Path

from retrieval_core.archive_codec import GZIP_SUFFIX, ArchiveCodec
from retrieval_core.config import load_settings
from retrieval_core.exceptions import ConfigurationError, ConfigValidationError, YamlParseError
from retrieval_core.logging_config import add_logging_args, configure_logging
from retrieval_core.params import JobParams
from retrieval_core.session import RetrievalSession
from retrieval_core.sidecar import create_sidecar_file, validate_file_vs_sidecar

logger = logging.getLogger(__name__)

COMMAND_RESOLVE = "resolve"
COMMAND_VERIFY_ZIP = "verify-zip"
COMMAND_CREATE_SIDECAR = "create-sidecar"
COMMAND_VALIDATE_SIDECAR = "validate-sidecar"
COMMAND_GUNZIP = "gunzip"

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Tiered retrieval of job input files.")
    add_logging_args(parser)
    sub = parser.add_subparsers(dest="command")

    resolve = sub.add_parser(COMMAND_RESOLVE, help="Find the directory holding a job's file.")
    resolve.add_argument("--settings", required=True, type=Path, help="Retrieval settings YAML.")
    resolve.add_argument("--job-params", required=True, type=Path, help="Job parameters YAML.")
    resolve.add_argument("--file-pattern", default="", help="File name or wildcard to look for.")
    resolve.add_argument("--folder-pattern", default="", help="Subfolder name or wildcard to look for.")
    resolve.add_argument(
        "--data-file",
        action="store_true",
        help="Search job result folders instead of the dataset directory.",
    )
    resolve.add_argument("--max-attempts", type=int, default=3, help="Attempts per candidate (default: 3).")

    verify = sub.add_parser(COMMAND_VERIFY_ZIP, help="Check a .zip (or .gz) file's integrity.")
    verify.add_argument("path", type=Path)
    verify.add_argument(
        "--crc-threshold",
        type=int,
        default=None,
        help="Skip the CRC pass for zip files larger than this many bytes.",
    )
    verify.add_argument("--json", action="store_true", help="Print the check result as JSON.")

    create = sub.add_parser(COMMAND_CREATE_SIDECAR, help="Write a .hashcheck file for a data file.")
    create.add_argument("path", type=Path)
    create.add_argument("--hash-type", default="md5", choices=["md5", "sha256"])
    create.add_argument("--no-hash", action="store_true", help="Record size and date only.")

    validate = sub.add_parser(COMMAND_VALIDATE_SIDECAR, help="Check a data file against its .hashcheck file.")
    validate.add_argument("path", type=Path)
    validate.add_argument("--sidecar", type=Path, default=None)
    validate.add_argument("--compute-hash", action="store_true")
    validate.add_argument("--ignore-date", action="store_true")

    gunzip = sub.add_parser(COMMAND_GUNZIP, help="Decompress a .gz file.")
    gunzip.add_argument("path", type=Path)
    gunzip.add_argument("--target-dir", type=Path, default=None)

    return parser.parse_args(argv)


def _run_resolve(args: argparse.Namespace) -> int:
    settings = load_settings(args.settings)
    params = JobParams.from_yaml(args.job_params)
    session = RetrievalSession.from_settings(settings, params)
    with session.log_context():
        if args.data_file:
            if not args.file_pattern:
                raise ConfigurationError("--data-file requires --file-pattern")
            result = session.resolver.find_data_file(args.file_pattern)
        else:
            result = session.resolver.find_valid_directory(
                file_pattern=args.file_pattern,
                folder_pattern=args.folder_pattern,
                max_attempts=args.max_attempts,
            )
    if not result.found:
        logger.error("Not found: %s", result.reason or result.path)
        return EXIT_FAILURE
    print(result.path)
    return EXIT_OK


def _run_verify_zip(args: argparse.Namespace) -> int:
    codec = ArchiveCodec()
    if args.path.suffix.lower() == GZIP_SUFFIX:
        result = codec.verify_gzip_file(args.path)
    else:
        result = codec.verify_zip_file(args.path, args.crc_threshold)
    if args.json:
        print(json.dumps({"path": str(args.path), **result.to_dict()}, sort_keys=True))
    if not result:
        logger.error("%s", result.message)
        return EXIT_FAILURE
    if not args.json:
        print(f"OK: {args.path}")
    return EXIT_OK


def _run_create_sidecar(args: argparse.Namespace) -> int:
    sidecar = create_sidecar_file(args.path, compute_hash=not args.no_hash, hash_type=args.hash_type)
    if sidecar is None:
        return EXIT_FAILURE
    print(sidecar)
    return EXIT_OK


def _run_validate_sidecar(args: argparse.Namespace) -> int:
    valid, message = validate_file_vs_sidecar(
        args.path,
        args.sidecar,
        check_date=not args.ignore_date,
        compute_hash=args.compute_hash,
    )
    if not valid:
        logger.error("%s", message)
        return EXIT_FAILURE
    print(f"OK: {args.path}")
    return EXIT_OK


def _run_gunzip(args: argparse.Namespace) -> int:
    result = ArchiveCodec().gunzip_file(args.path, args.target_dir)
    if not result:
        logger.error("%s", result.message)
        return EXIT_FAILURE
    for entry in result.value or []:
        print(entry.path)
    return EXIT_OK


_COMMANDS: dict[str, Callable[[argparse.Namespace], int]] = {
    COMMAND_RESOLVE: _run_resolve,
    COMMAND_VERIFY_ZIP: _run_verify_zip,
    COMMAND_CREATE_SIDECAR: _run_create_sidecar,
    COMMAND_VALIDATE_SIDECAR: _run_validate_sidecar,
    COMMAND_GUNZIP: _run_gunzip,
}


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    configure_logging(level=args.log_level, fmt=args.log_format)

    handler = _COMMANDS.get(args.command or "")
    if handler is None:
        logger.error("No command given; choose one of: %s", ", ".join(_COMMANDS))
        return EXIT_CONFIG_ERROR

    try:
        return handler(args)
    except (ConfigurationError, ConfigValidationError, YamlParseError) as exc:
        logger.error("%s", exc.message, extra=exc.as_log_fields())
        return EXIT_CONFIG_ERROR
    except FileNotFoundError as exc:
        logger.error("%s", exc)
        return EXIT_CONFIG_ERROR


if __name__ == "__main__":
    raise SystemExit(main())

"""omnistore CLI - object storage operations from the command line.

Usage:
    omnistore --config storage.yaml upload <local_path> <storage_path> [--content-type TYPE]
    omnistore --config storage.yaml download <storage_path> <local_path>
    omnistore --config storage.yaml list [<prefix>]
    omnistore --config storage.yaml delete <storage_path> [<storage_path> ...]
    omnistore --config storage.yaml presign <storage_path> [--expires SECONDS]

Every command prints one JSON document on stdout. Logs go to stderr.

Exit codes:
    0: Success
    1: Storage operation failed / Internal error
    2: Usage or configuration error
"""

from __future__ import annotations

import argparse
import json
import logging
import mimetypes
import sys
from datetime import timedelta
from typing import Any

from omnistore.errors import ConfigurationError, ObjectStorageError
from omnistore.factory import create_storage
from omnistore.loader import load_storage_config
from omnistore.object_store import Storage

DEFAULT_CONTENT_TYPE = "application/octet-stream"
DEFAULT_PRESIGN_SECONDS = 3600


def _output_json(data: dict[str, Any]) -> None:
    """Output JSON to stdout with deterministic ordering."""
    print(json.dumps(data, sort_keys=True, indent=2))


def _make_error_result(code: str, error: Exception) -> dict[str, Any]:
    result: dict[str, Any] = {"error": {"code": code, "message": str(error)}}
    if isinstance(error, ObjectStorageError):
        result["error"]["type"] = type(error).__name__
    return result


def cmd_upload(storage: Storage, args: argparse.Namespace) -> int:
    content_type = args.content_type
    if content_type is None:
        guessed, _ = mimetypes.guess_type(args.local_path)
        content_type = guessed or DEFAULT_CONTENT_TYPE

    result = storage.upload_file(args.local_path, args.storage_path, content_type)
    _output_json({"location": result.location, "size": result.size})
    return 0


def cmd_download(storage: Storage, args: argparse.Namespace) -> int:
    size = storage.download_file(args.local_path, args.storage_path)
    _output_json({"path": args.local_path, "size": size})
    return 0


def cmd_list(storage: Storage, args: argparse.Namespace) -> int:
    keys = storage.list_objects(args.prefix)
    _output_json({"count": len(keys), "keys": keys})
    return 0


def cmd_delete(storage: Storage, args: argparse.Namespace) -> int:
    storage.delete_objects(args.storage_paths)
    _output_json({"deleted": args.storage_paths})
    return 0


def cmd_presign(storage: Storage, args: argparse.Namespace) -> int:
    url = storage.generate_presigned_url(args.storage_path, timedelta(seconds=args.expires))
    _output_json({"expires_in": args.expires, "url": url})
    return 0


COMMAND_DISPATCH = {
    "upload": cmd_upload,
    "download": cmd_download,
    "list": cmd_list,
    "delete": cmd_delete,
    "presign": cmd_presign,
}


def _positive_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"not an integer: {value!r}") from e
    if parsed <= 0:
        raise argparse.ArgumentTypeError(f"must be positive: {value!r}")
    return parsed


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="omnistore",
        description="omnistore - object storage across S3, Azure, GCS, OSS and local disk",
    )
    parser.add_argument(
        "--config",
        required=True,
        metavar="PATH",
        help="Path to storage YAML config (one of s3, azure, gcp, alioss, local)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase log verbosity on stderr (-v info, -vv debug)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    upload_parser = subparsers.add_parser("upload", help="Upload a local file")
    upload_parser.add_argument("local_path", help="Source file")
    upload_parser.add_argument("storage_path", help="Destination key")
    upload_parser.add_argument(
        "--content-type",
        default=None,
        metavar="TYPE",
        help="MIME type (guessed from the file name if omitted)",
    )

    download_parser = subparsers.add_parser("download", help="Download an object to a file")
    download_parser.add_argument("storage_path", help="Source key")
    download_parser.add_argument("local_path", help="Destination file")

    list_parser = subparsers.add_parser("list", help="List keys under a prefix")
    list_parser.add_argument("prefix", nargs="?", default="", help="Key prefix")

    delete_parser = subparsers.add_parser("delete", help="Delete one or more objects")
    delete_parser.add_argument("storage_paths", nargs="+", metavar="storage_path")

    presign_parser = subparsers.add_parser("presign", help="Create a read-only URL")
    presign_parser.add_argument("storage_path", help="Object key")
    presign_parser.add_argument(
        "--expires",
        type=_positive_int,
        default=DEFAULT_PRESIGN_SECONDS,
        metavar="SECONDS",
        help=f"URL lifetime in seconds (default: {DEFAULT_PRESIGN_SECONDS})",
    )

    return parser


def _configure_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


def main(argv: list[str] | None = None) -> int:
    """Main entry point.

    Exit codes:
        0: Success
        1: Storage error / Internal error (unexpected)
        2: Usage or configuration error
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 2

    _configure_logging(args.verbose)

    try:
        storage = create_storage(load_storage_config(args.config))
        return COMMAND_DISPATCH[args.command](storage, args)
    except ConfigurationError as e:
        _output_json(_make_error_result("CONFIGURATION_ERROR", e))
        return 2
    except ObjectStorageError as e:
        _output_json(_make_error_result("STORAGE_ERROR", e))
        return 1
    except Exception as e:
        # Fail-closed: unexpected errors return exit code 1
        _output_json(_make_error_result("INTERNAL_ERROR", e))
        return 1


if __name__ == "__main__":
    sys.exit(main())

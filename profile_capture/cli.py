from __future__ import annotations

import argparse
import json
from datetime import datetime
from pathlib import Path
from typing import Any

from profile_capture.capture_config import CaptureConfig, load_capture_config
from profile_capture.logging_setup import init_logging
from profile_capture.metadata_store import MetadataStoreError
from profile_capture.playwright_capture import open_lifecycle_store, run_capture
from profile_capture.schemas import (
    CONTACT_MULTI_FIELDS,
    CONTACT_SINGLE_FIELDS,
    MULTI_VALUE_FIELDS,
    SINGLE_VALUE_FIELDS,
    CaptureError,
    SiteKind,
)

_OMITTABLE_FIELDS = SINGLE_VALUE_FIELDS + MULTI_VALUE_FIELDS + CONTACT_SINGLE_FIELDS + CONTACT_MULTI_FIELDS


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--project-root",
        type=Path,
        default=Path.cwd(),
        help="Directory that relative output and store paths resolve against.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional YAML capture config; PROFILE_CAPTURE_* environment variables override it.",
    )
    parser.add_argument("--pretty", action="store_true", help="Pretty-print JSON output.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Profile capture utilities")
    subparsers = parser.add_subparsers(dest="command", required=True)

    capture_parser = subparsers.add_parser("capture", help="Capture one profile page into an export bundle.")
    capture_parser.add_argument("url", help="Profile page URL.")
    capture_parser.add_argument(
        "--site-kind",
        choices=[kind.value for kind in SiteKind],
        default=None,
        help="Override site detection from the URL host.",
    )
    capture_parser.add_argument(
        "--omit-field",
        dest="omitted_fields",
        action="append",
        choices=list(_OMITTABLE_FIELDS),
        default=[],
        help="Leave a field out of extracted_data.json (repeatable).",
    )
    capture_parser.add_argument(
        "--headed",
        action="store_true",
        help="Show the browser window instead of running headless.",
    )
    _add_common_arguments(capture_parser)

    sweep_parser = subparsers.add_parser(
        "sweep",
        help="Delete expired capture metadata and trim to the most recent captures.",
    )
    sweep_parser.add_argument(
        "--now",
        type=datetime.fromisoformat,
        default=None,
        help="ISO-8601 reference time (default: current UTC time).",
    )
    _add_common_arguments(sweep_parser)

    list_parser = subparsers.add_parser("list", help="List tracked captures, most recent first.")
    _add_common_arguments(list_parser)
    return parser


def _print_payload(payload: dict[str, Any], *, pretty: bool) -> None:
    if pretty:
        print(json.dumps(payload, indent=2, sort_keys=True))
    else:
        print(json.dumps(payload, sort_keys=True))


def _error_payload(exc: Exception) -> dict[str, Any]:
    return {
        "ok": False,
        "error_type": exc.__class__.__name__,
        "message": str(exc),
        "details": getattr(exc, "details", None),
    }


def _load_config(args: argparse.Namespace) -> CaptureConfig:
    config = load_capture_config(args.config)
    init_logging(config.log_level)
    return config


def run_capture_command(args: argparse.Namespace) -> int:
    project_root = args.project_root.resolve()
    try:
        config = _load_config(args)
        result = run_capture(
            args.url,
            config=config,
            project_root=project_root,
            site_kind=SiteKind(args.site_kind) if args.site_kind else None,
            omitted_fields=args.omitted_fields,
            headless=False if args.headed else None,
        )
    except (CaptureError, ValueError) as exc:
        _print_payload(_error_payload(exc), pretty=args.pretty)
        return 1

    _print_payload({"ok": result.success, **result.model_dump(mode="json")}, pretty=args.pretty)
    return 0 if result.success else 1


def run_sweep(args: argparse.Namespace) -> int:
    project_root = args.project_root.resolve()
    try:
        config = _load_config(args)
        store = open_lifecycle_store(config, project_root=project_root)
        removed = store.sweep_expired(args.now)
        trimmed = store.trim_to_most_recent(config.max_tracked_captures)
    except (MetadataStoreError, ValueError) as exc:
        _print_payload(_error_payload(exc), pretty=args.pretty)
        return 1

    _print_payload({"ok": True, "removed": removed, "trimmed": trimmed}, pretty=args.pretty)
    return 0


def run_list(args: argparse.Namespace) -> int:
    project_root = args.project_root.resolve()
    try:
        config = _load_config(args)
        captures = open_lifecycle_store(config, project_root=project_root).summary()
    except (MetadataStoreError, ValueError) as exc:
        _print_payload(_error_payload(exc), pretty=args.pretty)
        return 1

    _print_payload({"ok": True, "count": len(captures), "captures": captures}, pretty=args.pretty)
    return 0


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()

    if args.command == "capture":
        return run_capture_command(args)
    if args.command == "sweep":
        return run_sweep(args)
    if args.command == "list":
        return run_list(args)
    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())

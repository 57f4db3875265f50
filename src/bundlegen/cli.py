"""Command line interface for bundlegen."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict

from .api import convert, inspect_bundle
from .config import BuildTarget, ClientSettings, ShaderKind, load_settings
from .errors import ConversionError
from .logging import configure_logging, step
from .reporting import (
    set_reporter,
    get_reporter,
    PlainReporter,
    JsonLinesReporter,
    SilentReporter,
    RichReporter,
    set_verbosity,
)


def _parse_pointer(value: str) -> tuple[int, int]:
    try:
        x, y = value.split(",")
        return int(x), int(y)
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"pointer must be 'x,y', got '{value}'"
        ) from None


def _settings_from_args(args: argparse.Namespace) -> ClientSettings:
    overrides: Dict[str, Any] = {
        "target_hash": args.hash,
        "target_pointer": args.pointer,
        "output_root": args.output,
        "work_root": args.work_dir,
        "base_url": args.base_url,
        "shader": args.shader,
        "build_target": args.target,
    }
    if args.skip_existing:
        overrides["skip_already_built"] = True
    if args.always_build:
        overrides["skip_already_built"] = False
    # The launcher discards downloads unless asked to keep them
    overrides["keep_downloads"] = bool(args.keep_downloads)
    if args.config is not None:
        return load_settings(args.config, **overrides)
    settings = ClientSettings()
    for key, value in overrides.items():
        if value is not None:
            setattr(settings, key, value)
    return settings.validate()


def _convert_cmd(args: argparse.Namespace) -> int:
    try:
        settings = _settings_from_args(args)
    except ConversionError as exc:
        get_reporter().error(exc.message, code=exc.code.name)
        return int(exc.code)
    if not settings.target_hash and not settings.target_pointer:
        get_reporter().error("Either --hash or --pointer is required")
        return 2
    step(
        f"converting {settings.target_hash or settings.target_pointer} "
        f"for {settings.build_target.value}"
    )
    result = convert(settings)
    rep = get_reporter()
    rep.flush()
    rep.status(
        f"Result: code={result.state.last_error_code.name} "
        f"bundles={len(result.bundles)} duration={result.duration:.2f}s"
    )
    return result.exit_code


def _inspect_cmd(args: argparse.Namespace) -> int:
    step(f"inspecting {args.bundle}")
    try:
        info = inspect_bundle(args.bundle, payloads=args.verify)
    except (OSError, ValueError) as exc:
        get_reporter().error(f"Cannot read bundle {args.bundle}: {exc}")
        return 1
    for entry in info["entries"]:
        entry.pop("data", None)
    get_reporter().flush()
    print(json.dumps(info, indent=2, sort_keys=True))
    return 1 if info["issues"] else 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="bundlegen", description="Content-addressed asset bundle converter"
    )
    p.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (repeatable)",
    )
    p.add_argument(
        "-r",
        "--reporter",
        choices=["plain", "rich", "json", "silent"],
        default="plain",
        help="Select reporter backend: plain (default), rich, json (JSONL events), silent",
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    c = sub.add_parser("convert", help="Convert an entity into bundles")
    c.add_argument("--hash", help="Entity id to convert")
    c.add_argument("--pointer", type=_parse_pointer, help="Scene pointer 'x,y'")
    c.add_argument("--output", type=Path, help="Bundle output folder")
    c.add_argument("--work-dir", dest="work_dir", type=Path, help="Working folder")
    c.add_argument("--base-url", dest="base_url", help="Content server base URL")
    c.add_argument(
        "--shader", choices=[k.value for k in ShaderKind], help="Material shader"
    )
    c.add_argument(
        "--target", choices=[t.value for t in BuildTarget], help="Build target"
    )
    c.add_argument(
        "--always-build",
        dest="always_build",
        action="store_true",
        help="Rebuild even when bundles already exist",
    )
    c.add_argument(
        "--skip-existing",
        dest="skip_existing",
        action="store_true",
        help="Skip entities whose bundles already exist",
    )
    c.add_argument(
        "--keep-downloads",
        dest="keep_downloads",
        action="store_true",
        help="Keep downloaded content after the run",
    )
    c.add_argument("--config", type=Path, help="Settings file (YAML or JSON)")
    c.set_defaults(func=_convert_cmd)

    i = sub.add_parser("inspect", help="Inspect a bundle file")
    i.add_argument("bundle", type=Path)
    i.add_argument(
        "--verify", action="store_true", help="Decode payloads and check entry CRCs"
    )
    i.set_defaults(func=_inspect_cmd)
    return p


def main(argv: list[str] | None = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    parser = build_parser()
    args = parser.parse_args(argv)
    requested = args.reporter
    if requested == "json":
        set_reporter(JsonLinesReporter())
    elif requested == "silent":
        set_reporter(SilentReporter())
    elif requested == "rich":
        if sys.stderr.isatty():
            set_reporter(RichReporter())
        else:
            set_reporter(PlainReporter())
    else:
        set_reporter(PlainReporter())
    set_verbosity(args.verbose)
    configure_logging(args.verbose)
    return args.func(args)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())

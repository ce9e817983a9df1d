"""Command line entry point."""

from __future__ import annotations

import argparse
import sys
from collections.abc import Sequence
from typing import Any

from pydantic import ValidationError

from openwrt_tailscale import __version__
from openwrt_tailscale.config import Settings, get_settings
from openwrt_tailscale.logging import get_logger, setup_logging
from openwrt_tailscale.orchestrator import UpgradeOrchestrator

# Exit status for settings that fail validation
CONFIG_ERROR_EXIT = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="openwrt-tailscale",
        description="Install or upgrade Tailscale on an OpenWrt router",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--root", dest="root_dir", help="Filesystem root (default: /)")
    parser.add_argument("--tmp-dir", dest="tmp_dir", help="Scratch directory (default: /tmp)")
    parser.add_argument(
        "--skip-dependencies",
        action="store_true",
        help="Do not install missing OS packages",
    )
    parser.add_argument("--log-level", help="Logging level (default: INFO)")
    parser.add_argument("--json", action="store_true", help="Emit JSON log lines")
    return parser


def settings_from_args(args: argparse.Namespace, base: Settings) -> Settings:
    """Overlay command line flags on environment settings.

    Raises:
        ValidationError: if a flag value is not a valid setting.
    """
    overrides: dict[str, Any] = {}
    if args.root_dir:
        overrides["root_dir"] = args.root_dir
    if args.tmp_dir:
        overrides["tmp_dir"] = args.tmp_dir
    if args.skip_dependencies:
        overrides["install_dependencies"] = False
    if args.log_level:
        overrides["log_level"] = args.log_level
    if args.json:
        overrides["log_format"] = "json"
    return Settings.model_validate({**base.model_dump(), **overrides})


def main(argv: Sequence[str] | None = None) -> int:
    """Run the installer and return the process exit status."""
    args = build_parser().parse_args(argv)

    try:
        settings = settings_from_args(args, get_settings())
    except ValidationError as exc:
        print(f"Error: invalid configuration: {exc}", file=sys.stderr)
        return CONFIG_ERROR_EXIT

    setup_logging(settings)
    log = get_logger("openwrt_tailscale.cli")
    log.info("openwrt_tailscale_installer", version=__version__, root=settings.root_dir)

    result = UpgradeOrchestrator.from_settings(settings).run()
    if result.ok:
        log.info("finished", **result.to_dict())
    else:
        log.error("finished", **result.to_dict())
    return result.exit_code


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
"""
Command line entry point.

Validates Prometheus and Loki expressions and rule files, and injects label
matchers (such as Juju topology) into every selector of an expression.
"""

import argparse
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from .checker import Checker, get_checker, get_label_matchers
from .config import ToolConfig
from .errors import CosToolError

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(debug: bool, config: ToolConfig) -> None:
    """Configure root logging; --debug wins over the config file level."""
    if debug:
        level = logging.DEBUG
    else:
        level = config.level or logging.WARNING
    logging.basicConfig(level=level, format=LOG_FORMAT)


def emit(args: argparse.Namespace, payload: Dict[str, Any], text: str) -> None:
    if args.output == 'json':
        print(json.dumps(payload, indent=2))
    else:
        print(text)


def fail(args: argparse.Namespace, error: Exception) -> int:
    if args.output == 'json':
        print(json.dumps({"error": str(error)}, indent=2), file=sys.stderr)
    else:
        print(f"Error: {error}", file=sys.stderr)
    return 1


def cmd_transform(args: argparse.Namespace, checker: Checker, config: ToolConfig) -> int:
    """Inject label matchers into one expression and print it."""
    matchers = dict(config.label_matchers)
    matchers.update(get_label_matchers(args.label_matcher or []))

    output = checker.transform(args.expression, matchers)
    emit(args, {"expression": args.expression, "result": output}, output)
    return 0


def cmd_validate(args: argparse.Namespace, checker: Checker, config: ToolConfig) -> int:
    """Validate rule files, stopping at the first invalid one."""
    for filename in args.files:
        try:
            with open(filename, 'rb') as f:
                data = f.read()
        except OSError as e:
            raise ValueError(f"Rule file not readable: {filename}: {e}") from e

        result = checker.validate_rules(filename, data)
        if not result.is_valid:
            if args.output == 'json':
                print(json.dumps({
                    "file": filename,
                    "valid": False,
                    "errors": [str(err) for err in result.errors],
                }, indent=2), file=sys.stderr)
            else:
                print(str(result.error), file=sys.stderr)
            return 1

        groups = len(result.groups.groups) if result.groups else 0
        emit(args, {"file": filename, "valid": True, "groups": groups}, f"{filename}: OK")
    return 0


def cmd_validate_config(args: argparse.Namespace, checker: Checker, config: ToolConfig) -> int:
    """Strictly load server configuration files."""
    for filename in args.files:
        checker.validate_config(filename)
        emit(args, {"file": filename, "valid": True}, f"{filename}: OK")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cos-tool",
        description="Validates Prometheus and Loki expressions, adds Juju Topology "
                    "to label matchers",
    )

    parser.add_argument(
        "-f", "--format",
        choices=["promql", "logql"],
        type=str.lower,
        help="Query dialect of expressions and rules (default: promql)",
    )

    parser.add_argument(
        "-c", "--config",
        help="Path to YAML tool configuration",
    )

    parser.add_argument(
        "-o", "--output",
        choices=["text", "json"],
        default="text",
        help="Output format",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    transform = subparsers.add_parser(
        "transform", aliases=["t"],
        help="Inject label matchers into all selectors of an expression",
    )
    transform.add_argument(
        "--label-matcher",
        action="append",
        metavar="NAME=VALUE",
        help="Label matcher to inject into all selectors (repeatable)",
    )
    transform.add_argument("expression", help="The expression to transform")
    transform.set_defaults(handler=cmd_transform)

    validate = subparsers.add_parser(
        "validate", aliases=["v", "lint", "l"],
        help="Validate alerting and recording rule files",
    )
    validate.add_argument("files", nargs="+", help="Rule files to validate")
    validate.set_defaults(handler=cmd_validate)

    validate_config = subparsers.add_parser(
        "validate-config", aliases=["vc"],
        help="Validate server configuration files",
    )
    validate_config.add_argument("files", nargs="+", help="Configuration files to validate")
    validate_config.set_defaults(handler=cmd_validate_config)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not getattr(args, "handler", None):
        parser.print_help()
        return 1

    try:
        config = ToolConfig.from_yaml(args.config) if args.config else ToolConfig()
    except CosToolError as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        return 1

    setup_logging(args.debug, config)
    fmt = args.format or config.format or "promql"
    logger.debug("Running %s with format %s", args.command, fmt)

    try:
        return args.handler(args, get_checker(fmt), config)
    except (CosToolError, ValueError) as e:
        return fail(args, e)


if __name__ == "__main__":
    sys.exit(main())

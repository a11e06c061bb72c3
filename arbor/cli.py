#!/usr/bin/env python3
"""
ARBOR CLI

Command-line interface over persisted composition state and configuration.

Usage:
    arbor <command> [subcommand] [options]

Commands:
    state       Inspect and verify persisted state files
    graph       Root, target, children and path queries
    ledger      Attachment balances
    config      Configuration management
    errors      List error codes

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import argparse
import json
import sys
from decimal import Decimal
from enum import Enum
from typing import Any, List, Optional

import yaml

from arbor import __version__
from arbor.errors import ERROR_CODES, ArborError, SnapshotError
from arbor.registry import NodeRef, ResourceKey


class OutputFormat(Enum):
    """Output format options."""
    JSON = "json"
    YAML = "yaml"
    TABLE = "table"
    TEXT = "text"


class CLIError(Exception):
    """CLI error with exit code."""
    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


def format_output(data: Any, fmt: OutputFormat = OutputFormat.JSON) -> str:
    """Format data for output."""
    if fmt == OutputFormat.JSON:
        return json.dumps(data, indent=2, default=str)
    elif fmt == OutputFormat.YAML:
        return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
    elif fmt == OutputFormat.TABLE:
        return _format_table(data)
    else:
        return str(data)


def _format_table(data: Any) -> str:
    """Format data as ASCII table."""
    if isinstance(data, list) and data and isinstance(data[0], dict):
        headers = list(data[0].keys())
        rows = [[str(row.get(h, ""))[:48] for h in headers] for row in data]
        widths = [max(len(h), max(len(r[i]) for r in rows)) for i, h in enumerate(headers)]

        lines = []
        lines.append(" | ".join(h.ljust(widths[i]) for i, h in enumerate(headers)))
        lines.append("-+-".join("-" * w for w in widths))
        for row in rows:
            lines.append(" | ".join(c.ljust(widths[i]) for i, c in enumerate(row)))
        return "\n".join(lines)
    elif isinstance(data, dict):
        return "\n".join(f"{k}: {v}" for k, v in data.items())
    return str(data)


class ArborCLI:
    """Main CLI application."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="arbor",
            description="ARBOR composability graph CLI",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"arbor {__version__}",
        )
        self.parser.add_argument(
            "--format", "-f",
            choices=["json", "yaml", "table", "text"],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument(
            "--quiet", "-q",
            action="store_true",
            help="Suppress non-essential output",
        )
        self.parser.add_argument(
            "--config", "-c",
            help="Configuration file (YAML) applied over the defaults",
        )

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()

    def _register_commands(self) -> None:
        """Register all command groups."""
        self._register_state_commands()
        self._register_graph_commands()
        self._register_ledger_commands()
        self._register_config_commands()
        self.subparsers.add_parser("errors", help="List error codes")

    def _register_state_commands(self) -> None:
        state = self.subparsers.add_parser("state", help="Persisted state files")
        state_sub = state.add_subparsers(dest="subcommand")

        show = state_sub.add_parser("show", help="Summarise a state file")
        show.add_argument("file", help="State file (.json, .yaml)")

        verify = state_sub.add_parser("verify", help="Check schema, digest and forest invariants")
        verify.add_argument("file", help="State file (.json, .yaml)")

        edges = state_sub.add_parser("edges", help="List edges")
        edges.add_argument("file", help="State file (.json, .yaml)")

    def _register_graph_commands(self) -> None:
        graph = self.subparsers.add_parser("graph", help="Link graph queries")
        graph_sub = graph.add_subparsers(dest="subcommand")

        for name, help_text in (
            ("root", "Resolve the root of a node"),
            ("target", "Show the direct target of a node"),
            ("children", "List nodes linked directly to a node"),
            ("path", "List the walk from a node to its root"),
        ):
            cmd = graph_sub.add_parser(name, help=help_text)
            cmd.add_argument("file", help="State file (.json, .yaml)")
            cmd.add_argument("node", help="Node as <collection>:<token_id>")

    def _register_ledger_commands(self) -> None:
        ledger = self.subparsers.add_parser("ledger", help="Attachment ledger queries")
        ledger_sub = ledger.add_subparsers(dest="subcommand")

        balance = ledger_sub.add_parser("balance", help="Balance of one resource on a node")
        balance.add_argument("file", help="State file (.json, .yaml)")
        balance.add_argument("node", help="Node as <collection>:<token_id>")
        balance.add_argument("--currency", help="Fungible currency address")
        balance.add_argument("--collection", help="Counted-asset collection address")
        balance.add_argument("--asset-id", help="Counted-asset id")

        list_cmd = ledger_sub.add_parser("list", help="List attachments")
        list_cmd.add_argument("file", help="State file (.json, .yaml)")
        list_cmd.add_argument("--owner", help="Only attachments held by this node")

    def _register_config_commands(self) -> None:
        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")

        get = config_sub.add_parser("get", help="Get configuration value")
        get.add_argument("path", help="Config path (e.g., graph.max_depth)")

        set_cmd = config_sub.add_parser("set", help="Set configuration value")
        set_cmd.add_argument("path", help="Config path")
        set_cmd.add_argument("value", help="Value to set")

        config_sub.add_parser("show", help="Show all configuration")
        config_sub.add_parser("validate", help="Validate configuration")
        config_sub.add_parser("schema", help="Export configuration schema")

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 0

        try:
            self._load_config(parsed.config)
            fmt = OutputFormat(parsed.format)
            result = self._dispatch(parsed)

            if result is not None:
                print(format_output(result, fmt))

            if isinstance(result, dict) and result.get("valid") is False:
                return 1
            return 0

        except CLIError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return e.exit_code

        except ArborError as e:
            if not parsed.quiet:
                print(f"Error [{e.code}]: {e}", file=sys.stderr)
            return 1

    def _load_config(self, path: Optional[str]) -> None:
        from arbor.config import get_config_manager
        mgr = get_config_manager()
        mgr.load_defaults()
        if path:
            mgr.load_from_file(path)

    def _dispatch(self, args: argparse.Namespace) -> Any:
        """Dispatch command to handler."""
        cmd = args.command
        subcmd = getattr(args, "subcommand", None)

        handler_name = f"_handle_{cmd}_{subcmd}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {cmd} {subcmd or ''}".strip(), exit_code=2)

        return handler(args)

    # Helpers
    def _load(self, path: str):
        from arbor.config import get_config
        from arbor.snapshot import load_state, read_state
        config = get_config()
        return load_state(
            read_state(path),
            max_depth=config.graph.max_depth.get(),
            max_amount=config.ledger.max_amount.get(),
        )

    # State handlers
    def _handle_state_show(self, args: argparse.Namespace) -> Any:
        loaded = self._load(args.file)
        return {
            "protocol_address": loaded.protocol_address,
            "edges": len(loaded.graph),
            "attachments": len(loaded.ledger),
            "roots": len({loaded.graph.find_root(s) for s, _ in loaded.graph.edges()}),
            "digest": loaded.digest,
        }

    def _handle_state_verify(self, args: argparse.Namespace) -> Any:
        try:
            loaded = self._load(args.file)
        except SnapshotError as e:
            return {"valid": False, "error": e.message, "errors": e.errors}
        return {"valid": True, "digest": loaded.digest}

    def _handle_state_edges(self, args: argparse.Namespace) -> Any:
        loaded = self._load(args.file)
        return [
            {"source": str(source), "target": str(target)}
            for source, target in loaded.graph.edges()
        ]

    # Graph handlers
    def _handle_graph_root(self, args: argparse.Namespace) -> Any:
        graph = self._load(args.file).graph
        node = NodeRef.parse(args.node)
        return {"node": str(node), "root": str(graph.find_root(node)), "depth": graph.depth(node)}

    def _handle_graph_target(self, args: argparse.Namespace) -> Any:
        graph = self._load(args.file).graph
        node = NodeRef.parse(args.node)
        target = graph.get_target(node)
        return {"node": str(node), "target": str(target) if target else None}

    def _handle_graph_children(self, args: argparse.Namespace) -> Any:
        graph = self._load(args.file).graph
        node = NodeRef.parse(args.node)
        return {"node": str(node), "children": [str(c) for c in graph.children(node)]}

    def _handle_graph_path(self, args: argparse.Namespace) -> Any:
        graph = self._load(args.file).graph
        node = NodeRef.parse(args.node)
        return {"node": str(node), "path": [str(n) for n in graph.path_to_root(node)]}

    # Ledger handlers
    def _handle_ledger_balance(self, args: argparse.Namespace) -> Any:
        if args.currency and not args.collection:
            key = ResourceKey.currency(args.currency)
        elif args.collection and args.asset_id is not None and not args.currency:
            key = ResourceKey.counted(args.collection, args.asset_id)
        else:
            raise CLIError("Give either --currency, or --collection with --asset-id", exit_code=2)
        ledger = self._load(args.file).ledger
        node = NodeRef.parse(args.node)
        return {"node": str(node), "resource": str(key), "balance": str(ledger.balance_of(key, node))}

    def _handle_ledger_list(self, args: argparse.Namespace) -> Any:
        ledger = self._load(args.file).ledger
        if args.owner:
            attachments = ledger.attachments_of(NodeRef.parse(args.owner))
        else:
            attachments = list(ledger.attachments())
        return [
            {"owner": str(a.owner), "kind": a.key.kind, "resource": str(a.key), "amount": str(a.amount)}
            for a in attachments
        ]

    # Config handlers
    def _handle_config_get(self, args: argparse.Namespace) -> Any:
        from arbor.config import get_config_manager
        mgr = get_config_manager()
        value = mgr.get(args.path)
        if hasattr(value, "__dataclass_fields__"):
            raise CLIError(f"{args.path} is a section; use 'config show'", exit_code=2)
        if isinstance(value, Decimal):
            value = str(value)
        return {"path": args.path, "value": value}

    def _handle_config_set(self, args: argparse.Namespace) -> Any:
        from arbor.config import get_config_manager
        mgr = get_config_manager()
        mgr.set(args.path, args.value)
        value = mgr.get(args.path)
        return {"path": args.path, "value": str(value) if isinstance(value, Decimal) else value, "status": "updated"}

    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        from arbor.config import get_config_manager
        return get_config_manager().config.to_dict()

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        from arbor.config import get_config_manager
        errors = get_config_manager().validate()
        return {"valid": len(errors) == 0, "errors": errors}

    def _handle_config_schema(self, args: argparse.Namespace) -> Any:
        from arbor.config import get_config_manager
        return get_config_manager().export_schema()

    def _handle_errors(self, args: argparse.Namespace) -> Any:
        return [
            {"code": code, "error": cls.__name__, "description": (cls.__doc__ or "").strip().splitlines()[0]}
            for code, cls in sorted(ERROR_CODES.items())
        ]


def main() -> int:
    """CLI entry point."""
    cli = ArborCLI()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())

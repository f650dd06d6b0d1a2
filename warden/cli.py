#!/usr/bin/env python3
"""
WARDEN Unified CLI

Command-line interface for WARDEN governance deployments.

Usage:
    warden <command> [subcommand] [options]

Commands:
    config      Configuration management
    manifest    Deployment manifest validation
    deploy      Deploy a manifest in memory and print a summary
    run         Deploy a manifest, then replay a scripted call sequence

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import argparse
import json
import sys
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml

from warden import __version__
from warden.config import ConfigError, get_config_manager
from warden.core import load_yaml
from warden.events import EventRecorder
from warden.hardening import InvalidArgument, WardenError
from warden.manifest import Deployment, ManifestError, deploy_manifest, load_manifest
from warden.observability import generate_correlation_id, set_correlation_id


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
        return yaml.safe_dump(json.loads(json.dumps(data, default=str)), default_flow_style=False)
    elif fmt == OutputFormat.TABLE:
        return _format_table(data)
    else:
        return str(data)


def _format_table(data: Any) -> str:
    """Format data as ASCII table."""
    if isinstance(data, list) and data and isinstance(data[0], dict):
        headers = list(data[0].keys())
        rows = [[str(row.get(h, ""))[:44] for h in headers] for row in data]
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


# =============================================================================
# SCRIPTED CALLS
# =============================================================================

def _step_propose(d: Deployment, step: Dict[str, Any]) -> Any:
    return {"operation_id": d.engine.propose(step["caller"], step["kind"], step["target"])}


def _step_sign(d: Deployment, step: Dict[str, Any]) -> Any:
    return {"executed": d.engine.sign(step["caller"], step["operation_id"])}


def _step_verify(d: Deployment, step: Dict[str, Any]) -> Any:
    d.engine.ledger.verify(step["caller"], step["identity"])
    return {"identity": step["identity"], "verified": True}


def _step_revoke(d: Deployment, step: Dict[str, Any]) -> Any:
    d.engine.ledger.revoke(step["caller"], step["identity"])
    return {"identity": step["identity"], "verified": False}


def _step_batch_verify(d: Deployment, step: Dict[str, Any]) -> Any:
    verified = d.engine.ledger.batch_verify(step["caller"], step["identities"])
    return {"verified": [str(i) for i in verified]}


def _step_transfer(d: Deployment, step: Dict[str, Any]) -> Any:
    asset = d.factory.get_asset(step["asset"])
    if asset is None:
        raise InvalidArgument("asset", "Unknown asset", step["asset"])
    return asset.transfer(step["caller"], step["recipient"], step["amount"]).to_dict()


def _step_add_signer(d: Deployment, step: Dict[str, Any]) -> Any:
    return {"changed": d.engine.add_signer(step["caller"], step["identity"])}


def _step_remove_signer(d: Deployment, step: Dict[str, Any]) -> Any:
    changed = d.engine.remove_signer(step["caller"], step["identity"])
    return {"changed": changed, "required_signatures": d.engine.required_signatures}


def _step_set_quorum(d: Deployment, step: Dict[str, Any]) -> Any:
    d.engine.set_required_signatures(step["caller"], step["required"])
    return {"required_signatures": d.engine.required_signatures}


STEP_HANDLERS: Dict[str, Callable[[Deployment, Dict[str, Any]], Any]] = {
    "propose": _step_propose,
    "sign": _step_sign,
    "verify": _step_verify,
    "revoke": _step_revoke,
    "batch_verify": _step_batch_verify,
    "transfer": _step_transfer,
    "add_signer": _step_add_signer,
    "remove_signer": _step_remove_signer,
    "set_quorum": _step_set_quorum,
}

STEP_FIELDS: Dict[str, tuple] = {
    "propose": ("caller", "kind", "target"),
    "sign": ("caller", "operation_id"),
    "verify": ("caller", "identity"),
    "revoke": ("caller", "identity"),
    "batch_verify": ("caller", "identities"),
    "transfer": ("caller", "asset", "recipient", "amount"),
    "add_signer": ("caller", "identity"),
    "remove_signer": ("caller", "identity"),
    "set_quorum": ("caller", "required"),
}


def load_script(path: Path) -> List[Dict[str, Any]]:
    """Read a YAML call script: a list of steps, or a mapping with ``steps``."""
    if not path.is_file():
        raise CLIError(f"Script not found: {path}")
    data = load_yaml(path)
    if isinstance(data, dict):
        data = data.get("steps")
    if not isinstance(data, list) or not all(isinstance(s, dict) for s in data):
        raise CLIError(f"Script must be a list of steps: {path}")
    for i, step in enumerate(data):
        if step.get("action") not in STEP_HANDLERS:
            raise CLIError(f"Step {i}: unknown action {step.get('action')!r}")
    return data


def run_script(
    deployment: Deployment,
    steps: List[Dict[str, Any]],
    stop_on_error: bool = False,
) -> List[Dict[str, Any]]:
    """Replay steps against a deployment; WARDEN errors are recorded per step."""
    outcomes = []
    for i, step in enumerate(steps):
        action = step["action"]
        missing = [f for f in STEP_FIELDS[action] if f not in step]
        if missing:
            raise CLIError(f"Step {i} ({action}): missing field(s) {', '.join(missing)}")
        try:
            result = STEP_HANDLERS[action](deployment, step)
        except WardenError as e:
            outcomes.append({
                "step": i, "action": action, "ok": False,
                "error_code": e.code, "error": str(e),
            })
            if stop_on_error:
                break
            continue
        outcomes.append({"step": i, "action": action, "ok": True, "result": result})
    return outcomes


# =============================================================================
# CLI
# =============================================================================

class WardenCLI:
    """Main CLI application."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="warden",
            description="WARDEN governance engine CLI",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"warden {__version__}",
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
            help="Configuration file to load before running the command",
        )

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()

    def _register_commands(self) -> None:
        """Register all command groups."""
        self._register_config_commands()
        self._register_manifest_commands()
        self._register_deploy_commands()

    def _register_config_commands(self) -> None:
        """Register config subcommands."""
        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")

        # config get
        get = config_sub.add_parser("get", help="Get configuration value")
        get.add_argument("path", help="Config path (e.g., governance.max_signers)")

        # config set
        set_cmd = config_sub.add_parser("set", help="Set configuration value")
        set_cmd.add_argument("path", help="Config path")
        set_cmd.add_argument("value", help="Value to set")

        # config show
        config_sub.add_parser("show", help="Show all configuration")

        # config validate
        config_sub.add_parser("validate", help="Validate configuration")

        # config schema
        config_sub.add_parser("schema", help="Export configuration schema")

    def _register_manifest_commands(self) -> None:
        """Register manifest subcommands."""
        manifest = self.subparsers.add_parser("manifest", help="Deployment manifests")
        manifest_sub = manifest.add_subparsers(dest="subcommand")

        validate = manifest_sub.add_parser("validate", help="Validate a manifest against its schema")
        validate.add_argument("path", help="Manifest YAML file")

    def _register_deploy_commands(self) -> None:
        """Register deploy and run."""
        deploy = self.subparsers.add_parser("deploy", help="Deploy a manifest in memory")
        deploy.add_argument("manifest", help="Manifest YAML file")

        run = self.subparsers.add_parser("run", help="Deploy a manifest and replay a call script")
        run.add_argument("manifest", help="Manifest YAML file")
        run.add_argument("script", help="YAML list of steps")
        run.add_argument("--stop-on-error", action="store_true", help="Stop at the first failed step")

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 0

        set_correlation_id(generate_correlation_id())
        try:
            if parsed.config:
                get_config_manager().load_from_file(parsed.config)
            else:
                get_config_manager().load_defaults()

            fmt = OutputFormat(parsed.format)
            result = self._dispatch(parsed)

            if result is not None:
                print(format_output(result, fmt))

            return 0

        except CLIError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return e.exit_code

        except (ConfigError, WardenError) as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return 1

    def _dispatch(self, args: argparse.Namespace) -> Any:
        """Dispatch command to handler."""
        cmd = args.command
        subcmd = getattr(args, "subcommand", None)

        handler_name = f"_handle_{cmd}_{subcmd}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {cmd} {subcmd or ''}".strip())

        return handler(args)

    # Config handlers
    def _handle_config_get(self, args: argparse.Namespace) -> Any:
        mgr = get_config_manager()
        return {"path": args.path, "value": mgr.get(args.path)}

    def _handle_config_set(self, args: argparse.Namespace) -> Any:
        mgr = get_config_manager()
        mgr.set(args.path, args.value)
        return {"path": args.path, "value": mgr.get(args.path), "status": "updated"}

    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        return get_config_manager().config.to_dict()

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        errors = get_config_manager().validate()
        return {"valid": len(errors) == 0, "errors": errors}

    def _handle_config_schema(self, args: argparse.Namespace) -> Any:
        return get_config_manager().export_schema()

    # Manifest handlers
    def _handle_manifest_validate(self, args: argparse.Namespace) -> Any:
        try:
            manifest = load_manifest(args.path)
        except ManifestError as e:
            return {"path": args.path, "valid": False, "errors": e.errors or [str(e)]}
        return {"path": args.path, "valid": True, "deployment_id": manifest["deployment_id"]}

    # Deployment handlers
    def _handle_deploy(self, args: argparse.Namespace) -> Any:
        deployment = deploy_manifest(load_manifest(args.manifest))
        return deployment.summary()

    def _handle_run(self, args: argparse.Namespace) -> Any:
        manifest = load_manifest(args.manifest)
        steps = load_script(Path(args.script))

        deployment = deploy_manifest(manifest)
        recorder = EventRecorder(deployment.bus)
        outcomes = run_script(deployment, steps, stop_on_error=args.stop_on_error)

        ok, bad_index = deployment.audit.verify_chain()
        return {
            "deployment_id": deployment.deployment_id,
            "steps": outcomes,
            "events": [e.to_dict() for e in recorder.events],
            "operations": deployment.engine.export_operations(),
            "verified": sorted(str(i) for i in deployment.engine.ledger.verified_identities()),
            "audit": {
                "entries": len(deployment.audit),
                "head": deployment.audit.head,
                "valid": ok,
                "first_invalid_index": bad_index,
            },
        }


def main() -> int:
    """CLI entry point."""
    cli = WardenCLI()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())

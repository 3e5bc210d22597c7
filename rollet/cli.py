#!/usr/bin/env python3
"""
rollet CLI

Operator tooling for the rollet trust layer: key generation, offline house
certificate issuance, allow-list maintenance, ledger inspection and sync, and
derived code helpers.

Usage:
    rollet <command> [subcommand] [options]

Commands:
    keygen      Generate an Ed25519 keypair (private OKP JWK file)
    house-cert  Issue, validate and show house certificates
    allowlist   Maintain the allow-list of authorized house certificates
    ledger      Inspect, verify, close and sync the local ledger
    codes       TOTP join codes and receipt spend codes
    config      Configuration management
"""

from __future__ import annotations

import argparse
import json
import pathlib
import sys
from enum import Enum
from typing import Any, List, Optional

import yaml

from rollet import __version__
from rollet.core import b64url_decode, now_ms
from rollet.errors import RolletError
from rollet.infra.config import get_config, get_config_manager
from rollet.infra.observability import RolletLayer, get_logger, set_correlation_id, generate_correlation_id

logger = get_logger("cli", RolletLayer.CLI)


class OutputFormat(Enum):
    """Output format options."""
    JSON = "json"
    YAML = "yaml"
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
        return yaml.dump(data, default_flow_style=False, sort_keys=True)
    elif isinstance(data, dict):
        return "\n".join(f"{k}: {v}" for k, v in data.items())
    elif isinstance(data, list):
        return "\n".join(str(item) for item in data)
    return str(data)


def _write_structured(path: pathlib.Path, data: Any) -> None:
    if path.suffix.lower() in (".yaml", ".yml"):
        text = yaml.safe_dump(data, default_flow_style=False, sort_keys=True)
    else:
        text = json.dumps(data, indent=2, sort_keys=True) + "\n"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


class RolletCLI:
    """Main CLI application."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="rollet",
            description="rollet trust layer CLI",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"rollet {__version__}",
        )
        self.parser.add_argument(
            "--format", "-f",
            choices=["json", "yaml", "text"],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument(
            "--quiet", "-q",
            action="store_true",
            help="Suppress error output",
        )
        self.parser.add_argument(
            "--config", "-c",
            help="Configuration file (default: rollet.yaml, config/rollet.yaml, ~/.rollet/config.yaml)",
        )

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()

    def _register_commands(self) -> None:
        self._register_keygen_command()
        self._register_house_cert_commands()
        self._register_allowlist_commands()
        self._register_ledger_commands()
        self._register_codes_commands()
        self._register_config_commands()

    def _register_keygen_command(self) -> None:
        keygen = self.subparsers.add_parser("keygen", help="Generate an Ed25519 keypair")
        keygen.add_argument("--out", "-o", required=True, help="Private JWK output file")

    def _register_house_cert_commands(self) -> None:
        hc = self.subparsers.add_parser("house-cert", help="House certificate operations")
        hc_sub = hc.add_subparsers(dest="subcommand")

        issue = hc_sub.add_parser("issue", help="Issue a house certificate (root key required)")
        issue.add_argument("--root-key", required=True, help="Root private JWK file")
        issue.add_argument("--house-key", required=True, help="House public or private JWK file")
        issue.add_argument("--house-id", required=True, help="House identifier")
        issue.add_argument("--lifetime-ms", type=int, default=30 * 24 * 60 * 60 * 1000, help="Validity period")
        issue.add_argument("--not-before", type=int, help="Start of validity (epoch ms, default now)")
        issue.add_argument("--capability", action="append", help="Capability (repeatable)")
        issue.add_argument("--out", "-o", help="Write the certificate to this file")
        issue.add_argument("--pem", action="store_true", help="Write PEM instead of JSON")

        validate = hc_sub.add_parser("validate", help="Validate a house certificate")
        validate.add_argument("--cert", required=True, help="Certificate file (JSON or PEM)")
        validate.add_argument("--root-key", required=True, help="Root public JWK file")
        validate.add_argument("--allowlist", help="Allow-list file; also check authorization")
        validate.add_argument("--now", type=int, help="Reference time (epoch ms)")

        show = hc_sub.add_parser("show", help="Show a house certificate")
        show.add_argument("--cert", required=True, help="Certificate file (JSON or PEM)")
        show.add_argument("--pem", action="store_true", help="Print the PEM encoding")

    def _register_allowlist_commands(self) -> None:
        al = self.subparsers.add_parser("allowlist", help="Allow-list maintenance")
        al_sub = al.add_subparsers(dest="subcommand")

        add = al_sub.add_parser("add", help="Authorize a house certificate")
        add.add_argument("--allowlist", required=True, help="Allow-list file (YAML or JSON)")
        add.add_argument("--cert", required=True, help="Certificate file")

        check = al_sub.add_parser("check", help="Check whether a certificate is authorized")
        check.add_argument("--allowlist", required=True, help="Allow-list file (YAML or JSON)")
        check.add_argument("--cert", required=True, help="Certificate file")

    def _register_ledger_commands(self) -> None:
        ledger = self.subparsers.add_parser("ledger", help="Local ledger operations")
        ledger_sub = ledger.add_subparsers(dest="subcommand")

        show = ledger_sub.add_parser("show", help="List ledger entries")
        show.add_argument("--ledger", "-l", help="Ledger file (default: ledger.path)")
        show.add_argument("--type", "-t", help="Only entries of this type")
        show.add_argument("--limit", "-n", type=int, help="Show only the last N entries")

        verify = ledger_sub.add_parser("verify", help="Verify the hash chain")
        verify.add_argument("--ledger", "-l", help="Ledger file (default: ledger.path)")
        verify.add_argument("--house-key", help="House public JWK; also check entry signatures")

        unsynced = ledger_sub.add_parser("unsynced", help="Entries above the sync watermark")
        unsynced.add_argument("--ledger", "-l", help="Ledger file (default: ledger.path)")

        sync = ledger_sub.add_parser("sync", help="Sync with the remote authority")
        sync.add_argument("--ledger", "-l", help="Ledger file (default: ledger.path)")
        sync.add_argument("--cert", required=True, help="House certificate file")
        sync.add_argument("--house-key", required=True, help="House private JWK file")
        sync.add_argument("--authority-url", help="Override sync.authority_url")

        close = ledger_sub.add_parser("close-session", help="Append a session_closed marker")
        close.add_argument("--ledger", "-l", help="Ledger file (default: ledger.path)")
        close.add_argument("--round", "-r", required=True, help="Round identifier")
        close.add_argument("--house-key", help="House private JWK; sign the marker")

        proof = ledger_sub.add_parser("prove", help="Inclusion proof for one entry")
        proof.add_argument("--ledger", "-l", help="Ledger file (default: ledger.path)")
        proof.add_argument("--seq", type=int, required=True, help="Entry sequence number")

    def _register_codes_commands(self) -> None:
        codes = self.subparsers.add_parser("codes", help="Derived codes")
        codes_sub = codes.add_subparsers(dest="subcommand")

        totp = codes_sub.add_parser("totp", help="Generate a TOTP join code")
        totp.add_argument("--secret", required=True, help="Pairing secret (base64url)")
        totp.add_argument("--round", "-r", required=True, help="Round identifier")
        totp.add_argument("--nonce", required=True, help="Challenge nonce")
        totp.add_argument("--epoch-ms", type=int, help="Reference time (default now)")

        spend = codes_sub.add_parser("spend", help="Spend code for a bank receipt")
        spend.add_argument("--receipt", required=True, help="Bank receipt file")

        check = codes_sub.add_parser("check", help="Check a spend code's check digit")
        check.add_argument("code", help="Spend code")

    def _register_config_commands(self) -> None:
        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")

        config_sub.add_parser("show", help="Show current configuration")

        get = config_sub.add_parser("get", help="Get configuration value")
        get.add_argument("path", help="Config path (e.g., sync.max_attempts)")

        config_sub.add_parser("validate", help="Validate configuration")
        config_sub.add_parser("schema", help="Export configuration schema")

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 0

        set_correlation_id(generate_correlation_id())
        try:
            mgr = get_config_manager()
            if parsed.config:
                mgr.load_from_file(parsed.config)
            else:
                mgr.load_defaults()

            fmt = OutputFormat(parsed.format)
            result = self._dispatch(parsed)

            if result is not None:
                print(format_output(result, fmt))

            return 0

        except CLIError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return e.exit_code

        except RolletError as e:
            if not parsed.quiet:
                print(f"Error [{e.code}]: {e.message}", file=sys.stderr)
            return 2

        except Exception as e:
            logger.error("command failed", command=parsed.command, exc_info=True)
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return 1

    def _dispatch(self, args: argparse.Namespace) -> Any:
        """Dispatch command to handler."""
        cmd = args.command.replace("-", "_")
        subcmd = getattr(args, "subcommand", None)

        handler_name = f"_handle_{cmd}_{subcmd.replace('-', '_')}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {args.command} {subcmd or ''}")

        return handler(args)

    # -- helpers -------------------------------------------------------------

    @staticmethod
    def _read_text(path: str) -> str:
        p = pathlib.Path(path)
        if not p.exists():
            raise CLIError(f"File not found: {path}")
        return p.read_text(encoding="utf-8")

    def _load_cert(self, path: str):
        from rollet.house_cert import load_house_cert

        return load_house_cert(self._read_text(path))

    @staticmethod
    def _open_ledger(path: Optional[str], signer=None):
        from rollet.ledger import FileLedgerStore, Ledger

        path = path or get_config().ledger.path.get()
        if not path:
            raise CLIError("No ledger file given (use --ledger or set ledger.path)")
        return Ledger(FileLedgerStore(path), signer=signer)

    # -- keygen ----------------------------------------------------------------

    def _handle_keygen(self, args: argparse.Namespace) -> Any:
        from rollet.keys import KeyPair

        key = KeyPair.generate()
        out = pathlib.Path(args.out)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(json.dumps(key.to_jwk(), indent=2, sort_keys=True) + "\n", encoding="utf-8")
        return {"path": str(out), "keyId": key.key_id, "publicJwk": key.public_jwk}

    # -- house-cert --------------------------------------------------------------

    def _handle_house_cert_issue(self, args: argparse.Namespace) -> Any:
        from rollet.house_cert import DEFAULT_CAPABILITIES, build_house_cert_payload, issue_house_cert
        from rollet.keys import load_keypair, load_public_key

        root = load_keypair(args.root_key)
        house_public = load_public_key(args.house_key)
        payload = build_house_cert_payload(
            args.house_id,
            house_public,
            args.not_before if args.not_before is not None else now_ms(),
            args.lifetime_ms,
            args.capability or DEFAULT_CAPABILITIES,
        )
        cert = issue_house_cert(payload, root)
        if args.out:
            out = pathlib.Path(args.out)
            out.parent.mkdir(parents=True, exist_ok=True)
            out.write_text(cert.to_pem() if args.pem else json.dumps(cert.to_dict(), indent=2) + "\n", encoding="utf-8")
        return cert.to_dict()

    def _handle_house_cert_validate(self, args: argparse.Namespace) -> Any:
        from rollet.house_cert import AllowList, require_trusted_house_cert, validate_house_cert
        from rollet.keys import load_public_key

        cert = self._load_cert(args.cert)
        root_public = load_public_key(args.root_key)
        result = {"houseId": cert.house_id, "keyId": cert.key_id}
        if args.allowlist:
            try:
                require_trusted_house_cert(cert, root_public, AllowList.from_file(args.allowlist), args.now)
            except RolletError as e:
                result.update({"valid": False, "reason": e.code, "message": e.message})
            else:
                result.update({"valid": True})
            return result
        result["valid"] = validate_house_cert(cert, root_public, args.now)
        return result

    def _handle_house_cert_show(self, args: argparse.Namespace) -> Any:
        cert = self._load_cert(args.cert)
        if args.pem:
            return cert.to_pem()
        return cert.to_dict()

    # -- allowlist ---------------------------------------------------------------

    def _handle_allowlist_add(self, args: argparse.Namespace) -> Any:
        from rollet.house_cert import AllowList

        path = pathlib.Path(args.allowlist)
        allow = AllowList.from_file(path) if path.exists() else AllowList()
        entry = allow.add(self._load_cert(args.cert))
        _write_structured(path, {"entries": allow.to_list()})
        return {"added": entry.to_dict(), "entries": len(allow)}

    def _handle_allowlist_check(self, args: argparse.Namespace) -> Any:
        from rollet.house_cert import AllowList, is_authorized

        cert = self._load_cert(args.cert)
        return {"houseId": cert.house_id, "authorized": is_authorized(cert, AllowList.from_file(args.allowlist))}

    # -- ledger ------------------------------------------------------------------

    def _handle_ledger_show(self, args: argparse.Namespace) -> Any:
        ledger = self._open_ledger(args.ledger)
        entries = ledger.entries()
        if args.type:
            entries = [e for e in entries if e.type == args.type]
        if args.limit:
            entries = entries[-args.limit :]
        return [e.to_dict() for e in entries]

    def _handle_ledger_verify(self, args: argparse.Namespace) -> Any:
        from rollet.keys import load_public_key
        from rollet.ledger import verify_entry_signatures

        ledger = self._open_ledger(args.ledger)
        entries = ledger.entries()
        ok, bad = ledger.verify()
        result = {"valid": ok, "entries": len(entries), "watermark": ledger.watermark}
        if bad is not None:
            result["firstInvalidSeq"] = entries[bad].seq
        if args.house_key and ok:
            sig_ok, sig_bad = verify_entry_signatures(entries, load_public_key(args.house_key))
            result["signaturesValid"] = sig_ok
            if sig_bad is not None:
                result["firstBadSignatureSeq"] = entries[sig_bad].seq
        if not ok:
            raise CLIError(format_output(result), exit_code=3)
        return result

    def _handle_ledger_unsynced(self, args: argparse.Namespace) -> Any:
        from rollet.sync import pending_entries

        return pending_entries(self._open_ledger(args.ledger))

    def _handle_ledger_sync(self, args: argparse.Namespace) -> Any:
        from rollet.keys import load_keypair
        from rollet.sync import AuthorityClient, sync_ledger

        ledger = self._open_ledger(args.ledger)
        cert = self._load_cert(args.cert)
        house_key = load_keypair(args.house_key)
        client = AuthorityClient(args.authority_url) if args.authority_url else None
        result = sync_ledger(ledger, cert, house_key, client=client)
        if not result.ok:
            raise CLIError(f"sync failed: {result.error}", exit_code=4)
        return result.to_dict()

    def _handle_ledger_close_session(self, args: argparse.Namespace) -> Any:
        from rollet.keys import load_keypair

        signer = load_keypair(args.house_key) if args.house_key else None
        entry = self._open_ledger(args.ledger, signer=signer).close_session(args.round)
        return entry.to_dict()

    def _handle_ledger_prove(self, args: argparse.Namespace) -> Any:
        ledger = self._open_ledger(args.ledger)
        try:
            return ledger.inclusion_proof(args.seq)
        except ValueError as e:
            raise CLIError(str(e)) from e

    # -- codes -------------------------------------------------------------------

    def _handle_codes_totp(self, args: argparse.Namespace) -> Any:
        from rollet.codes import generate_totp

        try:
            secret = b64url_decode(args.secret)
        except ValueError as e:
            raise CLIError("--secret must be base64url") from e
        epoch = args.epoch_ms if args.epoch_ms is not None else now_ms()
        return {"code": generate_totp(secret, args.round, args.nonce, epoch), "epochMs": epoch}

    def _handle_codes_spend(self, args: argparse.Namespace) -> Any:
        from rollet.artifacts import loads_json_or_pem
        from rollet.codes import format_spend_code
        from rollet.receipts import BankReceipt

        receipt = BankReceipt.from_dict(loads_json_or_pem(self._read_text(args.receipt)))
        code = receipt.spend_code()
        return {"receiptId": receipt.receipt_id, "code": code, "display": format_spend_code(code)}

    def _handle_codes_check(self, args: argparse.Namespace) -> Any:
        from rollet.codes import is_valid_spend_code, normalize_spend_code

        code = normalize_spend_code(args.code)
        return {"code": code, "valid": is_valid_spend_code(code)}

    # -- config ------------------------------------------------------------------

    def _handle_config_get(self, args: argparse.Namespace) -> Any:
        mgr = get_config_manager()
        return {"path": args.path, "value": mgr.get(args.path)}

    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        return get_config_manager().config.to_dict()

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        errors = get_config_manager().validate()
        return {"valid": len(errors) == 0, "errors": errors}

    def _handle_config_schema(self, args: argparse.Namespace) -> Any:
        return get_config_manager().export_schema()


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    return RolletCLI().run(argv)


if __name__ == "__main__":
    sys.exit(main())

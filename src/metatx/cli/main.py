#!/usr/bin/env python3
"""
MetaTx CLI - build, sign, inspect and dry-run meta-transactions.

Commands use the configured EIP-712 domain and SS58 prefix, so digests and
signatures match what the gateway recomputes.
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import click
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from metatx import __version__
from metatx.core.account_binding import AccountId, account_from_public_key
from metatx.core.config import ConfigManager, Environment, GatewayConfig
from metatx.core.crypto_utils import (
    compressed_public_key_from_private,
    generate_secp256k1_keypair_hex,
    recover_public_key,
    sign_digest,
)
from metatx.core.events import EventRecorder
from metatx.core.exceptions import ConfigurationError, GatewayError
from metatx.core.gateway import MetaTransactionRequest, build_reference_gateway
from metatx.core.ledger import InMemoryBalanceLedger
from metatx.core.logging_config import setup_logging_from_config
from metatx.core.typed_signing import (
    domain_separator,
    message_hash,
    signing_digest,
    typed_data_payload,
)

logger = logging.getLogger(__name__)
console = Console()


def _handle_cli_error(exc: Exception, exit_code: int = 1) -> None:
    """Centralized CLI error handler."""
    logger.error("CLI error: %s", exc, exc_info=True)
    if isinstance(exc, GatewayError):
        console.print(f"[bold red]{exc.code}:[/] {exc.message}")
    else:
        console.print(f"[bold red]Error:[/] {exc}")
    sys.exit(exit_code)


def _hex_bytes(value: str) -> bytes:
    try:
        return bytes.fromhex(value[2:] if value.startswith("0x") else value)
    except ValueError as exc:
        raise click.BadParameter(f"not valid hex: {value}") from exc


def _config(ctx: click.Context) -> GatewayConfig:
    return ctx.obj["config"]


def _emit(ctx: click.Context, payload: Dict[str, Any], title: str) -> None:
    if ctx.obj.get("json_output"):
        click.echo(json.dumps(payload, indent=2))
        return

    table = Table(show_header=False, box=box.ROUNDED)
    for key, value in payload.items():
        if isinstance(value, (dict, list)):
            value = json.dumps(value, indent=2)
        table.add_row(f"[cyan]{key}", str(value))
    console.print(Panel(table, title=title))


@click.group()
@click.option(
    "--environment",
    type=click.Choice([env.value for env in Environment]),
    default=None,
    help="Configuration environment (defaults to METATX_ENVIRONMENT or development).",
)
@click.option(
    "--config-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory containing default.yaml and environment files.",
)
@click.option("--json-output", is_flag=True, help="Output raw JSON")
@click.version_option(__version__, prog_name="metatx")
@click.pass_context
def cli(ctx: click.Context, environment: Optional[str], config_dir: Optional[Path], json_output: bool):
    """
    MetaTx Gateway CLI

    Build and sign EIP-712 meta-transactions for a Substrate-style ledger,
    recover signers, and run requests through a local reference gateway.
    """
    ctx.ensure_object(dict)
    try:
        manager = ConfigManager(
            environment=environment,
            config_dir=str(config_dir) if config_dir else None,
        )
    except ConfigurationError as exc:
        _handle_cli_error(exc)
    setup_logging_from_config(manager.config)
    ctx.obj["config"] = manager.config
    ctx.obj["json_output"] = json_output


@cli.command("domain")
@click.pass_context
def show_domain(ctx: click.Context):
    """Show the EIP-712 domain and its separator."""
    domain = _config(ctx).typed_data_domain()
    payload = dict(domain.to_dict())
    payload["typeString"] = domain.type_string
    payload["separator"] = "0x" + domain_separator(domain).hex()
    _emit(ctx, payload, "EIP-712 Domain")


@cli.command("keygen")
@click.pass_context
def keygen(ctx: click.Context):
    """Generate a secp256k1 key and show the account it controls."""
    private_hex, public_hex = generate_secp256k1_keypair_hex()
    account = account_from_public_key(bytes.fromhex(public_hex))
    _emit(
        ctx,
        {
            "private_key": private_hex,
            "public_key": public_hex,
            "account": account.hex(),
            "ss58": account.to_ss58(_config(ctx).account.ss58_prefix),
        },
        "New Key",
    )


@cli.command("account")
@click.argument("public_key")
@click.pass_context
def account_cmd(ctx: click.Context, public_key: str):
    """Derive the local account for a SEC1 PUBLIC_KEY (hex, compressed or not)."""
    try:
        account = account_from_public_key(_hex_bytes(public_key))
    except (ValueError, GatewayError) as exc:
        _handle_cli_error(exc)
    _emit(
        ctx,
        {"account": account.hex(), "ss58": account.to_ss58(_config(ctx).account.ss58_prefix)},
        "Account",
    )


@cli.command("digest")
@click.argument("who")
@click.argument("call_data")
@click.argument("nonce", type=click.IntRange(min=0))
@click.option("--typed-data", is_flag=True, help="Emit the full eth_signTypedData_v4 payload.")
@click.pass_context
def digest_cmd(ctx: click.Context, who: str, call_data: str, nonce: int, typed_data: bool):
    """Compute the message hash and signing digest for WHO, CALL_DATA, NONCE."""
    config = _config(ctx)
    domain = config.typed_data_domain()
    prefix = config.account.ss58_prefix
    try:
        account = AccountId.parse(who)
    except ValueError as exc:
        _handle_cli_error(exc)
    data = _hex_bytes(call_data)

    if typed_data:
        click.echo(json.dumps(typed_data_payload(domain, account, data, nonce, prefix), indent=2))
        return

    _emit(
        ctx,
        {
            "who": account.to_ss58(prefix),
            "message_hash": "0x" + message_hash(account, data, nonce, prefix).hex(),
            "digest": "0x" + signing_digest(domain, account, data, nonce, prefix).hex(),
        },
        "SubstrateCall Digest",
    )


@cli.command("sign")
@click.option("--private-key", required=True, envvar="METATX_PRIVATE_KEY", help="Hex secp256k1 private key.")
@click.option("--call-data", required=True, help="Hex-encoded action.")
@click.option("--nonce", required=True, type=click.IntRange(min=0))
@click.option("--tip", type=click.IntRange(min=0), default=None)
@click.option("--who", default=None, help="Claimed caller (defaults to the key's own account).")
@click.pass_context
def sign_cmd(
    ctx: click.Context,
    private_key: str,
    call_data: str,
    nonce: int,
    tip: Optional[int],
    who: Optional[str],
):
    """Sign a meta-transaction and print the request JSON."""
    config = _config(ctx)
    try:
        account = (
            AccountId.parse(who)
            if who
            else account_from_public_key(bytes.fromhex(compressed_public_key_from_private(private_key)))
        )
        data = _hex_bytes(call_data)
        digest = signing_digest(
            config.typed_data_domain(), account, data, nonce, config.account.ss58_prefix
        )
        signature = sign_digest(private_key, digest)
    except ValueError as exc:
        _handle_cli_error(exc)

    request = MetaTransactionRequest(
        who=account, call_data=data, nonce=nonce, signature=signature, tip=tip
    )
    click.echo(json.dumps(request.to_dict(), indent=2))


@cli.command("recover")
@click.argument("signature")
@click.argument("digest")
@click.pass_context
def recover_cmd(ctx: click.Context, signature: str, digest: str):
    """Recover the signer of a 65-byte SIGNATURE over a 32-byte DIGEST."""
    public_key = recover_public_key(_hex_bytes(signature), _hex_bytes(digest))
    if public_key is None:
        _handle_cli_error(click.ClickException("Signature does not recover to a public key"))
    account = account_from_public_key(public_key)
    _emit(
        ctx,
        {
            "public_key": public_key.to_string("compressed").hex(),
            "account": account.hex(),
            "ss58": account.to_ss58(_config(ctx).account.ss58_prefix),
        },
        "Recovered Signer",
    )


@cli.command("admit")
@click.argument("request_file", type=click.File("r"))
@click.option("--balance", type=click.IntRange(min=0), default=1_000_000, show_default=True,
              help="Balance to fund the caller with in the local ledger.")
@click.option("--execute", "run_execute", is_flag=True, help="Execute after a successful admission.")
@click.pass_context
def admit_cmd(ctx: click.Context, request_file, balance: int, run_execute: bool):
    """Run REQUEST_FILE (JSON, '-' for stdin) through a local reference gateway."""
    config = _config(ctx)
    try:
        request = MetaTransactionRequest.from_dict(json.load(request_file))
    except (json.JSONDecodeError, GatewayError) as exc:
        _handle_cli_error(exc)

    ledger = InMemoryBalanceLedger(existential_deposit=config.fees.existential_deposit)
    ledger.set_balance(request.who, balance)
    recorder = EventRecorder()
    gateway = build_reference_gateway(config, ledger=ledger, events=recorder)

    try:
        admission = gateway.validate(request)
        payload: Dict[str, Any] = {"admission": admission.to_dict()}
        if run_execute:
            receipt = gateway.execute(request)
            payload["execution"] = receipt.to_dict()
        payload["events"] = [event.to_dict() for event in recorder.events]
        payload["balance"] = ledger.free_balance(request.who)
    except GatewayError as exc:
        if ctx.obj.get("json_output"):
            click.echo(json.dumps(exc.to_dict(), indent=2))
            sys.exit(1)
        _handle_cli_error(exc)

    _emit(ctx, payload, "Gateway Result")


@cli.command("config")
@click.option("--key", help="Return a single config value via dot-notation (e.g., fees.service_fee).")
@click.pass_context
def config_show(ctx: click.Context, key: Optional[str]):
    """Display the effective configuration."""
    config = _config(ctx)
    data = config.to_dict()
    if key:
        value: Any = data
        for part in key.split("."):
            if not isinstance(value, dict) or part not in value:
                _handle_cli_error(click.ClickException(f"Unknown configuration key '{key}'."))
            value = value[part]
        click.echo(json.dumps({"key": key, "value": value}, indent=2))
        return
    click.echo(json.dumps(data, indent=2))


def main():
    """Main CLI entry point"""
    return cli(obj={})


if __name__ == "__main__":
    sys.exit(main() or 0)

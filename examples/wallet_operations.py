#!/usr/bin/env python3
"""
Wallet Connect Operations Examples

This example demonstrates:
1. Reading wallet info and capabilities
2. Creating an invoice for a donation or ticket purchase
3. Paying an invoice and reading the balance
4. Saving a connection string and running diagnostics

Usage:
    python wallet_operations.py save --connection "nostr+walletconnect://..." [--bridge http://localhost:3000/nwc]
    python wallet_operations.py info
    python wallet_operations.py invoice --amount 21000 --description "Raffle ticket"
    python wallet_operations.py pay --invoice lnbc...
    python wallet_operations.py balance
    python wallet_operations.py diagnose
"""

import argparse
import json
import sys
from dataclasses import asdict
from pathlib import Path
from typing import List, Optional

# Ensure we can import the client from the repo root
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from core.config import Config  # noqa: E402
from core.connection_store import ConnectionStore  # noqa: E402
from core.wallet_client import NWCWalletClient  # noqa: E402
from logging_config import setup_logging  # noqa: E402
from wallet_diagnostics import WalletDiagnostics  # noqa: E402
from wallet_errors import NWCError  # noqa: E402


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Nostr Wallet Connect Operations")
    parser.add_argument("--timeout", type=float, default=None, help="Request timeout in seconds")

    subparsers = parser.add_subparsers(dest="command", help="Operation to perform")

    save_parser = subparsers.add_parser("save", help="Save a wallet connection string")
    save_parser.add_argument("--connection", required=True, help="nostr+walletconnect:// URI")
    save_parser.add_argument("--bridge", default=None, help="Optional HTTP bridge URL")

    subparsers.add_parser("info", help="Show wallet info and capabilities")
    subparsers.add_parser("balance", help="Show wallet balance")

    invoice_parser = subparsers.add_parser("invoice", help="Create an invoice")
    invoice_parser.add_argument("--amount", type=int, required=True, help="Amount in millisatoshis")
    invoice_parser.add_argument("--description", default="", help="Invoice description")
    invoice_parser.add_argument("--expiry", type=int, default=3600, help="Expiry in seconds")

    pay_parser = subparsers.add_parser("pay", help="Pay an invoice")
    pay_parser.add_argument("--invoice", required=True, help="BOLT11 invoice")
    pay_parser.add_argument("--amount", type=int, default=None, help="Amount override in millisatoshis")

    subparsers.add_parser("diagnose", help="Run connection diagnostics")

    return parser


def _print(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def run_diagnostics(config: Config, store: ConnectionStore) -> int:
    connection_string = config.NWC_CONNECTION_STRING
    bridge_url = config.NWC_BRIDGE_URL
    if not connection_string:
        record = store.load()
        connection_string = record.connection_string if record else ""
        bridge_url = bridge_url or (record.bridge_url if record else None)

    diagnostics = WalletDiagnostics(
        connection_string,
        bridge_url=bridge_url,
        bridge_api_key=config.NWC_BRIDGE_API_KEY,
    )
    try:
        results = diagnostics.run_full_diagnostics()
    finally:
        diagnostics.close()

    print(WalletDiagnostics.format_report(results))
    return 0 if all(r.success for r in results.values()) else 1


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 2

    config = Config()
    setup_logging(config)
    store = ConnectionStore(config.NWC_CONNECTION_STORE_PATH)

    try:
        if args.command == "save":
            record = store.save(args.connection, bridge_url=args.bridge)
            print(f"Saved connection for wallet {record.descriptor.wallet_pubkey[:8]}...")
            return 0

        if args.command == "diagnose":
            return run_diagnostics(config, store)

        with NWCWalletClient.from_config(config, store=store) as client:
            if args.command == "info":
                _print(asdict(client.get_info(timeout=args.timeout)))

            elif args.command == "balance":
                balance = client.get_balance(timeout=args.timeout)
                _print({"balance_millisats": balance, "balance_sats": balance // 1000})

            elif args.command == "invoice":
                invoice = client.make_invoice(args.amount, args.description, args.expiry, timeout=args.timeout)
                _print(asdict(invoice))

            elif args.command == "pay":
                payment = client.pay_invoice(args.invoice, args.amount, timeout=args.timeout)
                _print(asdict(payment))

    except NWCError as e:
        print(f"Error: {e.user_message}", file=sys.stderr)
        _print(e.to_dict())
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())

from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import datetime

from chatbridge.config.settings import ConfigurationError, get_settings
from chatbridge.logging.setup import configure_logging
from chatbridge.persistence.store import BridgeStore
from chatbridge.services.pairing_service import PairingService

CHANNELS = ("telegram", "whatsapp")


def _open_store() -> BridgeStore:
    return BridgeStore(get_settings().db_path)


def _format_ms(value: int | None) -> str:
    if value is None:
        return "never"
    return datetime.fromtimestamp(value / 1000).strftime("%Y-%m-%d %H:%M:%S")


def cmd_start(_: argparse.Namespace) -> int:
    from chatbridge.main import main as run_main

    return run_main()


def cmd_pairing_code(args: argparse.Namespace) -> int:
    store = _open_store()
    try:
        code = PairingService(store).resolve_standing_code(args.set)
    finally:
        store.close()
    print(code)
    return 0


def cmd_pairing_list(args: argparse.Namespace) -> int:
    store = _open_store()
    try:
        requests = PairingService(store).list_requests(args.channel)
    finally:
        store.close()
    if not requests:
        print(f"No pending pairing requests on {args.channel}.")
        return 0
    for request in requests:
        print(f"{request.code}  {request.peer_id}  expires {_format_ms(request.expires_at)}")
    return 0


def cmd_pairing_approve(args: argparse.Namespace) -> int:
    store = _open_store()
    try:
        peer_id = PairingService(store).approve(args.channel, args.code)
    finally:
        store.close()
    if peer_id is None:
        print(f"Pairing code not found on {args.channel}.", file=sys.stderr)
        return 1
    print(f"Approved {peer_id} on {args.channel}.")
    return 0


def cmd_allow(args: argparse.Namespace) -> int:
    store = _open_store()
    try:
        store.allow_peer(args.channel, args.peer)
    finally:
        store.close()
    print(f"Allowed {args.peer} on {args.channel}.")
    return 0


def cmd_allowlist(args: argparse.Namespace) -> int:
    store = _open_store()
    try:
        entries = store.list_allowlist(args.channel)
    finally:
        store.close()
    if not entries:
        print(f"No allowed peers on {args.channel}.")
        return 0
    for entry in entries:
        print(f"{entry.peer_id}  since {_format_ms(entry.created_at)}")
    return 0


def cmd_whatsapp_status(_: argparse.Namespace) -> int:
    from chatbridge.gateway.whatsapp_session import has_credentials

    auth_dir = get_settings().whatsapp_auth_dir
    if has_credentials(auth_dir):
        print(f"WhatsApp linked ({auth_dir}).")
        return 0
    print("WhatsApp not linked. Run `chatbridge whatsapp-login`.")
    return 1


async def _whatsapp_login(timeout_seconds: float) -> None:
    from chatbridge.gateway.whatsapp import load_transport_factory
    from chatbridge.gateway.whatsapp_session import SecureSessionManager

    settings = get_settings()
    session = SecureSessionManager(
        settings.whatsapp_auth_dir,
        load_transport_factory(settings.whatsapp_transport),
        print_qr=True,
        on_status=print,
    )
    await session.connect()
    try:
        await session.wait_for_connection(int(timeout_seconds * 1000))
    finally:
        await session.drain()
        session.close()


def cmd_whatsapp_login(args: argparse.Namespace) -> int:
    try:
        asyncio.run(_whatsapp_login(args.timeout))
    except ConfigurationError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    except Exception as exc:
        print(f"WhatsApp login failed: {exc}", file=sys.stderr)
        return 1
    print("WhatsApp linked.")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="chatbridge")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("start")

    code = sub.add_parser("pairing-code")
    code.add_argument("--set", metavar="CODE", default=None)

    pairing = sub.add_parser("pairing")
    pairing_sub = pairing.add_subparsers(dest="pairing_cmd", required=True)
    pairing_list = pairing_sub.add_parser("list")
    pairing_list.add_argument("channel", choices=CHANNELS)
    pairing_approve = pairing_sub.add_parser("approve")
    pairing_approve.add_argument("channel", choices=CHANNELS)
    pairing_approve.add_argument("code")

    allow = sub.add_parser("allow")
    allow.add_argument("channel", choices=CHANNELS)
    allow.add_argument("peer")

    allowlist = sub.add_parser("allowlist")
    allowlist.add_argument("channel", choices=CHANNELS)

    login = sub.add_parser("whatsapp-login")
    login.add_argument("--timeout", type=float, default=120.0, metavar="SECONDS")

    sub.add_parser("whatsapp-status")

    args = parser.parse_args(argv)
    configure_logging(get_settings().log_level)
    if args.cmd == "pairing":
        return {
            "list": cmd_pairing_list,
            "approve": cmd_pairing_approve,
        }[args.pairing_cmd](args)
    return {
        "start": cmd_start,
        "pairing-code": cmd_pairing_code,
        "allow": cmd_allow,
        "allowlist": cmd_allowlist,
        "whatsapp-status": cmd_whatsapp_status,
        "whatsapp-login": cmd_whatsapp_login,
    }[args.cmd](args)


if __name__ == "__main__":
    raise SystemExit(main())

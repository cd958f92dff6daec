# Main Entry Point
#
# `vaultsync serve` runs the reference sync server.
# Every other subcommand unlocks a vault (prompting for the master
# password), turns the arguments into one explicit command, and commits it.

import argparse
import asyncio
import getpass
import sys
from typing import List, Optional

from . import __version__
from .config import ClientSettings, ServerSettings
from .core import EventSeverity, EventType, get_audit_logger
from .exceptions import NetworkUnavailable, VaultSyncError
from .sync import LocalCache, ReconciliationStateMachine, SyncClient
from .vault import AddEntry, DeleteEntry, EditEntry


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vaultsync",
        description="vaultsync - end-to-end encrypted password vault with multi-device sync",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"vaultsync v{__version__}",
    )
    parser.add_argument("--server", help="Sync server URL (default: VAULTSYNC_SERVER_URL)")
    parser.add_argument("--cache", help="Local cache database path (default: VAULTSYNC_CACHE_PATH)")

    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the sync server")
    serve.add_argument("--host", help="Host to bind (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, help="Port to listen on (default: 8000)")
    serve.add_argument("--db", help="Server database path (default: data/vaults.db)")

    for name, help_text in (
        ("create", "Create a new empty vault on the server"),
        ("list", "Unlock and list entries"),
        ("reset", "Discard unsynced local changes and reload from the server"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("-u", "--user", required=True)

    add = sub.add_parser("add", help="Add an entry")
    add.add_argument("-u", "--user", required=True)
    add.add_argument("--name", required=True)
    add.add_argument("--login", default="", help="Account username")
    add.add_argument("--email", default="")
    add.add_argument("--url", default="")

    edit = sub.add_parser("edit", help="Edit an entry")
    edit.add_argument("-u", "--user", required=True)
    edit.add_argument("entry_id")
    edit.add_argument("--name")
    edit.add_argument("--login")
    edit.add_argument("--email")
    edit.add_argument("--url")
    edit.add_argument("--new-password", action="store_true", help="Prompt for a new secret")

    delete = sub.add_parser("delete", help="Delete an entry")
    delete.add_argument("-u", "--user", required=True)
    delete.add_argument("entry_id")

    return parser


def _client_settings(args) -> ClientSettings:
    settings = ClientSettings.from_env()
    if args.server:
        settings.server_url = args.server
    if args.cache:
        settings.cache_path = ClientSettings(cache_path=args.cache).cache_path
    return settings


def _build_command(args):
    if args.command == "add":
        secret = getpass.getpass(f"Secret for {args.name}: ")
        return AddEntry(
            name=args.name, username=args.login, email=args.email, password=secret, url=args.url
        )
    if args.command == "edit":
        secret = getpass.getpass("New secret: ") if args.new_password else None
        return EditEntry(
            entry_id=args.entry_id,
            name=args.name,
            username=args.login,
            email=args.email,
            url=args.url,
            password=secret,
        )
    if args.command == "delete":
        return DeleteEntry(entry_id=args.entry_id)
    return None


def _print_entries(session) -> None:
    entries = session.entries()
    if not entries:
        print("  (vault is empty)")
    for entry in entries:
        who = entry.username or entry.email
        print(f"  {entry.id}  {entry.name:<24} {who:<28} {entry.url}")


async def run_client(args, settings: ClientSettings) -> int:
    password = getpass.getpass("Master password: ")
    command = _build_command(args)

    async with SyncClient.from_settings(settings) as client:
        machine = ReconciliationStateMachine(client, LocalCache(settings.cache_path), settings)
        result = await machine.unlock(args.user, password, create_new=args.command == "create")

        if not result.ok:
            print(f"Error: {result.error}", file=sys.stderr)
            return 1
        if result.warning:
            print(f"Warning: {result.warning}", file=sys.stderr)

        session = result.session
        try:
            if args.command == "reset":
                await machine.discard_local_changes(session)
                print(f"Reloaded vault from server (counter {session.counter})")
            elif command is not None:
                commit = await machine.execute(session, command)
                if commit.warning:
                    print(f"Warning: {commit.warning}", file=sys.stderr)
                else:
                    print(f"Saved (counter {commit.counter})")
            elif args.command == "create":
                print(f"Vault created for {args.user}")

            if args.command in ("list", "add", "edit"):
                _print_entries(session)
        except KeyError as e:
            print(f"Error: no entry with id {e.args[0]}", file=sys.stderr)
            return 1
        except NetworkUnavailable as e:
            print(f"Error: server unreachable: {e}", file=sys.stderr)
            return 1
        except VaultSyncError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        finally:
            session.close()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for vaultsync."""
    args = build_parser().parse_args(argv)

    if args.command == "serve":
        settings = ServerSettings.from_env()
        if args.host:
            settings.host = args.host
        if args.port:
            settings.port = args.port
        if args.db:
            settings.db_path = ServerSettings(db_path=args.db).db_path

        from .server import start_server

        get_audit_logger().log_event(
            event_type=EventType.SYSTEM_START,
            severity=EventSeverity.INFO,
            message="vaultsync server starting",
            details={"version": __version__, "host": settings.host, "port": settings.port},
        )
        try:
            start_server(settings)
        except KeyboardInterrupt:
            print("\n\nShutting down server...")
        get_audit_logger().log_event(
            event_type=EventType.SYSTEM_STOP,
            severity=EventSeverity.INFO,
            message="vaultsync server stopped",
        )
        return 0

    try:
        return asyncio.run(run_client(args, _client_settings(args)))
    except KeyboardInterrupt:
        print("\nAborted.", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())

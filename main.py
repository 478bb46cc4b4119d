"""Command-line interface for the Digital Diary service."""

from __future__ import annotations
import argparse
import logging
import os
import sys
from typing import Sequence

from diary.config import load_directory_from_env
from diary.database import Database, resolve_database_path

logger = logging.getLogger("diary.main")

_KNOWN_COMMANDS = {"serve", "init-db", "list-users", "grant-admin", "revoke-admin"}


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Digital Diary utilities")
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    subparsers.add_parser("init-db", help="Initialise the diary database")
    subparsers.add_parser("list-users", help="List registered accounts and their roles")

    serve_parser = subparsers.add_parser("serve", help="Start the diary web service")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address for the web service")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port for the web service (default: 8000)",
    )
    serve_parser.add_argument(
        "--ssl-certfile",
        default=None,
        help="Path to the TLS certificate chain in PEM format",
    )
    serve_parser.add_argument(
        "--ssl-keyfile",
        default=None,
        help="Path to the TLS private key in PEM format",
    )

    for name, help_text in (
        ("grant-admin", "Give an account the admin role"),
        ("revoke-admin", "Remove the admin role from an account"),
    ):
        role_parser = subparsers.add_parser(name, help=help_text)
        role_parser.add_argument(
            "account",
            help="Allow-listed username or account email address",
        )

    args_list = list(argv) if argv is not None else sys.argv[1:]

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if first not in _KNOWN_COMMANDS:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args(args_list)
            args_list = ["serve", *args_list]

    return parser.parse_args(args_list)


def _initialise_database() -> Database:
    db_path = resolve_database_path(os.getenv("DIARY_DB_PATH"))
    database = Database(db_path)
    database.initialize()
    logger.info("Database initialised at %s", db_path)
    return database


def _serve(
    *,
    host: str,
    port: int,
    ssl_certfile: str | None,
    ssl_keyfile: str | None,
) -> None:
    from diary.web import create_app
    import uvicorn

    if bool(ssl_certfile) ^ bool(ssl_keyfile):
        raise SystemExit("Both --ssl-certfile and --ssl-keyfile must be provided together.")

    protocol = "https" if ssl_certfile and ssl_keyfile else "http"
    logger.info("Starting diary service on %s://%s:%s", protocol, host, port)

    app = create_app()
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="info",
        ssl_certfile=ssl_certfile,
        ssl_keyfile=ssl_keyfile,
    )


def _resolve_account_email(account: str) -> str:
    if "@" in account:
        return account.strip().lower()
    entry = load_directory_from_env().lookup(account)
    if entry is None:
        raise SystemExit(f"Unknown user '{account}'. Use an allow-listed username or an email address.")
    return entry.email


def _set_admin(database: Database, account: str, is_admin: bool) -> None:
    email = _resolve_account_email(account)
    if not database.set_admin(email, is_admin):
        raise SystemExit(
            f"No account registered for {email}. The user must sign in once before roles can be changed."
        )
    role = "admin" if is_admin else "regular user"
    print(f"{email} is now a {role}.")


def _list_users(database: Database) -> None:
    accounts = database.list_accounts()
    if not accounts:
        print("No accounts are currently registered.")
        return

    print(f"{len(accounts)} account(s) found:")
    print(f"{'Email':<36}  {'Role':<6}  Created")
    print("-" * 72)
    for account in accounts:
        created = account["created_at"].strftime("%Y-%m-%d %H:%M:%S %Z")
        role = "admin" if account["is_admin"] else "user"
        print(f"{account['email']:<36}  {role:<6}  {created}")


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    args = _parse_args(argv)

    if args.command == "serve":
        _serve(
            host=args.host,
            port=args.port,
            ssl_certfile=args.ssl_certfile,
            ssl_keyfile=args.ssl_keyfile,
        )
        return

    database = _initialise_database()
    if args.command == "init-db":
        print("Database initialisation complete.")
    elif args.command == "list-users":
        _list_users(database)
    elif args.command == "grant-admin":
        _set_admin(database, args.account, True)
    elif args.command == "revoke-admin":
        _set_admin(database, args.account, False)


if __name__ == "__main__":
    main()

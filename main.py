#!/usr/bin/env python3
"""
Iceblink sync server - backup and sync service for the Iceblink 2FA manager.
"""

import argparse
import logging
import os
import sys

# Flag name -> environment variable read by iceblink.config.
_SETTINGS = {
    "port": "PORT",
    "jwt_secret": "JWT_SECRET",
    "client_id": "CLIENT_ID",
    "client_secret": "CLIENT_SECRET",
    "oauth_server": "OAUTH_SERVER",
    "redirect_uri": "REDIRECT_URI",
    "frontfacing": "FRONTFACING",
    "database_url": "DATABASE_URL",
}


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def _export_settings(args: argparse.Namespace) -> None:
    # Flags win over the environment; config is loaded (once) from os.environ afterwards.
    for attr, env_name in _SETTINGS.items():
        value = getattr(args, attr, None)
        if value is not None:
            os.environ[env_name] = str(value)


def _add_server_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--port", type=int, help="Listen port (env: PORT, default: 8085)")
    parser.add_argument("--jwt-secret", help="Secret used to sign session tokens (env: JWT_SECRET)")
    parser.add_argument("--client-id", help="OAuth client id (env: CLIENT_ID)")
    parser.add_argument("--client-secret", help="OAuth client secret (env: CLIENT_SECRET)")
    parser.add_argument("--oauth-server", help="OpenID Connect provider base URL (env: OAUTH_SERVER)")
    parser.add_argument("--redirect-uri", help="Default OAuth redirect URI (env: REDIRECT_URI)")
    parser.add_argument("--frontfacing", help="Public URL of this server (env: FRONTFACING)")
    parser.add_argument("--database-url", help="Postgres connection string (env: DATABASE_URL)")


def main() -> int:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Sync and backup service for the Iceblink 2FA manager",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the server (settings from the environment or flags)
  python main.py serve --port 8085

  # Apply database migrations and exit
  python main.py migrate
        """,
    )
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "info"), help="Log level (default: info)")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP server")
    serve.add_argument("--host", default="0.0.0.0", help="Bind host (default: 0.0.0.0)")
    _add_server_options(serve)

    mig = sub.add_parser("migrate", help="Apply pending database migrations")
    mig.add_argument("--database-url", help="Postgres connection string (env: DATABASE_URL)")

    args = parser.parse_args()
    _configure_logging(args.log_level)
    os.environ["LOG_LEVEL"] = args.log_level
    _export_settings(args)

    if args.command == "migrate":
        from iceblink.config import build_database_url
        from iceblink.storage.migrate import apply_migrations

        dsn = build_database_url()
        if not dsn:
            print("Postgres not configured (set DATABASE_URL or POSTGRES_* env vars).")
            return 2
        applied = apply_migrations(dsn)
        if applied:
            print(f"Applied {len(applied)} migration(s): {', '.join(applied)}")
        else:
            print("No pending migrations.")
        return 0

    from iceblink.api.server import run
    from iceblink.config import load_server_config

    try:
        cfg = load_server_config()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    run(host=args.host, port=cfg.port)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

"""
Command line entry point.

    python -m eclipse_backend serve [--host H] [--port P]
    python -m eclipse_backend init-db
    python -m eclipse_backend prune-events [--days N]
"""
import argparse
import sys

from eclipse_backend.core.config import settings
from eclipse_backend.core.logging import configure_logging


def _serve(args) -> int:
    import uvicorn

    uvicorn.run(
        "eclipse_backend.main:app",
        host=args.host or settings.HOST,
        port=args.port or settings.PORT,
        reload=args.reload,
    )
    return 0


def _init_db(args) -> int:
    from eclipse_backend.core.database import create_all_tables, get_engine

    create_all_tables()
    print(f"Tables created on {get_engine().url.render_as_string(hide_password=True)}")
    return 0


def _prune_events(args) -> int:
    from eclipse_backend.features.billing.service import prune_processed_events

    removed = prune_processed_events(retention_days=args.days)
    print(f"Pruned {removed} processed event(s)")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="eclipse_backend", description="Eclipse entitlement backend")
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the HTTP server (default)")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)
    serve.add_argument("--reload", action="store_true")
    serve.set_defaults(func=_serve)

    init_db = sub.add_parser("init-db", help="Create entitlement tables")
    init_db.set_defaults(func=_init_db)

    prune = sub.add_parser("prune-events", help="Drop processed event ids past retention")
    prune.add_argument(
        "--days",
        type=int,
        default=None,
        help=f"Retention in days (default: PROCESSED_EVENT_RETENTION_DAYS={settings.PROCESSED_EVENT_RETENTION_DAYS})",
    )
    prune.set_defaults(func=_prune_events)

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        args = parser.parse_args(["serve"] + list(argv or []))
    configure_logging(settings.ENV)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))

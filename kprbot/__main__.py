#!/usr/bin/env python3
# KPR Bot - Command Line
# =======================
"""
KPR Bot command line.

Usage:
    python -m kprbot serve                       # HTTP API on HTTP_HOST:HTTP_PORT
    python -m kprbot ask "status pengajuan saya" --phone 62811222333
    python -m kprbot schema                      # show the parsed catalog
    python -m kprbot schema --ddl other.sql
"""

import sys
import argparse
import logging

from kprbot.config import BotConfig
from kprbot.engine.errors import KPRBotError
from kprbot.engine.schema_catalog import SchemaCatalog

logger = logging.getLogger("kprbot")


def cmd_serve(args, config: BotConfig) -> int:
    import uvicorn

    host = args.host or config.http_host
    port = args.port or config.http_port
    logger.info(f"Serving on {host}:{port}")
    uvicorn.run("kprbot.api.main:app", host=host, port=port, log_level="info")
    return 0


def cmd_ask(args, config: BotConfig) -> int:
    from kprbot.services import create_services

    services = create_services(config)
    try:
        if args.phone:
            result = services.composer.answer_for_identity(args.phone, args.text)
        else:
            result = services.composer.answer(args.text)
    finally:
        services.close()

    print(result.answer)
    if args.verbose:
        print(f"\n[data_intent={result.data_intent} table={result.table or '-'} rows={result.row_count}]")
    return 0


def cmd_schema(args, config: BotConfig) -> int:
    path = args.ddl or config.ddl_path
    catalog = SchemaCatalog.from_file(path)

    print(f"Schema: {path}")
    print(f"Tables ({len(catalog.tables)}): {catalog.tables_text()}")
    for table in catalog.sorted_tables():
        columns = catalog.columns_for(table)
        print(f"  {table}: {', '.join(columns) if columns else '(no declared columns)'}")
    enums = catalog.enums_text()
    if enums:
        print(f"Enums: {enums}")
    return 0


def main(argv=None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="kprbot",
        description="KPR assistant: privacy-safe question answering over the KPR database",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--env-file", help="Load settings from this .env file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", help="Bind address (default HTTP_HOST)")
    serve.add_argument("--port", type=int, help="Bind port (default HTTP_PORT)")
    serve.set_defaults(func=cmd_serve)

    ask = sub.add_parser("ask", help="Answer one question and exit")
    ask.add_argument("text", help="Question text")
    ask.add_argument("--phone", help="Answer as this phone number")
    ask.set_defaults(func=cmd_ask)

    schema = sub.add_parser("schema", help="Show the parsed schema catalog")
    schema.add_argument("--ddl", help="DDL file (default DDL_PATH)")
    schema.set_defaults(func=cmd_schema)

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    config = BotConfig.from_env(args.env_file)
    try:
        return args.func(args, config)
    except KPRBotError as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())

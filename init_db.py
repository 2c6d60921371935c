"""Create the assets, import_jobs and import_chunks tables.

Usage: ``python init_db.py [--drop]``. With ``--drop`` every table is dropped
and recreated, which deletes all imported data.
"""
import argparse
import asyncio
import sys

from am_ingest.config import settings
from am_ingest.db import build_engine, create_schema
from am_ingest.models import Base


async def init_database(drop_existing: bool) -> None:
    engine = build_engine(settings.db)
    try:
        await create_schema(engine, drop_existing=drop_existing)
    finally:
        await engine.dispose()


def run(argv: list[str]) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--drop", action="store_true", help="drop existing tables first")
    args = parser.parse_args(argv)

    target = settings.db.url.rsplit("@", 1)[-1]
    print(f"Schema target: {target}")
    try:
        asyncio.run(init_database(args.drop))
    except Exception as e:
        print(f"Schema creation failed: {e}", file=sys.stderr)
        return 1

    action = "Recreated" if args.drop else "Ensured"
    print(f"{action} tables: {', '.join(Base.metadata.tables)}")
    return 0


if __name__ == "__main__":
    sys.exit(run(sys.argv[1:]))

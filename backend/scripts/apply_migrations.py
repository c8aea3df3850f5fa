"""Apply every SQL file under backend/migrations in filename order."""

import argparse
import asyncio
import sys
from pathlib import Path

from app.infra.postgres import close_pool, get_pool

MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "migrations"


async def apply_migrations(only: str | None = None) -> None:
    files = sorted(MIGRATIONS_DIR.glob("*.sql"))
    if only:
        files = [path for path in files if path.name == only]
        if not files:
            print(f"Migration file not found: {only}")
            sys.exit(1)

    pool = await get_pool()
    try:
        async with pool.acquire() as conn:
            for path in files:
                print(f"Applying {path.name}...")
                async with conn.transaction():
                    await conn.execute(path.read_text(encoding="utf-8"))
                print(f"Finished {path.name}")
    finally:
        await close_pool()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("filename", nargs="?", help="apply a single migration file by name")
    args = parser.parse_args()

    if sys.platform == "win32":
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())
    asyncio.run(apply_migrations(args.filename))

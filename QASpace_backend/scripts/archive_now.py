"""Run one archive sweep, or archive a single space, outside the API server."""
import argparse
import asyncio
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.database import create_tables, engine  # noqa: E402
from app.errors import ServiceError  # noqa: E402
from app.services.archiving import ArchivingScheduler  # noqa: E402


async def run(space_id: int | None, force: bool) -> int:
    await create_tables()
    archiver = ArchivingScheduler()
    try:
        if space_id is None:
            count = await archiver.archive_expired_spaces()
            print(f"Archived {count} expired space(s)")
        else:
            summary = await archiver.archive_space(space_id, force=force)
            print(f"Space {space_id} archived as session {summary.session_id}")
    except ServiceError as exc:
        print(f"error: {exc.message}", file=sys.stderr)
        return 1
    finally:
        await engine.dispose()
    return 0


def main():
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--space", type=int, help="archive only this space id")
    parser.add_argument("--force", action="store_true", help="re-archive a space that is no longer active")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    sys.exit(asyncio.run(run(args.space, args.force)))


if __name__ == "__main__":
    main()

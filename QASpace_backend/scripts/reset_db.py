import asyncio
import sys
from pathlib import Path


async def recreate_db():
    backend_root = Path(__file__).resolve().parents[1]
    # Ensure backend root on import path
    sys.path.insert(0, str(backend_root))

    from app.config import settings  # type: ignore
    db_path = Path(settings.DATABASE_PATH)
    if not db_path.is_absolute():
        db_path = backend_root / db_path
    # Remove existing SQLite file
    if db_path.exists():
        db_path.unlink()

    from app.database import create_tables, engine  # type: ignore
    await create_tables()
    await engine.dispose()
    return db_path


if __name__ == '__main__':
    path = asyncio.run(recreate_db())
    print(f'Database recreated at {path}.')

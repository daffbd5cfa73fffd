#!/usr/bin/env python3
"""
Initialize the Hive database - create tables and the default project.

Usage:
    python scripts/init_hive_db.py [--no-default-project]

Uses DATABASE_URL from the environment (or .env), like the app itself.
"""

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

from sqlalchemy import select

from hive.core.config import settings
from hive.core.database import close_db, get_db_session, init_db
from hive.core.models import Project

DEFAULT_PROJECT = "General"


async def init_hive_db(create_default_project: bool = True) -> bool:
    """Create missing tables and, if asked, the default project."""
    await init_db()
    print(f"Tables ready at {settings.DATABASE_URL}")

    if create_default_project:
        async with get_db_session() as session:
            existing = await session.scalar(
                select(Project.id).where(Project.name == DEFAULT_PROJECT)
            )
            if existing is None:
                session.add(Project(name=DEFAULT_PROJECT, description="Default project"))
                print(f"  Created project: {DEFAULT_PROJECT}")
            else:
                print(f"  Project exists: {DEFAULT_PROJECT} (id={existing})")

    await close_db()
    return True


def main():
    create_default_project = "--no-default-project" not in sys.argv[1:]
    success = asyncio.run(init_hive_db(create_default_project))
    print("Hive database initialized" if success else "Initialization failed")
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()

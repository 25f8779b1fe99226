"""
Script to run Alembic migrations of the billing database
Usage: python run_migrations.py [revision]
"""
import sys
import traceback

from alembic import command
from alembic.config import Config

from config.settings import get_settings


def run_migrations(revision: str = "head") -> int:
    """Upgrade the database configured by DATABASE_URL to `revision`"""
    try:
        alembic_cfg = Config("alembic.ini")
        settings = get_settings()

        print(f"Running Alembic migrations up to '{revision}'...")
        command.upgrade(alembic_cfg, revision)

        print("✓ Migrations applied successfully!")
        print("Current database revision:")
        command.current(alembic_cfg, verbose=settings.DB_ECHO)
        return 0

    except Exception as e:
        print(f"✗ Error applying migrations: {e}")
        traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(run_migrations(sys.argv[1] if len(sys.argv) > 1 else "head"))

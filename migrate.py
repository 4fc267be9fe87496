"""
Apply database migrations without starting the web server.

Usage:
  python migrate.py            # upgrade to the latest revision
  python migrate.py 001_initial

Migrations live in ./migrations and are applied with Alembic.
"""

import os
import sys
import logging

from alembic import command
from alembic.config import Config
from dotenv import load_dotenv

MIGRATIONS_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'migrations')


def alembic_config():
    config = Config()
    config.set_main_option('script_location', MIGRATIONS_DIR)
    return config


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    revision = argv[0] if argv else 'head'
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
    if not os.environ.get('DATABASE_URL', '').strip():
        print("✗ DATABASE_URL is not set.", file=sys.stderr)
        return 1

    try:
        print(f"Applying database migrations (target: {revision})...")
        command.upgrade(alembic_config(), revision)
        print("✓ Migrations completed successfully.")
    except Exception as e:
        print(f"✗ Migration failed: {e}", file=sys.stderr)
        logging.exception("Migration failed")
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())

#!/usr/bin/env python3
"""
Create the foosball tables (players, teams, matches, team_matches) in the
PostgreSQL database named by DATABASE_URL.
"""
import os
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from foosball.datastore_pg import Datastore  # noqa: E402


def main():
    """Create the schema; safe to run repeatedly."""
    database_url = os.environ.get('DATABASE_URL')
    if not database_url:
        print("Error: DATABASE_URL environment variable not set")
        return 1

    store = Datastore(database_url)
    print("Creating database schema...")
    try:
        store.create_schema()
        info = store.ping()
    except Exception as e:
        print(f"Error during schema creation: {e}")
        return 1
    print(f"Schema ready on {info['database']} ({info['server_version']})")
    return 0


if __name__ == "__main__":
    sys.exit(main())

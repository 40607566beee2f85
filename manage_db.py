#!/usr/bin/env python3
"""
Database management script for deployment.
Run this during the build/deployment pipeline to create tables and seed the catalog.
"""
import os
import sys

from sqlalchemy.exc import SQLAlchemyError

# Add current directory to path so we can import arena
sys.path.append(os.getcwd())

from arena.app import create_app
from arena.catalog import TournamentCatalog


def deploy():
    """Run deployment tasks."""
    print("Preparing database...")
    app = create_app()
    with app.app_context():
        try:
            created = TournamentCatalog().seed_catalog()
            print(f"✓ Tables ready, {created} tournament(s) seeded.")
        except SQLAlchemyError as e:
            print(f"Error preparing database: {e}")
            sys.exit(1)


if __name__ == '__main__':
    deploy()

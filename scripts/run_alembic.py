#!/usr/bin/env python3
"""Runs alembic with the repository root importable, e.g. `scripts/run_alembic.py upgrade head`."""
import os
import sys

# Repository root on sys.path so alembic/env.py can import `coordinator`
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from alembic.config import main

if __name__ == '__main__':
    sys.exit(main())

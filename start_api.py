#!/usr/bin/env python3
"""
Wait for the database, run migrations, seed the fleet, then exec uvicorn.
"""
import os
import sys

from app.core.config import settings
from wait_for_db import wait_for_postgres

# 1) Wait for DB
wait_for_postgres(settings.DATABASE_URL, int(os.getenv("DB_WAIT_TIMEOUT", "60")))

# 2) Run migrations using the same settings as the app
from alembic.config import Config
from alembic import command

alembic_cfg = Config(os.path.join(os.path.dirname(os.path.abspath(__file__)), "alembic.ini"))
alembic_cfg.set_main_option("sqlalchemy.url", settings.DATABASE_URL)
command.upgrade(alembic_cfg, "head")

# 3) Seed cars if the fleet is empty
from app.seed import run as run_seed
run_seed()

# 4) Start uvicorn (replace current process)
port = os.getenv("PORT", "8000")
os.execv(
    sys.executable,
    [sys.executable, "-m", "uvicorn", "app.main:app", "--host", "0.0.0.0", "--port", port],
)

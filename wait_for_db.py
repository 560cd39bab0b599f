import os, time
from urllib.parse import urlparse

import psycopg2


def wait_for_postgres(database_url: str, timeout_s: int = 60) -> None:
    """Block until Postgres accepts connections. SQLite URLs return immediately."""
    if database_url.startswith("sqlite"):
        return
    # SQLAlchemy URL may start with postgres://, postgresql+psycopg2:// etc.
    url = database_url.split("://", 1)[-1]
    p = urlparse("postgresql://" + url)

    params = dict(
        host=p.hostname or "db",
        port=p.port or 5432,
        user=p.username or "rentals",
        password=p.password or "rentals",
        dbname=(p.path or "/rentals").lstrip("/") or "rentals",
    )
    start = time.time()
    print(f"[wait_for_db] Waiting for Postgres at {params['host']}:{params['port']} db={params['dbname']} (timeout={timeout_s}s)")
    while True:
        try:
            psycopg2.connect(connect_timeout=3, **params).close()
            print("[wait_for_db] Postgres is ready.")
            return
        except psycopg2.OperationalError as e:
            if time.time() - start > timeout_s:
                print(f"[wait_for_db] Timed out waiting for DB. Last error: {e}")
                raise
            time.sleep(1)


if __name__ == "__main__":
    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        raise SystemExit("DATABASE_URL is not set")
    wait_for_postgres(db_url, int(os.getenv("DB_WAIT_TIMEOUT", "60")))

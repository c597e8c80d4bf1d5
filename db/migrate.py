from __future__ import annotations

import hashlib
import importlib.util
import os
import re
import sqlite3
from datetime import datetime, timezone
from pathlib import Path


MIGRATION_RE = re.compile(r"^(\d{4})_([a-zA-Z0-9_]+)\.(sql|py)$")


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _checksum_file(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()


def _ensure_migration_table(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            checksum TEXT NOT NULL,
            applied_at_utc TEXT NOT NULL
        )
        """
    )
    conn.commit()


def _load_applied(conn: sqlite3.Connection) -> dict[str, tuple[str, str]]:
    rows = conn.execute("SELECT version, name, checksum FROM schema_migrations").fetchall()
    return {str(version): (str(name), str(checksum)) for version, name, checksum in rows}


def _discover(base: Path) -> list[tuple[str, str, str, Path]]:
    found: list[tuple[str, str, str, Path]] = []
    seen_versions: dict[str, str] = {}
    for p in sorted(base.iterdir()):
        if not p.is_file():
            continue
        m = MIGRATION_RE.match(p.name)
        if not m:
            continue
        version, name, ext = m.group(1), m.group(2), m.group(3)
        if version in seen_versions:
            raise RuntimeError(f"Duplicate migration version {version}: {seen_versions[version]} and {p.name}")
        seen_versions[version] = p.name
        found.append((version, name, ext, p))
    return found


def _run_py(conn: sqlite3.Connection, path: Path) -> None:
    spec = importlib.util.spec_from_file_location(f"ccbot_migration_{path.stem}", str(path))
    if spec is None or spec.loader is None:
        raise RuntimeError(f"Could not load migration module: {path}")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    upgrade = getattr(module, "upgrade", None)
    if not callable(upgrade):
        raise RuntimeError(f"Python migration missing upgrade(conn): {path}")
    upgrade(conn)


def apply_sqlite_migrations(conn: sqlite3.Connection, migrations_dir: str) -> list[str]:
    """Apply pending migrations in version order; returns the versions applied."""
    base = Path(migrations_dir)
    if not base.exists():
        raise RuntimeError(f"Migrations directory not found: {migrations_dir}")
    _ensure_migration_table(conn)
    applied = _load_applied(conn)

    newly_applied: list[str] = []
    for version, name, ext, path in _discover(base):
        checksum = _checksum_file(path)
        existing = applied.get(version)
        if existing:
            old_name, old_checksum = existing
            if old_name != name or old_checksum != checksum:
                raise RuntimeError(
                    f"Migration version {version} already applied with different content "
                    f"(existing name={old_name}, file name={name})."
                )
            continue

        print(f"[DB] Applying migration {version}_{name}.{ext}")
        if ext == "sql":
            conn.executescript(path.read_text(encoding="utf-8"))
        else:
            _run_py(conn, path)

        conn.execute(
            "INSERT INTO schema_migrations (version, name, checksum, applied_at_utc) VALUES (?, ?, ?, ?)",
            (version, name, checksum, _utc_now_iso()),
        )
        conn.commit()
        newly_applied.append(version)
    return newly_applied


def list_schema_migrations_sync(conn: sqlite3.Connection, limit: int = 200) -> list[tuple[str, str, str]]:
    try:
        return conn.execute(
            "SELECT version, name, applied_at_utc FROM schema_migrations ORDER BY version DESC LIMIT ?",
            (max(1, min(int(limit), 500)),),
        ).fetchall()
    except sqlite3.OperationalError:
        return []


def restrict_db_file_permissions(db_path: str) -> None:
    # Grant/role tables live in this file; keep it readable by the owning user only.
    if db_path == ":memory:" or not os.path.exists(db_path):
        return
    for suffix in ("", "-wal", "-shm"):
        path = db_path + suffix
        if os.path.exists(path):
            try:
                os.chmod(path, 0o600)
            except OSError as e:
                print(f"[DB] Could not restrict permissions on {path}: {e}")


def init_db(db_path: str, migrations_dir: str) -> sqlite3.Connection:
    parent = os.path.dirname(os.path.abspath(db_path)) if db_path != ":memory:" else ""
    if parent and not os.path.isdir(parent):
        os.makedirs(parent, mode=0o700, exist_ok=True)
    if db_path != ":memory:" and not os.path.exists(db_path):
        # Create the file with owner-only permissions before sqlite opens it.
        fd = os.open(db_path, os.O_CREAT | os.O_WRONLY, 0o600)
        os.close(fd)

    # check_same_thread=False because discord.py event loop + to_thread usage
    conn = sqlite3.connect(db_path, check_same_thread=False)
    if db_path != ":memory:":
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=FULL;")
    apply_sqlite_migrations(conn, migrations_dir)
    conn.commit()
    restrict_db_file_permissions(db_path)
    return conn

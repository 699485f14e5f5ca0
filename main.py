# main.py — exam progress service, BASE_PATH-aware (psycopg3 + pooling)
# Wires the progress store, the question bank and the take-exam blueprint.

import os
from contextlib import contextmanager
from urllib.parse import urlparse, parse_qs, unquote
from typing import Optional

from flask import Flask

# Database (psycopg 3)
from psycopg_pool import ConnectionPool
from psycopg.rows import dict_row

from errors import PersistenceError
from exam import create_exam_blueprint
from progress_record import ProgressPolicy
from progress_service import ExamProgressService
from progress_store import MemoryProgressStore, PostgresProgressStore
from question_bank_loader import load_question_set

# =============================================================================
# BASE_PATH & Flask app
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")

app = Flask(__name__)
app.url_map.strict_slashes = False
app.json.sort_keys = False

# =============================================================================
# DB configuration
# =============================================================================
INSTANCE_CONNECTION_NAME = os.getenv("INSTANCE_CONNECTION_NAME")
DB_USER = os.getenv("DB_USER")
DB_PASS = os.getenv("DB_PASS") or os.getenv("DB_PASSWORD")  # support either name
DB_NAME = os.getenv("DB_NAME")

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_URL_LOCAL = os.getenv("DATABASE_URL_LOCAL")
DB_HOST_OVERRIDE = os.getenv("DB_HOST")
DB_PORT_OVERRIDE = os.getenv("DB_PORT")
FORCE_TCP = os.getenv("FORCE_TCP", "").lower() in {"1", "true", "yes"}

PROGRESS_STORE = (os.getenv("PROGRESS_STORE") or "postgres").strip().lower()

def _on_managed_runtime() -> bool:
    # GAE or Cloud Run, etc.
    return os.getenv("GAE_ENV", "").startswith("standard") or bool(os.getenv("K_SERVICE"))

def _is_socket(kwargs: dict) -> bool:
    host = kwargs.get("host")
    return isinstance(host, str) and host.startswith("/cloudsql/")

def _chosen(kwargs: dict, origin: str) -> dict:
    if _is_socket(kwargs):
        print(f"[DB] {origin}: Unix socket -> {kwargs['host']}", flush=True)
    else:
        print(f"[DB] {origin}: TCP -> {kwargs.get('host', 'localhost')}:{kwargs.get('port', 5432)}", flush=True)
    return kwargs

def _parse_database_url(url: str) -> dict:
    if not url:
        raise ValueError("Empty DATABASE_URL")
    # SQLAlchemy-style driver suffixes are accepted and treated as plain postgres
    scheme, sep, rest = url.partition("://")
    if sep and scheme.split("+", 1)[0] in ("postgresql", "postgres"):
        url = "postgresql://" + rest

    p = urlparse(url)
    if p.scheme not in ("postgresql", "postgres"):
        raise ValueError(f"Unsupported scheme '{p.scheme}'")
    qs = parse_qs(p.query or "", keep_blank_values=True)
    host = (qs.get("host") or [p.hostname])[0]
    dbname = (p.path or "").lstrip("/") or (qs.get("dbname") or [""])[0]
    if not dbname:
        raise ValueError("DATABASE_URL missing dbname")

    kwargs = _session_kwargs(dbname, unquote(p.username or ""), unquote(p.password or ""))
    if host:
        kwargs["host"] = host
    if p.port and not (isinstance(host, str) and host.startswith("/")):
        kwargs["port"] = p.port
    if qs.get("sslmode"):
        kwargs["sslmode"] = qs["sslmode"][0]
    return kwargs

def _session_kwargs(dbname: str, user: str, password: str) -> dict:
    return {
        "dbname": dbname,
        "user": user,
        "password": password,
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }

def _env_credentials(*extra: str) -> dict:
    values = {
        "INSTANCE_CONNECTION_NAME": INSTANCE_CONNECTION_NAME,
        "DB_NAME": DB_NAME,
        "DB_USER": DB_USER,
        "DB_PASS": DB_PASS,
    }
    required = ("DB_NAME", "DB_USER", "DB_PASS") + extra
    missing = [name for name in required if not values[name]]
    if missing:
        raise RuntimeError(f"{', '.join(missing)} must be set to reach the progress database.")
    return _session_kwargs(DB_NAME, DB_USER, DB_PASS)

def _tcp_kwargs() -> dict:
    kwargs = _env_credentials()
    kwargs.update(
        host=DB_HOST_OVERRIDE or "127.0.0.1",
        port=int(DB_PORT_OVERRIDE or "5432"),
        sslmode="disable",
    )
    return kwargs

def _socket_kwargs() -> dict:
    kwargs = _env_credentials("INSTANCE_CONNECTION_NAME")
    kwargs["host"] = f"/cloudsql/{INSTANCE_CONNECTION_NAME}"
    return kwargs

def _url_candidates(managed: bool):
    if not managed and DATABASE_URL_LOCAL:
        yield "DATABASE_URL_LOCAL", DATABASE_URL_LOCAL
    if DATABASE_URL:
        yield "DATABASE_URL", DATABASE_URL

def _connection_kwargs() -> dict:
    """FORCE_TCP (local only), then the first usable URL, then socket or TCP env settings."""
    managed = _on_managed_runtime()
    if FORCE_TCP and not managed:
        return _chosen(_tcp_kwargs(), "FORCE_TCP")

    for name, url in _url_candidates(managed):
        try:
            kwargs = _parse_database_url(url)
        except ValueError as e:
            print(f"[DB] Ignoring {name}: {e}", flush=True)
            continue
        if _is_socket(kwargs) and not managed:
            print(f"[DB] {name} targets /cloudsql/ but we are local; ignoring.", flush=True)
            continue
        return _chosen(kwargs, f"Using {name}")

    if managed:
        return _chosen(_socket_kwargs(), "Managed runtime")
    return _chosen(_tcp_kwargs(), "Local dev")


# =============================================================================
# psycopg3 Connection Pool + helpers
# =============================================================================
_pg_pool: Optional[ConnectionPool] = None

def _to_conninfo(kwargs: dict) -> str:
    # Build libpq conninfo string from kwargs dict
    parts = []
    for k, v in kwargs.items():
        if v is None:
            continue
        s = str(v)
        if any(ch.isspace() for ch in s) or "'" in s or '"' in s:
            s = "'" + s.replace("'", r"\'") + "'"
        parts.append(f"{k}={s}")
    return " ".join(parts)

def init_pool():
    global _pg_pool
    if _pg_pool is not None:
        return
    conninfo = _to_conninfo(_connection_kwargs())
    _pg_pool = ConnectionPool(conninfo=conninfo, min_size=1, max_size=6, open=True)

@contextmanager
def get_conn():
    if _pg_pool is None:
        try:
            init_pool()
        except RuntimeError as e:
            # missing DB settings surface like any other storage outage
            print(f"[DB] connection pool unavailable: {e}", flush=True)
            raise PersistenceError(f"progress storage unavailable: {e}") from e
    # commits on clean exit, rolls back on error
    with _pg_pool.connection() as conn:
        yield conn

def fetch_one(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            return cur.fetchone()

# =============================================================================
# Progress service
# =============================================================================
def build_progress_store(kind: str = PROGRESS_STORE):
    if kind == "memory":
        print("[progress] using in-memory store (records are lost on restart)", flush=True)
        return MemoryProgressStore()
    if kind != "postgres":
        raise RuntimeError(f"Unknown PROGRESS_STORE '{kind}' (expected 'postgres' or 'memory')")
    return PostgresProgressStore(get_conn)

progress_service = ExamProgressService(build_progress_store(), ProgressPolicy.from_env())

# =============================================================================
# Routes (health)
# =============================================================================
@app.get("/healthz")
def healthz():
    if PROGRESS_STORE == "memory":
        return ("ok", 200)
    try:
        row = fetch_one("SELECT 1 AS ok;")
        ok = bool(row and row.get("ok") == 1)
        return ("ok" if ok else "db-fail", 200 if ok else 500)
    except Exception as e:
        return (f"error: {e}", 500)

# =============================================================================
# Blueprints
# =============================================================================
exam_bp = create_exam_blueprint(BASE_PATH, {
    "progress_service": progress_service,
    "load_questions": load_question_set,
})
app.register_blueprint(exam_bp)

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True)

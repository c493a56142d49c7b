import os
from urllib.parse import quote_plus

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()
engine = None
SessionLocal = None

_SQLSERVER_ENV = ("SQLSERVER_HOST", "SQLSERVER_PORT", "SQLSERVER_DB", "SQLSERVER_DRIVER")


def _read_int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer") from exc


def _sqlserver_url(login_env: str, password_env: str, database_override: str | None = None) -> str:
    values = {key: os.getenv(key, "").strip() for key in (*_SQLSERVER_ENV, login_env, password_env)}
    if database_override:
        values["SQLSERVER_DB"] = database_override
    missing = [key for key, value in values.items() if not value]
    if missing:
        raise RuntimeError(
            f"Missing database configuration: {', '.join(missing)} (or set DATABASE_URL)"
        )

    return (
        f"mssql+pyodbc://{values[login_env]}:{quote_plus(values[password_env])}"
        f"@{values['SQLSERVER_HOST']}:{values['SQLSERVER_PORT']}/{values['SQLSERVER_DB']}"
        f"?driver={quote_plus(values['SQLSERVER_DRIVER'])}&Encrypt=yes&TrustServerCertificate=yes"
    )


def BuildUserConnectionUrl() -> str:
    explicit_url = os.getenv("DATABASE_URL", "").strip()
    if explicit_url:
        return explicit_url
    return _sqlserver_url("SQLSERVER_USER_LOGIN", "SQLSERVER_USER_PASSWORD")


def BuildAdminConnectionUrl(database_override: str | None = None) -> str:
    # Migrations need DDL rights; a single DATABASE_URL serves both roles.
    explicit_url = os.getenv("DATABASE_URL", "").strip()
    if explicit_url:
        return explicit_url
    return _sqlserver_url("SQLSERVER_ADMIN_LOGIN", "SQLSERVER_ADMIN_PASSWORD", database_override)


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_pre_ping": True,
        "pool_size": _read_int_env("SQLALCHEMY_POOL_SIZE", 10),
        "max_overflow": _read_int_env("SQLALCHEMY_MAX_OVERFLOW", 20),
        "pool_timeout": _read_int_env("SQLALCHEMY_POOL_TIMEOUT", 60),
    }


def _ensure_engine():
    global engine, SessionLocal
    if engine is None:
        url = BuildUserConnectionUrl()
        engine = create_engine(url, **_engine_options(url))
        SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


def GetSessionFactory() -> sessionmaker:
    if SessionLocal is None:
        _ensure_engine()
    return SessionLocal


def GetDb():
    db = GetSessionFactory()()
    try:
        yield db
    finally:
        db.close()

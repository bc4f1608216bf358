import os
from contextlib import contextmanager

from dotenv import load_dotenv
from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .core.errors import ConflictError, EngineError, TransactionFailedError

load_dotenv()

DEFAULT_DATABASE_URL = "sqlite:///./data/smeta.db"
SQLALCHEMY_DATABASE_URL = os.getenv("DATABASE_URL") or DEFAULT_DATABASE_URL

Base = declarative_base()

_ESTIMATE_COLUMN_SPECS = {
    "master_password": "TEXT DEFAULT NULL",
}

_VIEW_COLUMN_SPECS = {
    "is_customer_view": "INTEGER DEFAULT 0",
}

_ACT_ITEM_COLUMN_SPECS = {
    "sort_order": "INTEGER DEFAULT 0",
}

_VERSION_COLUMN_SPECS = {
    "title": "TEXT DEFAULT NULL",
}

_RUNTIME_INDEX_STATEMENTS = (
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_estimate_versions_number "
    "ON estimate_versions (estimate_id, version_number)",
    "CREATE INDEX IF NOT EXISTS idx_estimates_customer_token ON estimates (customer_link_token)",
    "CREATE INDEX IF NOT EXISTS idx_estimates_master_token ON estimates (master_link_token)",
    "CREATE INDEX IF NOT EXISTS idx_views_link_token ON estimate_views (link_token)",
)


def _env_flag(name: str) -> bool:
    return (os.getenv(name) or "").strip().lower() in {"1", "true", "yes", "on"}


def write_retry_limit() -> int:
    try:
        value = int(os.getenv("ESTIMATE_HUB_WRITE_RETRIES", "5"))
    except ValueError:
        value = 5
    return max(1, value)


def _ensure_sqlite_directory(bind: Engine) -> None:
    if bind.dialect.name != "sqlite":
        return
    path = bind.url.database
    if not path or path == ":memory:":
        return
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)


def make_engine(url: str | None = None, **kwargs) -> Engine:
    """Create an engine for ``url`` (or ``DATABASE_URL``) with store defaults.

    SQLite connections are shared across request threads and need a busy
    timeout so concurrent writers wait for the lock instead of failing.
    """
    database_url = url or SQLALCHEMY_DATABASE_URL
    kwargs.setdefault("echo", _env_flag("ESTIMATE_HUB_SQL_ECHO"))
    if database_url.startswith("sqlite"):
        connect_args = dict(kwargs.pop("connect_args", {}) or {})
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", 30)
        kwargs["connect_args"] = connect_args
    return create_engine(database_url, **kwargs)


@event.listens_for(Engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):  # noqa: ANN001
    module_name = type(dbapi_connection).__module__ or ""
    if "sqlite" not in module_name:
        return
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA foreign_keys=ON")
    finally:
        cursor.close()


engine = make_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def _run_schema_statement(connection, sql: str) -> None:
    try:
        connection.execute(text(sql))
    except Exception as exc:  # noqa: BLE001
        print(f"[database] schema statement skipped: {exc} | sql={sql}")


def _add_missing_columns(connection, inspector, table_name: str, specs: dict[str, str]) -> list[str]:
    existing_columns = {column["name"] for column in inspector.get_columns(table_name)}
    added: list[str] = []
    for column_name, column_spec in specs.items():
        if column_name in existing_columns:
            continue
        connection.execute(text(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {column_spec}"))
        added.append(column_name)
    return added


def ensure_runtime_schema(bind: Engine | None = None) -> None:
    """Create every table/index and apply additive column migrations.

    Safe on every start: tables and indexes use IF NOT EXISTS semantics and
    each ALTER runs only after the column metadata shows it is missing.
    Table creation failures propagate; index statements that the backend
    rejects are reported and skipped.
    """
    from . import models  # noqa: F401  (registers tables on Base.metadata)

    target = bind or engine
    _ensure_sqlite_directory(target)
    Base.metadata.create_all(bind=target)

    with target.begin() as connection:
        inspector = inspect(connection)
        table_names = set(inspector.get_table_names())

        if "estimates" in table_names:
            added = _add_missing_columns(connection, inspector, "estimates", _ESTIMATE_COLUMN_SPECS)
            if added:
                print(f"[database] estimates: added columns {', '.join(added)}")

        if "estimate_views" in table_names:
            added = _add_missing_columns(connection, inspector, "estimate_views", _VIEW_COLUMN_SPECS)
            if added:
                print(f"[database] estimate_views: added columns {', '.join(added)}")
            _run_schema_statement(
                connection,
                "UPDATE estimate_views SET is_customer_view=0 WHERE is_customer_view IS NULL",
            )

        if "saved_act_items" in table_names:
            added = _add_missing_columns(connection, inspector, "saved_act_items", _ACT_ITEM_COLUMN_SPECS)
            if added:
                print(f"[database] saved_act_items: added columns {', '.join(added)}")

        if "estimate_versions" in table_names:
            added = _add_missing_columns(connection, inspector, "estimate_versions", _VERSION_COLUMN_SPECS)
            if added:
                print(f"[database] estimate_versions: added columns {', '.join(added)}")

        for statement in _RUNTIME_INDEX_STATEMENTS:
            _run_schema_statement(connection, statement)


def bootstrap(bind: Engine | None = None, *, run_migration: bool = True):
    """Start-up entry point: schema first, then the one-shot legacy migration.

    `run_migration=False` is only for maintenance tooling that inspects a
    store before migrating it; engine operations assume migrated data.
    """
    from .core.legacy_migration import migrate_legacy_views

    target = bind or engine
    ensure_runtime_schema(target)

    if not run_migration:
        print("[database] legacy view migration disabled for this run.")
        return None

    session = Session(bind=target, autoflush=False)
    try:
        return migrate_legacy_views(session)
    finally:
        session.close()


@contextmanager
def atomic(db: Session):
    """Commit the unit of work on success, roll everything back otherwise."""
    try:
        yield db
        db.commit()
    except EngineError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        raise TransactionFailedError(f"Storage transaction aborted: {exc}") from exc
    except Exception:
        db.rollback()
        raise


def _dialect_insert(db: Session, model):
    dialect_name = db.get_bind().dialect.name
    if dialect_name == "sqlite":
        return sqlite.insert(model)
    if dialect_name == "postgresql":
        return postgresql.insert(model)
    return None


def insert_or_ignore(db: Session, model, values: dict, conflict_columns: tuple[str, ...]) -> bool:
    """Insert ``values`` unless a row with the same conflict key exists.

    Returns True when a row was written.
    """
    stmt = _dialect_insert(db, model)
    if stmt is not None:
        result = db.execute(stmt.values(**values).on_conflict_do_nothing(index_elements=list(conflict_columns)))
        return bool(result.rowcount)

    query = db.query(model)
    for column_name in conflict_columns:
        query = query.filter(getattr(model, column_name) == values[column_name])
    if query.first() is not None:
        return False
    db.add(model(**values))
    db.flush()
    return True


def upsert_row(
    db: Session,
    model,
    values: dict,
    conflict_columns: tuple[str, ...],
    update_columns: tuple[str, ...],
) -> None:
    """Insert ``values`` or update ``update_columns`` of the row sharing the conflict key."""
    stmt = _dialect_insert(db, model)
    if stmt is not None:
        insert_stmt = stmt.values(**values)
        db.execute(
            insert_stmt.on_conflict_do_update(
                index_elements=list(conflict_columns),
                set_={column_name: insert_stmt.excluded[column_name] for column_name in update_columns},
            )
        )
        return

    query = db.query(model)
    for column_name in conflict_columns:
        query = query.filter(getattr(model, column_name) == values[column_name])
    existing = query.first()
    if existing is None:
        db.add(model(**values))
    else:
        for column_name in update_columns:
            setattr(existing, column_name, values[column_name])
    db.flush()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _is_retryable_conflict(exc: Exception) -> bool:
    if isinstance(exc, IntegrityError):
        message = str(getattr(exc, "orig", exc)).lower()
        return "unique" in message or "duplicate" in message
    if isinstance(exc, OperationalError):
        message = str(getattr(exc, "orig", exc)).lower()
        return "locked" in message or "busy" in message
    return False


def retry_on_conflict(db: Session, operation, *, label: str, attempts: int | None = None):
    """Run ``operation(db)`` as one transaction, retrying on uniqueness races.

    Every attempt starts from a clean session state, so values computed from
    the store (next version number, fresh tokens) are re-read each time.
    """
    limit = attempts or write_retry_limit()
    last_error: Exception | None = None
    for attempt in range(1, limit + 1):
        try:
            result = operation(db)
            db.commit()
            return result
        except EngineError:
            db.rollback()
            raise
        except (IntegrityError, OperationalError) as exc:
            db.rollback()
            if not _is_retryable_conflict(exc):
                raise TransactionFailedError(f"{label} failed: {exc}") from exc
            last_error = exc
            print(f"[database] {label} attempt={attempt} hit a conflict, retrying: {exc.orig}")
        except SQLAlchemyError as exc:
            db.rollback()
            raise TransactionFailedError(f"{label} failed: {exc}") from exc
        except Exception:
            db.rollback()
            raise
    raise ConflictError(f"{label} gave up after {limit} attempts: {last_error}")

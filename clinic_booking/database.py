import logging
from threading import Lock

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from clinic_booking.core import config

logger = logging.getLogger(__name__)

SQLITE_BEGIN_OPTION = 'sqlite_begin_mode'
# Execution options for read-modify-write transactions. SQLite takes the
# write lock at BEGIN; other dialects ignore the option.
WRITE_TRANSACTION_OPTIONS = {SQLITE_BEGIN_OPTION: 'IMMEDIATE'}
LOCK_TIMEOUT_OPTION = 'lock_timeout_seconds'

NO_OVERLAP_CONSTRAINT = 'appointments_no_overlap'


def write_transaction_options(timeout_seconds: float) -> dict:
    """Write-transaction options whose lock wait is bounded by ``timeout_seconds``."""
    return {**WRITE_TRANSACTION_OPTIONS, LOCK_TIMEOUT_OPTION: timeout_seconds}


def _install_sqlite_hooks(engine: Engine, default_timeout: float) -> None:
    file_backed = engine.url.database not in (None, '', ':memory:')

    @event.listens_for(engine, 'connect')
    def _on_connect(dbapi_connection, connection_record):
        # Hand transaction control to SQLAlchemy so BEGIN can be emitted with a lock mode.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute('PRAGMA foreign_keys=ON')
        if file_backed:
            cursor.execute('PRAGMA journal_mode=WAL')
        cursor.close()

    @event.listens_for(engine, 'begin')
    def _on_begin(connection):
        options = connection.get_execution_options()
        mode = options.get(SQLITE_BEGIN_OPTION, 'DEFERRED')
        # Reset on every BEGIN; pooled connections keep the last value.
        timeout = options.get(LOCK_TIMEOUT_OPTION, default_timeout)
        connection.exec_driver_sql(f'PRAGMA busy_timeout = {int(timeout * 1000)}')
        connection.exec_driver_sql(f'BEGIN {mode}')


def create_booking_engine(url: str, timeout_seconds: int | None = None) -> Engine:
    timeout = timeout_seconds or config.BOOKING_TIMEOUT_SECONDS

    if url.startswith('sqlite'):
        engine = create_engine(
            url,
            connect_args={'timeout': timeout, 'check_same_thread': False},
        )
        _install_sqlite_hooks(engine, timeout)
        return engine

    return create_engine(url, pool_pre_ping=True)


engine = create_booking_engine(config.DATABASE_URL)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_schema_checked: set[str] = set()


def apply_transaction_timeout(connection, timeout_seconds: int) -> None:
    """Bound lock waits and statements for the current PostgreSQL transaction.

    SQLite bounds the lock wait at BEGIN through ``LOCK_TIMEOUT_OPTION``.
    """
    if connection.dialect.name != 'postgresql':
        return

    milliseconds = int(timeout_seconds * 1000)
    connection.execute(text(f"SET LOCAL lock_timeout = '{milliseconds}ms'"))
    connection.execute(text(f"SET LOCAL statement_timeout = '{milliseconds}ms'"))


def ensure_booking_schema(bind: Engine | None = None) -> None:
    bind = bind or engine
    schema_key = str(bind.url)

    if schema_key in _schema_checked:
        return

    with _schema_lock:
        if schema_key in _schema_checked:
            return

        inspector = inspect(bind)

        if 'appointments' not in inspector.get_table_names():
            _schema_checked.add(schema_key)
            return

        with bind.begin() as connection:
            connection.execute(
                text(
                    'CREATE INDEX IF NOT EXISTS idx_appointments_doctor_time_range '
                    'ON appointments(doctor_id, start_time, end_time)'
                )
            )
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_appointments_doctor_status ON appointments(doctor_id, status)')
            )
            connection.execute(
                text(
                    'CREATE INDEX IF NOT EXISTS idx_availability_overrides_doctor_date '
                    'ON availability_overrides(doctor_id, date)'
                )
            )

            if connection.dialect.name == 'postgresql':
                connection.execute(text('CREATE EXTENSION IF NOT EXISTS btree_gist'))
                exists = connection.execute(
                    text('SELECT 1 FROM pg_constraint WHERE conname = :name'),
                    {'name': NO_OVERLAP_CONSTRAINT},
                ).first()
                if not exists:
                    connection.execute(
                        text(
                            f'ALTER TABLE appointments ADD CONSTRAINT {NO_OVERLAP_CONSTRAINT} '
                            "EXCLUDE USING gist (doctor_id WITH =, tsrange(start_time, end_time, '[)') WITH &&) "
                            "WHERE (status IN ('PENDING', 'SCHEDULED'))"
                        )
                    )
                    logger.info('Created %s exclusion constraint', NO_OVERLAP_CONSTRAINT)

        _schema_checked.add(schema_key)


def init_database(bind: Engine | None = None) -> None:
    bind = bind or engine
    # Importing the models registers their tables on Base.metadata.
    from clinic_booking.models import appointment, availability, directory  # noqa: F401

    Base.metadata.create_all(bind=bind)
    ensure_booking_schema(bind)

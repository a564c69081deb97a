from threading import Lock

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import declarative_base, sessionmaker

from booking_engine.core import config


def build_connect_args(database_url: str) -> dict:
    if database_url.startswith("sqlite"):
        return {
            "timeout": config.DB_CONNECT_TIMEOUT_SECONDS,
            "check_same_thread": False,
        }
    if database_url.startswith("postgresql"):
        return {
            "connect_timeout": config.DB_CONNECT_TIMEOUT_SECONDS,
            "options": f"-c statement_timeout={config.DB_STATEMENT_TIMEOUT_MS}",
        }
    return {}


engine = create_engine(
    config.DATABASE_URL,
    connect_args=build_connect_args(config.DATABASE_URL),
    pool_pre_ping=True,
)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_engine_schema_checked = False

# Indexes carrying the exclusivity invariants. create_all builds them for new
# tables; older databases get them here.
PARTIAL_UNIQUE_INDEXES = [
    (
        'appointments',
        'CREATE UNIQUE INDEX IF NOT EXISTS uq_appointments_active_slot '
        "ON appointments(teacher_id, scheduled_time) WHERE status IN ('pending', 'approved')",
    ),
    (
        'waitlist_entries',
        'CREATE UNIQUE INDEX IF NOT EXISTS uq_waitlist_active_entry '
        "ON waitlist_entries(teacher_id, student_id, slot) WHERE status = 'active'",
    ),
]


def ensure_engine_schema(bind=None) -> None:
    global _engine_schema_checked

    if _engine_schema_checked:
        return

    bind = bind or engine

    with _schema_lock:
        if _engine_schema_checked:
            return

        existing_tables = set(inspect(bind).get_table_names())

        with bind.begin() as connection:
            for table_name, statement in PARTIAL_UNIQUE_INDEXES:
                if table_name in existing_tables:
                    connection.execute(text(statement))
            if 'waitlist_entries' in existing_tables:
                connection.execute(
                    text('CREATE INDEX IF NOT EXISTS idx_waitlist_slot_order '
                         'ON waitlist_entries(teacher_id, slot, status, created_at)')
                )

        _engine_schema_checked = True


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

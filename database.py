from sqlalchemy import create_engine, inspect
from sqlalchemy.orm import declarative_base, sessionmaker
from config import Settings
from logging_config import logger

DATABASE_URL = Settings.DATABASE_URL

connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

# Only pass connect_args if it's not empty
if connect_args:
    engine = create_engine(DATABASE_URL, connect_args=connect_args)
else:
    engine = create_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db(bind=None) -> list:
    """Create any missing tables and return their names.

    Safe to call on every startup: existing tables are read back from the
    store and left untouched.
    """
    import models  # noqa: F401  registers the mappers on Base.metadata

    bind = bind or engine
    existing = set(inspect(bind).get_table_names())
    missing = [t for t in Base.metadata.sorted_tables if t.name not in existing]
    if missing:
        Base.metadata.create_all(bind=bind, tables=missing)
        logger.info(f"Created tables: {', '.join(t.name for t in missing)}")
    else:
        logger.info("Database schema already initialized")

    present = set(inspect(bind).get_table_names())
    absent = [t.name for t in Base.metadata.sorted_tables if t.name not in present]
    if absent:
        raise RuntimeError(f"Schema initialization incomplete, missing: {', '.join(absent)}")
    return [t.name for t in missing]


def insert_ignore(db, model, values: dict, conflict_columns: list):
    """INSERT that silently does nothing when the row already exists.

    Returns the number of inserted rows (0 or 1). Used for race-free
    create-if-absent on unique keys.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
        stmt = insert(model).values(**values).on_conflict_do_nothing(index_elements=conflict_columns)
    elif dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
        stmt = insert(model).values(**values).on_conflict_do_nothing(index_elements=conflict_columns)
    elif dialect in ("mysql", "mariadb"):
        from sqlalchemy.dialects.mysql import insert
        stmt = insert(model).values(**values).prefix_with("IGNORE")
    else:
        raise NotImplementedError(f"insert_ignore is not supported on {dialect}")
    return db.execute(stmt).rowcount

from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, scoped_session
from sqlalchemy.pool import NullPool
from bridge_tracker.sources.bridge_pipeline.config.settings import DATABASE_URL
from bridge_tracker.storage.models.base import Base
import logging

log = logging.getLogger(__name__)

# celery workers fork, so they get a pool-less engine
worker_engine = create_engine(
    DATABASE_URL,
    pool_pre_ping=True,
    poolclass=NullPool
)
WorkerSessionLocal = scoped_session(
    sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=worker_engine,
    )
)

engine = create_engine(
    DATABASE_URL,
    pool_pre_ping=True,
    pool_size=10,
    max_overflow=20
)
SessionLocal = scoped_session(
    sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )
)

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def init_db(bind=None) -> None:
    """Create every bridge table that does not exist yet."""
    import bridge_tracker.storage.models.bridge_event  # noqa: F401
    import bridge_tracker.storage.models.indexer_progress  # noqa: F401
    import bridge_tracker.storage.models.historical_price  # noqa: F401
    import bridge_tracker.storage.models.unpriced_token  # noqa: F401
    Base.metadata.create_all(bind=bind or engine)
    log.info("Bridge tables ready")

def check_db_connection() -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        log.info("✅ Database connected.")
        return True
    except Exception as e:
        log.error(f"❌ DB connection failed: {e}")
        return False

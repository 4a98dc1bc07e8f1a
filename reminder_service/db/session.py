from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from reminder_service.core.config import settings


def build_engine(database_uri: str) -> Engine:
    if database_uri.startswith("sqlite"):
        # Scan workers share the engine across threads
        return create_engine(
            database_uri,
            connect_args={"check_same_thread": False},
            echo=False,
        )
    # PostgreSQL configuration with connection pooling
    return create_engine(
        database_uri,
        pool_size=10,          # One connection per scan worker plus headroom
        max_overflow=10,
        pool_recycle=300,      # Recycle connections every 5 minutes
        pool_pre_ping=True,    # Validate connections before use
        pool_timeout=30,
        echo=False             # Set to True for SQL logging
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


engine = build_engine(settings.SQLALCHEMY_DATABASE_URI)

SessionLocal = build_session_factory(engine)


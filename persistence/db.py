from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

Base = declarative_base()


def create_session_factory(database_url: str):
    """
    Build an engine and a session factory for database_url.
    Constructed once at process start and handed to the stores.
    """
    connect_args = {}
    if database_url.startswith("sqlite"):
        # SQLite needs this for multithreaded web servers
        connect_args = {"check_same_thread": False, "timeout": 30}
    engine = create_engine(database_url, connect_args=connect_args)
    return engine, sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def init_db(engine):
    # Import models here so they get registered with Base before creating tables
    import persistence.models  # noqa: F401
    Base.metadata.create_all(bind=engine)

"""
Database configuration
"""
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine
from core.config import get_settings

# Create engine lazily to allow test configuration to be applied
_engine = None


def get_engine():
    """
    Get or create the database engine.
    This lazy initialization allows test settings to be applied properly.
    """
    global _engine
    if _engine is None:
        uri = str(get_settings().SQLALCHEMY_DATABASE_URI)
        if uri.startswith("sqlite"):
            # The retention sweep uses connections from worker threads
            kwargs = {"connect_args": {"check_same_thread": False}}
            if ":memory:" in uri or uri == "sqlite://":
                kwargs["poolclass"] = StaticPool
            _engine = create_engine(uri, echo=False, **kwargs)
        else:
            _engine = create_engine(uri, echo=False)
    return _engine


def reset_engine():
    """
    Reset the engine to None.
    This is useful for tests that need to switch between different settings.
    """
    global _engine
    _engine = None


def create_db_and_tables():
    """Create all tables registered on the SQLModel metadata"""
    # Register table models
    import api.filerecord.models  # noqa: F401
    SQLModel.metadata.create_all(get_engine())


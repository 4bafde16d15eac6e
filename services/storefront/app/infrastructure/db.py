from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from app.domain.models import Base


def build_engine(database_url: str, **kwargs) -> Engine:
    return create_engine(database_url, echo=False, future=True, pool_pre_ping=True, **kwargs)


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def get_db(request: Request) -> Session:
    """Request-scoped session from the factory the app was built with."""
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def init_models(engine: Engine):
    Base.metadata.create_all(engine)

"""Database bootstrap with a guard against incompatible SQLAlchemy versions."""

from importlib import metadata

from packaging.version import Version
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import config
from meter_ui.models import Base

DATABASE_URL = config.DATABASE_URL


def _require_sqlalchemy_version(min_version: str = "2.0.36") -> None:
    """
    Prevents startup with an older SQLAlchemy that triggers the Python 3.13
    TypingOnly assertion. If the installed version is too old, raise a clear
    error telling the user to reinstall the pinned requirements.
    """

    installed = Version(metadata.version("sqlalchemy"))
    required = Version(min_version)

    if installed < required:
        raise RuntimeError(
            "SQLAlchemy %s is too old for Python 3.13. "
            "Please run 'pip install --upgrade --force-reinstall -r requirements.txt' "
            "to install version %s or newer."
            % (installed, required)
        )


# Abort early with a clear message before importing the rest of SQLAlchemy
_require_sqlalchemy_version()


def make_engine(url: str):
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, echo=False, connect_args=connect_args)


def make_session_factory(url: str) -> sessionmaker:
    """Engine + session factory for another database (CLI --db, tests)."""
    engine = make_engine(url)
    init_db(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)


engine = make_engine(DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)


def init_db(bind=None) -> None:
    """Create tables if they do not exist."""
    Base.metadata.create_all(bind=bind or engine)

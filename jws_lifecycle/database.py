"""
SQLAlchemy engine/session and the row model used by SqlTokenStore. SQLite by default.
"""
from datetime import datetime

from sqlalchemy import DateTime, Engine, Integer, String, Text, create_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

ROLE_ACTIVE = "active"
ROLE_PASSIVE = "passive"


class Base(DeclarativeBase):
    pass


class StoredToken(Base):
    __tablename__ = "jws_tokens"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    role: Mapped[str] = mapped_column(String(16), nullable=False, index=True)  # active | passive
    # Demotion order within the passive set (oldest first)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Nullable so a damaged row can be dropped on load without failing the whole table
    token: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


def create_session_factory(url: str) -> tuple[Engine, sessionmaker]:
    # SQLite: in-memory needs StaticPool so all connections share the same DB (for tests)
    # File-based SQLite needs check_same_thread=False since the maintenance tick runs on a worker thread
    if url.startswith("sqlite:///:memory:") or url == "sqlite://":
        engine = create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    else:
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        engine = create_engine(url, connect_args=connect_args)
    return engine, sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine) -> None:
    """Create the jws_tokens table if missing."""
    Base.metadata.create_all(bind=engine)

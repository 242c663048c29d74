import logging

from sqlmodel import Session, SQLModel, create_engine

from app.core.config import DATABASE_URL, DB_ECHO

logger = logging.getLogger(__name__)


connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, echo=DB_ECHO, pool_pre_ping=True, connect_args=connect_args)


def create_db_and_tables():
    # registra todas as tabelas no metadata antes do create_all
    from app.models import appointment, closed_day, notification, payment, service, sub_service, user  # noqa: F401

    SQLModel.metadata.create_all(engine)
    logger.info("Tabelas verificadas/criadas em %s", engine.url.render_as_string(hide_password=True))


def get_session():
    with Session(engine) as session:
        yield session

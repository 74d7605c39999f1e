from sqlmodel import create_engine, Session
from sqlmodel import SQLModel
from sqlalchemy.orm import sessionmaker

from catalog_sync.core.config import settings


def build_engine(database_url: str):
    """Создает движок; для SQLite отключаем проверку потока, т.к. heartbeat пишет из отдельного потока."""
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            echo=False
        )
    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        pool_timeout=60,
        pool_recycle=3600,  # Переиспользовать соединения через 1 час
        echo=False  # Отключаем SQL логирование для производительности
    )


engine = build_engine(settings.DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, class_=Session, expire_on_commit=False)


def init_db(bind=None) -> None:
    """Создает таблицы синхронизации, если их еще нет (для разработки и тестов)."""
    import catalog_sync.models  # noqa: F401  регистрирует таблицы в метаданных

    SQLModel.metadata.create_all(bind or engine)


# Dependency
def get_db():
    with Session(engine) as session:
        try:
            yield session
        finally:
            session.close()

from sqlmodel import create_engine, Session
from sqlalchemy.orm import sessionmaker

from app.core.config import settings


# Основной движок. Каждая операция блокировок и каждая запись статьи
# выполняется в собственной короткой сессии.
engine = create_engine(
    settings.SQLALCHEMY_DATABASE_URI,
    pool_pre_ping=True,
    pool_size=20,
    max_overflow=30,
    pool_timeout=60,
    pool_recycle=3600,
    echo=False
)
SessionLocal = sessionmaker(bind=engine, class_=Session, autoflush=False, expire_on_commit=False)

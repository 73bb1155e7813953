from typing import Callable, Optional

from sqlmodel import Session


def get_dialect_insert(session: Session) -> Optional[Callable]:
    """
    Возвращает insert() диалекта текущего подключения с поддержкой ON CONFLICT
    или None, если диалект его не поддерживает.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
        return insert
    if dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
        return insert
    return None

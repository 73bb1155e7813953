from datetime import datetime, timezone


def utcnow() -> datetime:
    """
    Текущее время в UTC без tzinfo.

    Все колонки datetime в проекте хранятся как naive UTC, поэтому сравнения
    с ними выполняются только с результатом этой функции.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)

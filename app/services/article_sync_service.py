"""
Сервис синхронизации статей аккаунта из внешнего API в локальное хранилище.

Запуск защищен распределенной блокировкой по ключу аккаунта, статьи
обрабатываются по одной (каждая запись в своей транзакции), ошибка одной
статьи не останавливает обработку остальных.
"""
import hashlib
import json
import logging
import re
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError
from sqlmodel import Session

from app.core.article_sync_config import ArticleSyncConfig, article_sync_config
from app.core.config import settings
from app.models.synced_article import ArticleStatus
from app.schemas.article_sync import (
    DuplicatePolicy,
    ItemError,
    RunState,
    SyncOptions,
    SyncResult,
    SyncScope,
    SyncStats,
    SyncStatus,
)
from app.services.article_store import ArticleStore, SqlArticleStore, StoredArticle
from app.services.content_source.base import ContentSource
from app.services.content_source.client import ContentSourceClient
from app.services.content_source.models import SourceArticle
from app.services.content_source.rate_limiter import TokenBucketRateLimiter
from app.services.locks.manager import LockLease, LockManager
from app.services.locks.store import SqlLockStore
from app.services.retry import RetryPolicy
from app.services.sync_errors import (
    DuplicateItemError,
    LockBusyError,
    ItemWriteError,
    LockLostError,
    LockStoreError,
    SourceError,
    StoreError,
    SyncCancelled,
    SyncValidationError,
)
from app.utils.date_utils import utcnow
from app.utils.logging_config import log_business_event

logger = logging.getLogger("article.sync")

Dispatcher = Callable[[str, SyncOptions], str]

_WHITESPACE = re.compile(r"\s+")


class ItemAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class ItemOutcome:
    """Результат обработки одной статьи. fatal=True останавливает запуск."""
    action: ItemAction
    error: Optional[ItemError] = None
    fatal: bool = False


def compute_content_hash(article: SourceArticle) -> str:
    """SHA-256 канонического JSON нормализованных полей статьи."""
    normalized = {
        "title": article.title,
        "author": article.author,
        "digest": article.digest,
        "content": _WHITESPACE.sub(" ", article.content).strip(),
        "source_url": article.source_url,
        "cover_url": article.cover_url,
        "published_at": article.published_at.isoformat() if article.published_at else None,
        "is_deleted": article.is_deleted,
    }
    payload = json.dumps(normalized, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class SyncRun:
    """Накопитель состояния одного запуска. Не сохраняется в БД."""

    def __init__(self, account_id: str, clock: Callable[[], datetime] = utcnow):
        self.account_id = account_id
        self.clock = clock
        self.state = RunState.IDLE
        self.stats = SyncStats()
        self.errors: List[ItemError] = []
        self.reason: Optional[str] = None
        self.message = ""
        self.task_id: Optional[str] = None
        self.started_at = clock()
        self.finished_at: Optional[datetime] = None

    def transition(self, state: RunState) -> None:
        logger.debug(f"[ArticleSync] {self.account_id}: {self.state.value} -> {state.value}")
        self.state = state

    def record(self, outcome: ItemOutcome) -> None:
        self.stats.total += 1
        if outcome.action == ItemAction.CREATED:
            self.stats.created += 1
        elif outcome.action == ItemAction.UPDATED:
            self.stats.updated += 1
        elif outcome.action == ItemAction.SKIPPED:
            self.stats.skipped += 1
        else:
            self.stats.failed += 1
            if outcome.error is not None:
                self.errors.append(outcome.error)

    def finish(self, state: RunState, reason: Optional[str] = None, message: str = "") -> None:
        self.transition(state)
        self.reason = reason
        self.message = message
        self.finished_at = self.clock()

    @property
    def success(self) -> bool:
        return self.state in (RunState.COMPLETED, RunState.QUEUED)

    def summary(self) -> str:
        return (
            f"всего {self.stats.total}, создано {self.stats.created}, обновлено {self.stats.updated}, "
            f"пропущено {self.stats.skipped}, ошибок {self.stats.failed}"
        )

    def to_result(self) -> SyncResult:
        return SyncResult(
            success=self.success,
            state=self.state,
            reason=self.reason,
            message=self.message,
            account_id=self.account_id,
            stats=self.stats.model_copy(),
            errors=list(self.errors),
            task_id=self.task_id,
            started_at=self.started_at,
            finished_at=self.finished_at,
        )


class ArticleSyncService:
    """
    Оркестратор синхронизации статей.

    Состояния запуска: idle -> acquiring -> running -> completed | aborted_lock_lost |
    aborted_fatal | cancelled, либо acquiring -> denied. Во всех конечных состояниях
    захваченная блокировка снимается до возврата результата.
    """

    def __init__(
        self,
        lock_manager: LockManager,
        article_store: ArticleStore,
        source: ContentSource,
        config: Optional[ArticleSyncConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
        dispatcher: Optional[Dispatcher] = None,
        clock: Callable[[], datetime] = utcnow,
        cancel_event: Optional[threading.Event] = None
    ):
        self.lock_manager = lock_manager
        self.store = article_store
        self.source = source
        self.config = config or article_sync_config
        self.retry_policy = retry_policy or RetryPolicy.from_config(self.config)
        self.dispatcher = dispatcher
        self.clock = clock
        self.cancel_event = cancel_event or threading.Event()

    def run(
        self,
        account_id: str,
        options: Union[SyncOptions, Dict[str, Any]],
        cancel_event: Optional[threading.Event] = None
    ) -> SyncResult:
        """
        Синхронизирует статьи аккаунта.

        Args:
            account_id: ID аккаунта во внешнем API
            options: SyncOptions или словарь с теми же полями
            cancel_event: Событие отмены; по умолчанию событие сервиса (см. cancel).
                При установке запуск завершается состоянием cancelled и снимает блокировку.
                То же событие передается источнику, чтобы прервать ожидание rate limiter.

        Returns:
            SyncResult. Исключения наружу не выбрасываются.
        """
        run = SyncRun(account_id, self.clock)

        try:
            options = self._validate(account_id, options)
        except SyncValidationError as e:
            logger.warning(f"[ArticleSync] {account_id}: некорректные параметры: {e.message}")
            run.finish(RunState.INVALID, e.reason, e.message)
            return run.to_result()

        if options.run_async:
            return self._dispatch(run, options)

        cancel_event = cancel_event or self.cancel_event
        self.source.bind_cancel_event(cancel_event)
        lock_key = self.config.lock_key(account_id)

        run.transition(RunState.ACQUIRING)
        try:
            lease = self.lock_manager.try_acquire(lock_key, self.config.lock_ttl_seconds)
        except LockStoreError as e:
            logger.error(f"[ArticleSync] {account_id}: хранилище блокировок недоступно: {e.message}")
            run.finish(RunState.ABORTED_FATAL, e.reason, f"Хранилище блокировок недоступно: {e.message}")
            return run.to_result()

        if lease is None:
            if not options.bypass_lock:
                logger.info(f"[ArticleSync] {account_id}: синхронизация уже выполняется, отказ")
                run.finish(RunState.DENIED, LockBusyError.reason, "Синхронизация уже выполняется, попробуйте позже")
                return run.to_result()
            logger.warning(f"[ArticleSync] {account_id}: блокировка занята, запуск с bypass_lock")

        run.transition(RunState.RUNNING)
        logger.info(
            f"[ArticleSync] Старт синхронизации аккаунта {account_id}: scope={options.scope.value}, "
            f"limit={options.item_limit}, duplicate_policy={options.duplicate_policy.value}"
        )
        try:
            self._sync_pages(run, options, lease, cancel_event)
            run.finish(RunState.COMPLETED, None, f"Синхронизация завершена: {run.summary()}")
        except SyncCancelled:
            logger.warning(f"[ArticleSync] {account_id}: запуск отменен")
            run.finish(RunState.CANCELLED, SyncCancelled.reason, f"Синхронизация отменена: {run.summary()}")
        except LockLostError as e:
            logger.error(f"[ArticleSync] {account_id}: {e.message}. Возможна параллельная запись другим процессом")
            run.finish(RunState.ABORTED_LOCK_LOST, e.reason, f"{e.message}: {run.summary()}")
        except DuplicateItemError as e:
            run.finish(RunState.ABORTED_FATAL, e.reason, f"{e.message}: {run.summary()}")
        except (StoreError, SourceError) as e:
            logger.error(f"[ArticleSync] {account_id}: запуск прерван ({e.reason}): {e.message}")
            run.finish(RunState.ABORTED_FATAL, e.reason, f"{e.message}: {run.summary()}")
        except Exception as e:
            logger.exception(f"[ArticleSync] {account_id}: непредвиденная ошибка: {e}")
            run.finish(RunState.ABORTED_FATAL, "internal_error", f"Непредвиденная ошибка: {e}")
        finally:
            if lease is not None:
                self._release(lease)

        log_business_event(
            "article_sync_finished",
            run.message,
            account_id=account_id,
            state=run.state.value,
            reason=run.reason,
        )
        return run.to_result()

    def cancel(self) -> None:
        """Запросить отмену запуска, выполняющегося с событием сервиса."""
        self.cancel_event.set()

    def get_status(self, account_id: str) -> SyncStatus:
        """Состояние синхронизации аккаунта."""
        return read_sync_status(account_id, self.lock_manager, self.store, self.config)

    def _validate(self, account_id: str, options: Union[SyncOptions, Dict[str, Any]]) -> SyncOptions:
        if not account_id or not account_id.strip():
            raise SyncValidationError("account_id не может быть пустым")
        if options is None:
            raise SyncValidationError("Не переданы параметры синхронизации")
        if not isinstance(options, SyncOptions):
            try:
                options = SyncOptions.model_validate(options)
            except ValidationError as e:
                details = "; ".join(err["msg"] for err in e.errors())
                raise SyncValidationError(f"Некорректные параметры синхронизации: {details}")
        if options.item_limit is not None and options.item_limit > self.config.max_item_limit:
            raise SyncValidationError(
                f"item_limit не может превышать {self.config.max_item_limit}"
            )
        return options

    def _dispatch(self, run: SyncRun, options: SyncOptions) -> SyncResult:
        dispatcher = self.dispatcher
        if dispatcher is None:
            from app.services.article_sync_tasks import dispatch_article_sync
            dispatcher = dispatch_article_sync
        try:
            run.task_id = dispatcher(run.account_id, options.model_copy(update={"run_async": False}))
        except Exception as e:
            logger.error(f"[ArticleSync] {run.account_id}: не удалось поставить задачу в очередь: {e}")
            run.finish(RunState.ABORTED_FATAL, "dispatch_failed", f"Не удалось поставить задачу в очередь: {e}")
            return run.to_result()
        logger.info(f"[ArticleSync] {run.account_id}: синхронизация поставлена в очередь, task_id={run.task_id}")
        run.finish(RunState.QUEUED, None, "Синхронизация поставлена в очередь")
        return run.to_result()

    def _sync_pages(
        self,
        run: SyncRun,
        options: SyncOptions,
        lease: Optional[LockLease],
        cancel_event: threading.Event
    ) -> None:
        """
        Постраничный обход источника (от новых статей к старым).

        Для scope=custom статьи новее end и статьи без даты публикации пропускаются
        и не учитываются в stats; первая статья старше start завершает обход.
        """
        cursor: Optional[str] = None
        pages = 0
        while True:
            self._check_cancelled(cancel_event)
            page = self.retry_policy.call(
                self.source.fetch_page,
                cursor,
                self.config.page_size,
                cancel_event=cancel_event,
                description=f"[ArticleSync] {run.account_id}: страница {pages + 1}",
            )
            pages += 1
            logger.info(f"[ArticleSync] {run.account_id}: страница {pages}, статей {len(page.items)}")

            for raw in page.items:
                self._check_cancelled(cancel_event)
                if self._limit_reached(run, options):
                    return
                article, outcome = self._parse_item(raw)
                if article is not None and options.scope == SyncScope.CUSTOM:
                    if article.published_at is None:
                        logger.warning(
                            f"[ArticleSync] {run.account_id}: статья {article.external_id} без даты публикации "
                            f"не попадает в диапазон"
                        )
                        continue
                    if article.published_at > options.custom_range.end:
                        continue
                    if article.published_at < options.custom_range.start:
                        logger.info(f"[ArticleSync] {run.account_id}: достигнута нижняя граница диапазона")
                        return
                if outcome is None:
                    outcome = self._sync_item(run.account_id, article, options)
                run.record(outcome)
                if outcome.fatal:
                    raise DuplicateItemError(outcome.error.message)

            if self._limit_reached(run, options) or page.next_cursor is None:
                return
            if lease is not None and pages % self.config.lock_renew_every_pages == 0:
                self._renew(lease)
            cursor = page.next_cursor

    def _parse_item(self, raw: Dict[str, Any]) -> Tuple[Optional[SourceArticle], Optional[ItemOutcome]]:
        try:
            return SourceArticle.model_validate(raw), None
        except ValidationError as e:
            details = "; ".join(f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in e.errors())
            external_id = raw.get("external_id")
            # Идентификатор битой статьи может быть любого типа
            external_id = str(external_id) if external_id not in (None, "") else None
            logger.error(f"[ArticleSync] Некорректная статья {external_id!r}: {details}")
            return None, ItemOutcome(
                ItemAction.FAILED,
                error=ItemError(
                    external_id=external_id,
                    title=raw.get("title") if isinstance(raw.get("title"), str) else None,
                    reason="malformed_payload",
                    message=details,
                ),
            )

    def _sync_item(self, account_id: str, article: SourceArticle, options: SyncOptions) -> ItemOutcome:
        """
        Классифицирует и сохраняет одну статью.

        Ошибки записи этой статьи возвращаются как ItemOutcome(FAILED);
        StoreError пробрасывается и прерывает запуск.
        """
        content_hash = compute_content_hash(article)
        status = ArticleStatus.ARCHIVED if article.is_deleted else ArticleStatus.ACTIVE
        now = self.clock()
        existing: Optional[StoredArticle] = None
        try:
            existing = self.store.find(account_id, article.external_id)
            if existing is None:
                if article.is_deleted and not options.include_deleted:
                    return ItemOutcome(ItemAction.SKIPPED)
                if self.store.insert(account_id, article, content_hash, status, now):
                    return ItemOutcome(ItemAction.CREATED)
                return self._resolve_duplicate(account_id, article, content_hash, status, now,
                                               options.duplicate_policy)
            if existing.content_hash == content_hash:
                return ItemOutcome(ItemAction.SKIPPED)
            if self.store.update_if_changed(account_id, article, content_hash, status, now):
                return ItemOutcome(ItemAction.UPDATED)
            # Тот же контент уже записан параллельным процессом
            return ItemOutcome(ItemAction.SKIPPED)
        except ItemWriteError as e:
            logger.error(f"[ArticleSync] Ошибка записи статьи {article.external_id} ({article.title}): {e.message}")
            if existing is not None:
                self.store.mark_failed(account_id, article.external_id, e.message, now)
            return ItemOutcome(
                ItemAction.FAILED,
                error=ItemError(
                    external_id=article.external_id,
                    title=article.title,
                    reason=e.reason,
                    message=e.message,
                ),
            )

    def _resolve_duplicate(
        self,
        account_id: str,
        article: SourceArticle,
        content_hash: str,
        status: ArticleStatus,
        now: datetime,
        policy: DuplicatePolicy
    ) -> ItemOutcome:
        """Строка появилась между find и insert: другой процесс пишет те же данные."""
        logger.warning(
            f"[ArticleSync] Гонка по ключу {account_id}/{article.external_id}, политика {policy.value}"
        )
        if policy == DuplicatePolicy.SKIP:
            return ItemOutcome(ItemAction.SKIPPED)
        if policy == DuplicatePolicy.UPDATE:
            if self.store.update_if_changed(account_id, article, content_hash, status, now):
                return ItemOutcome(ItemAction.UPDATED)
            return ItemOutcome(ItemAction.SKIPPED)
        return ItemOutcome(
            ItemAction.FAILED,
            error=ItemError(
                external_id=article.external_id,
                title=article.title,
                reason=DuplicateItemError.reason,
                message=f"Статья {article.external_id} уже записана другим процессом",
            ),
            fatal=True,
        )

    def _renew(self, lease: LockLease) -> None:
        if not self.lock_manager.renew(lease.lock_key, lease.holder_id, self.config.lock_ttl_seconds):
            raise LockLostError(f"Блокировка {lease.lock_key} потеряна во время синхронизации")

    def _release(self, lease: LockLease) -> None:
        try:
            self.lock_manager.release(lease.lock_key, lease.holder_id)
        except LockStoreError as e:
            # Аренда истечет сама по TTL
            logger.error(f"[ArticleSync] Не удалось снять блокировку {lease.lock_key}: {e.message}")

    @staticmethod
    def _limit_reached(run: SyncRun, options: SyncOptions) -> bool:
        return options.item_limit is not None and run.stats.total >= options.item_limit

    @staticmethod
    def _check_cancelled(cancel_event: threading.Event) -> None:
        if cancel_event.is_set():
            raise SyncCancelled("Синхронизация отменена")


def read_sync_status(
    account_id: str,
    lock_manager: LockManager,
    article_store: ArticleStore,
    config: Optional[ArticleSyncConfig] = None
) -> SyncStatus:
    config = config or article_sync_config
    return SyncStatus(
        account_id=account_id,
        is_syncing=lock_manager.is_held(config.lock_key(account_id)),
        article_count=article_store.count(account_id),
        last_synced_at=article_store.last_updated_at(account_id),
    )


_rate_limiter: Optional[TokenBucketRateLimiter] = None
_rate_limiter_lock = threading.Lock()


def get_rate_limiter() -> TokenBucketRateLimiter:
    """Общий для процесса rate limiter внешнего API."""
    global _rate_limiter
    if _rate_limiter is None:
        with _rate_limiter_lock:
            if _rate_limiter is None:
                _rate_limiter = TokenBucketRateLimiter(article_sync_config.rate_limit_requests_per_minute)
    return _rate_limiter


def _default_session_factory() -> Callable[[], Session]:
    from app.database import SessionLocal
    return SessionLocal


def build_lock_manager(session_factory: Optional[Callable[[], Session]] = None) -> LockManager:
    return LockManager(SqlLockStore(session_factory or _default_session_factory()))


def build_article_store(session_factory: Optional[Callable[[], Session]] = None) -> ArticleStore:
    return SqlArticleStore(session_factory or _default_session_factory())


def get_article_sync_service(
    account_id: str,
    session_factory: Optional[Callable[[], Session]] = None,
    cancel_event: Optional[threading.Event] = None
) -> ArticleSyncService:
    """
    Собирает сервис синхронизации для аккаунта из настроек приложения.

    Источник и сервис получают одно событие отмены: cancel() сервиса
    прерывает и ожидание rate limiter.

    Raises:
        SyncValidationError: Для аккаунта не настроены учетные данные
    """
    credentials = settings.get_source_credentials(account_id)
    if credentials is None:
        raise SyncValidationError(f"Не найдены учетные данные для аккаунта {account_id}")
    session_factory = session_factory or _default_session_factory()
    cancel_event = cancel_event or threading.Event()

    source = ContentSourceClient(
        app_id=credentials.app_id,
        app_secret=credentials.app_secret,
        timeout=article_sync_config.request_timeout_seconds,
        rate_limiter=get_rate_limiter(),
        cancel_event=cancel_event,
    )
    return ArticleSyncService(
        lock_manager=build_lock_manager(session_factory),
        article_store=build_article_store(session_factory),
        source=source,
        cancel_event=cancel_event,
    )

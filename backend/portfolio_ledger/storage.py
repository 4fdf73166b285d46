from __future__ import annotations

import json
import logging
from pathlib import Path
from threading import Lock, RLock
from typing import Callable

from pydantic import ValidationError

from .cache import TTLCache
from .errors import NotFound, PersistenceError, VersionConflict
from .models import Portfolio
from .utils.time_utils import now_datetime_text

logger = logging.getLogger(__name__)

LIST_CACHE_KEY = "portfolios:list"
ITEM_CACHE_PREFIX = "portfolio:"


class PortfolioRepository:
    """Whole-file JSON store for portfolios with a read-through cache.

    Writes go to a temp file and are swapped in with ``replace``. ``save``
    compares the stored ``version`` with the caller's and bumps it, so two
    writers that read the same snapshot cannot both commit.
    """

    _SCHEMA_VERSION = 1

    def __init__(
        self,
        path: str | Path,
        cache: TTLCache | None = None,
        now_datetime: Callable[[], str] = now_datetime_text,
    ) -> None:
        self._path = Path(path)
        self._cache = cache or TTLCache()
        self._now_datetime = now_datetime
        self._file_lock = RLock()
        self._locks_guard = Lock()
        self._portfolio_locks: dict[str, RLock] = {}

    @property
    def path(self) -> Path:
        return self._path

    @staticmethod
    def _item_key(portfolio_id: str) -> str:
        return f"{ITEM_CACHE_PREFIX}{portfolio_id}"

    def lock_for(self, portfolio_id: str) -> RLock:
        with self._locks_guard:
            lock = self._portfolio_locks.get(portfolio_id)
            if lock is None:
                lock = RLock()
                self._portfolio_locks[portfolio_id] = lock
            return lock

    def _migrate(self, raw: dict[str, object]) -> tuple[Portfolio, bool]:
        changed = False
        if raw.get("initial_cash") is None:
            raw["initial_cash"] = raw.get("cash", 0.0)
            changed = True
        portfolio = Portfolio(**raw)
        if "initial_leverage_amount" not in raw:
            credit = portfolio.leverage.total_amount
            for tx in portfolio.transactions:
                if tx.type == "LEVERAGE_ADD":
                    credit -= tx.amount
                elif tx.type == "LEVERAGE_REMOVE":
                    credit += tx.amount
            portfolio.initial_leverage_amount = max(0.0, credit)
            changed = True
        return portfolio, changed

    def _read_all_locked(self) -> dict[str, Portfolio]:
        if not self._path.exists():
            return {}
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.error(f"Failed to read portfolios from {self._path}: {e}")
            raise PersistenceError(f"读取组合数据失败: {e}") from e

        rows = raw.get("portfolios") if isinstance(raw, dict) else raw
        if not isinstance(rows, list):
            raise PersistenceError("组合数据文件格式错误")

        portfolios: dict[str, Portfolio] = {}
        migrated = False
        for row in rows:
            if not isinstance(row, dict):
                raise PersistenceError("组合数据文件格式错误")
            try:
                portfolio, changed = self._migrate(dict(row))
            except ValidationError as e:
                # 不跳过: 下一次写入会把它从文件里抹掉
                logger.error(f"Malformed portfolio record {row.get('id')} in {self._path}: {e}")
                raise PersistenceError(f"组合数据记录损坏: {row.get('id')}") from e
            migrated = migrated or changed
            portfolios[portfolio.id] = portfolio
        if migrated:
            logger.info(f"Migrated legacy portfolio fields in {self._path}")
            self._write_all_locked(portfolios)
        return portfolios

    def _write_all_locked(self, portfolios: dict[str, Portfolio]) -> None:
        payload = {
            "schema_version": self._SCHEMA_VERSION,
            "portfolios": [item.model_dump() for item in portfolios.values()],
            "audit": {"updated_at": self._now_datetime()},
        }
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_suffix(".tmp")
            tmp_path.write_text(
                json.dumps(payload, ensure_ascii=False, sort_keys=True, indent=2),
                encoding="utf-8",
            )
            tmp_path.replace(self._path)
        except OSError as e:
            logger.error(f"Failed to write portfolios to {self._path}: {e}")
            self._cache.delete_by_prefix(ITEM_CACHE_PREFIX)
            self._cache.delete(LIST_CACHE_KEY)
            raise PersistenceError(f"保存组合数据失败: {e}") from e

    def list(self) -> list[Portfolio]:
        cached = self._cache.get(LIST_CACHE_KEY)
        if cached is None:
            with self._file_lock:
                cached = list(self._read_all_locked().values())
            self._cache.set(LIST_CACHE_KEY, cached)
        return [item.model_copy(deep=True) for item in cached]

    def get(self, portfolio_id: str) -> Portfolio:
        cached = self._cache.get(self._item_key(portfolio_id))
        if cached is None:
            with self._file_lock:
                cached = self._read_all_locked().get(portfolio_id)
            if cached is None:
                raise NotFound("PORTFOLIO_NOT_FOUND", f"投资组合不存在: {portfolio_id}")
            self._cache.set(self._item_key(portfolio_id), cached)
        return cached.model_copy(deep=True)

    def create(self, portfolio: Portfolio) -> Portfolio:
        with self._file_lock:
            portfolios = self._read_all_locked()
            stamp = self._now_datetime()
            created = portfolio.model_copy(
                deep=True,
                update={"version": 1, "created_at": portfolio.created_at or stamp, "updated_at": stamp},
            )
            portfolios[created.id] = created
            self._write_all_locked(portfolios)
        self._cache.set(self._item_key(created.id), created)
        self._cache.delete(LIST_CACHE_KEY)
        return created.model_copy(deep=True)

    def save(self, portfolio: Portfolio, expected_version: int) -> Portfolio:
        """
        Persist ``portfolio`` if the stored version still equals ``expected_version``.

        Raises:
            NotFound: the portfolio no longer exists
            VersionConflict: another writer committed first
            PersistenceError: the file could not be written; storage is unchanged
        """
        with self.lock_for(portfolio.id), self._file_lock:
            portfolios = self._read_all_locked()
            current = portfolios.get(portfolio.id)
            if current is None:
                raise NotFound("PORTFOLIO_NOT_FOUND", f"投资组合不存在: {portfolio.id}")
            if current.version != expected_version:
                raise VersionConflict(
                    f"组合 {portfolio.id} 已被修改 (当前版本 {current.version}, 期望 {expected_version})"
                )
            saved = portfolio.model_copy(
                deep=True,
                update={"version": current.version + 1, "updated_at": self._now_datetime()},
            )
            portfolios[saved.id] = saved
            self._write_all_locked(portfolios)
        self._cache.set(self._item_key(saved.id), saved)
        self._cache.delete(LIST_CACHE_KEY)
        return saved.model_copy(deep=True)

    def delete(self, portfolio_id: str) -> None:
        with self.lock_for(portfolio_id), self._file_lock:
            portfolios = self._read_all_locked()
            if portfolio_id not in portfolios:
                raise NotFound("PORTFOLIO_NOT_FOUND", f"投资组合不存在: {portfolio_id}")
            del portfolios[portfolio_id]
            self._write_all_locked(portfolios)
        with self._locks_guard:
            self._portfolio_locks.pop(portfolio_id, None)
        self._cache.delete(self._item_key(portfolio_id))
        self._cache.delete(LIST_CACHE_KEY)

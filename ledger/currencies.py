import logging
import threading
from typing import Callable, Iterable, Optional

from .errors import CurrencyInactive, CurrencyLocked, CurrencyNotFound, InvalidOperation
from .models import Currency, CurrencyRules

logger = logging.getLogger(__name__)


class CurrencyRegistry:
    """Known currencies, keyed by code.

    Reads are lock-free snapshots; administrative writes replace the stored
    (immutable) ``Currency`` under a lock. ``is_referenced`` is wired to the
    account store so that ``allow_negative_balance`` cannot silently flip once
    accounts exist.
    """

    def __init__(
        self,
        currencies: Iterable[Currency] = (),
        is_referenced: Optional[Callable[[str], bool]] = None,
    ):
        self._currencies: dict[str, Currency] = {c.code: c for c in currencies}
        self._lock = threading.Lock()
        self._is_referenced = is_referenced or (lambda code: False)

    def bind_reference_check(self, is_referenced: Callable[[str], bool]) -> None:
        self._is_referenced = is_referenced

    def get_currency(self, code: str) -> Currency:
        currency = self._currencies.get(code)
        if currency is None:
            raise CurrencyNotFound(code)
        return currency

    def require_active(self, code: str) -> Currency:
        currency = self.get_currency(code)
        if not currency.is_active:
            raise CurrencyInactive(code)
        return currency

    def is_active(self, code: str) -> bool:
        currency = self._currencies.get(code)
        return bool(currency and currency.is_active)

    def list_currencies(self) -> list[Currency]:
        return sorted(self._currencies.values(), key=lambda c: c.code)

    def list_active_currencies(self) -> list[Currency]:
        return [c for c in self.list_currencies() if c.is_active]

    def create_currency(self, currency: Currency) -> Currency:
        with self._lock:
            if currency.code in self._currencies:
                raise InvalidOperation(f"Currency '{currency.code}' already exists")
            self._currencies[currency.code] = currency
        logger.info("Created currency %s", currency.code)
        return currency

    def set_active(self, code: str, active: bool) -> Currency:
        with self._lock:
            updated = self.get_currency(code).model_copy(update={"is_active": active})
            self._currencies[code] = updated
        logger.info("Currency %s is_active=%s", code, active)
        return updated

    def update_currency(
        self,
        code: str,
        *,
        name: Optional[str] = None,
        symbol: Optional[str] = None,
        rules: Optional[CurrencyRules] = None,
        allow_negative_balance: Optional[bool] = None,
        migrate: bool = False,
    ) -> Currency:
        with self._lock:
            current = self.get_currency(code)
            changes = {}
            if name is not None:
                changes["name"] = name
            if symbol is not None:
                changes["symbol"] = symbol
            if rules is not None:
                changes["rules"] = rules
            if (
                allow_negative_balance is not None
                and allow_negative_balance != current.allow_negative_balance
            ):
                if self._is_referenced(code) and not migrate:
                    raise CurrencyLocked(
                        f"Currency '{code}' has accounts; changing allow_negative_balance requires a migration"
                    )
                changes["allow_negative_balance"] = allow_negative_balance
            updated = current.model_copy(update=changes)
            self._currencies[code] = updated
        if "allow_negative_balance" in changes:
            logger.warning(
                "Currency %s allow_negative_balance changed to %s (migrate=%s)",
                code, allow_negative_balance, migrate,
            )
        return updated

from datetime import datetime, timedelta, timezone

from ledger.config import LedgerSettings
from ledger.models import Currency


class FakeClock:
    """Settable wall clock; every call advances one millisecond."""

    def __init__(self, start: datetime = datetime(2024, 3, 10, 9, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        self.now += timedelta(milliseconds=1)
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_settings(**overrides) -> LedgerSettings:
    values = dict(
        database_url=None,
        retry_backoff_seconds=0,
        cache_ttl_seconds=30,
        currencies=[
            Currency(code="credits", name="Credits", symbol="pts"),
            Currency(code="gems", name="Gems", starting_balance=5),
            Currency(code="debt", name="Debt", allow_negative_balance=True),
        ],
    )
    values.update(overrides)
    return LedgerSettings(_env_file=None, **values)

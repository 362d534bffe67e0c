from .ledger import BalanceLedger
from .models import PREP_PACKAGES, PrepPackage, UserBalance
from .store import BalanceStore, LocalBalanceStore, RedisBalanceStore, build_balance_store

__all__ = [
    "BalanceLedger",
    "BalanceStore",
    "LocalBalanceStore",
    "PREP_PACKAGES",
    "PrepPackage",
    "RedisBalanceStore",
    "UserBalance",
    "build_balance_store",
]

import asyncio

import pytest

from mockprep.ledger import BalanceLedger, LocalBalanceStore
from mockprep.ledger.models import find_package
from mockprep.session.errors import InsufficientBalance, PersistenceFailure


class FlakyDiskBalanceStore(LocalBalanceStore):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_writes = False

    def _write_snapshot(self, snapshot: dict) -> None:
        if self.fail_writes:
            raise OSError("disk full")
        super()._write_snapshot(snapshot)


@pytest.mark.asyncio
async def test_new_user_gets_free_grant_and_debit_takes_one():
    ledger = BalanceLedger(LocalBalanceStore(free_grant=3))

    balance = await ledger.get_balance("u1")
    assert balance.remaining == 3
    assert balance.total_purchased == 0

    assert await ledger.debit("u1") == 2
    assert (await ledger.get_balance("u1")).remaining == 2


@pytest.mark.asyncio
async def test_debit_at_zero_raises_and_leaves_balance():
    ledger = BalanceLedger(LocalBalanceStore(free_grant=0))

    with pytest.raises(InsufficientBalance) as exc_info:
        await ledger.debit("u1")

    assert exc_info.value.remaining == 0
    assert (await ledger.get_balance("u1")).remaining == 0


@pytest.mark.asyncio
async def test_concurrent_debits_never_overspend():
    ledger = BalanceLedger(LocalBalanceStore(free_grant=5))

    results = await asyncio.gather(*[ledger.debit("u1") for _ in range(12)], return_exceptions=True)

    successes = [item for item in results if isinstance(item, int)]
    rejected = [item for item in results if isinstance(item, InsufficientBalance)]
    assert len(successes) == 5
    assert len(rejected) == 7
    assert sorted(successes) == [0, 1, 2, 3, 4]
    assert (await ledger.get_balance("u1")).remaining == 0


@pytest.mark.asyncio
async def test_failed_write_rolls_back_debit(tmp_path):
    store = FlakyDiskBalanceStore(path=tmp_path / "balances.json", free_grant=2)
    ledger = BalanceLedger(store)
    await ledger.get_balance("u1")

    store.fail_writes = True
    with pytest.raises(PersistenceFailure):
        await ledger.debit("u1")

    store.fail_writes = False
    assert (await ledger.get_balance("u1")).remaining == 2


@pytest.mark.asyncio
async def test_refund_and_purchase_grant(tmp_path):
    ledger = BalanceLedger(LocalBalanceStore(path=tmp_path / "balances.json", free_grant=1))

    assert await ledger.debit("u1") == 0
    assert await ledger.refund("u1") == 1

    package = find_package("standard")
    assert package is not None
    balance = await ledger.grant("u1", package.preps, purchased=True)
    assert balance.remaining == 13
    assert balance.total_purchased == 12


@pytest.mark.asyncio
async def test_balances_survive_reload(tmp_path):
    path = tmp_path / "balances.json"
    ledger = BalanceLedger(LocalBalanceStore(path=path, free_grant=3))
    await ledger.debit("u1")
    await ledger.grant("u2", 5, purchased=True)

    reloaded = BalanceLedger(LocalBalanceStore(path=path, free_grant=3))
    assert (await reloaded.get_balance("u1")).remaining == 2
    u2 = await reloaded.get_balance("u2")
    assert u2.remaining == 8
    assert u2.total_purchased == 5


def test_unknown_package_lookup():
    assert find_package("BASIC").preps == 5
    assert find_package("enterprise") is None

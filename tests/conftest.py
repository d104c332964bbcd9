"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import Iterable
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from aa_stats.aggregation.assets import AssetMetadata, AssetMetadataCache
from aa_stats.aggregation.rates import ExchangeRates
from aa_stats.storage.models import (
    AABalanceModel,
    AAResponseModel,
    AssetMetadataModel,
    AssetModel,
    Base,
    LedgerBase,
    OutputModel,
    UnitAuthorModel,
    UnitModel,
)

AA = "AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA"
AA2 = "BBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBB"
USER1 = "USER1USER1USER1USER1USER1USER1UU"
USER2 = "USER2USER2USER2USER2USER2USER2UU"
ISSUER = "ISSUERISSUERISSUERISSUERISSUERII"

ASSET1 = "asset1+unit+hash+aaaaaaaaaaaaaaaaaaaaaaaaaaa="
ASSET2 = "asset2+unit+hash+bbbbbbbbbbbbbbbbbbbbbbbbbbb="

HOUR = 3600


class LedgerSeeder:
    """Writes upstream ledger rows the way the ledger node would."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def add_response(
        self,
        response_id: int,
        *,
        timestamp: int,
        aa: str = AA,
        trigger_address: str = USER1,
        inflows: Iterable[tuple[str | None, int]] = ((None, 10_000),),
        outflows: Iterable[tuple[str, str | None, int]] = (),
        bounced: bool = False,
    ) -> None:
        """Add a trigger paying ``inflows`` to the agent and its response paying ``outflows``."""
        trigger_unit = f"trigger-{response_id}"
        response_unit = f"response-{response_id}"
        async with self.session_factory() as session:
            async with session.begin():
                session.add(UnitModel(unit=trigger_unit, timestamp=timestamp))
                session.add(UnitModel(unit=response_unit, timestamp=timestamp + 1))
                session.add(
                    AAResponseModel(
                        aa_response_id=response_id,
                        mci=response_id,
                        trigger_address=trigger_address,
                        aa_address=aa,
                        trigger_unit=trigger_unit,
                        bounced=1 if bounced else 0,
                        response_unit=response_unit,
                    )
                )
                for i, (asset, amount) in enumerate(inflows):
                    session.add(
                        OutputModel(unit=trigger_unit, output_index=i, address=aa, asset=asset, amount=amount)
                    )
                # Change back to the trigger author is not an inflow.
                session.add(
                    OutputModel(unit=trigger_unit, output_index=99, address=trigger_address, asset=None, amount=7)
                )
                for i, (address, asset, amount) in enumerate(outflows):
                    session.add(
                        OutputModel(unit=response_unit, output_index=i, address=address, asset=asset, amount=amount)
                    )
                # Change back to the agent is not an outflow.
                session.add(
                    OutputModel(unit=response_unit, output_index=99, address=aa, asset=None, amount=3)
                )

    async def add_asset(
        self,
        asset: str,
        *,
        definer: str = ISSUER,
        cap: int | None = None,
        name: str | None = None,
        decimals: int = 0,
    ) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                session.add(AssetModel(unit=asset, cap=cap))
                session.add(UnitAuthorModel(unit=asset, address=definer))
                if name is not None:
                    session.add(AssetMetadataModel(asset=asset, name=name, decimals=decimals))

    async def set_balance(self, address: str, asset: str, balance: int) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await session.merge(AABalanceModel(address=address, asset=asset, balance=balance))


@pytest.fixture
async def async_engine():
    """Create an async SQLite engine holding both ledger and owned tables."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(LedgerBase.metadata.create_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=async_engine, expire_on_commit=False)


@pytest.fixture
def ledger(session_factory) -> LedgerSeeder:
    return LedgerSeeder(session_factory)


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Create a mock Redis client backed by a dict."""
    store: dict[str, bytes] = {}

    async def _get(key: str) -> bytes | None:
        return store.get(key)

    async def _set(key: str, value: str) -> bool:
        store[key] = str(value).encode()
        return True

    redis = AsyncMock()
    redis.store = store
    redis.get = AsyncMock(side_effect=_get)
    redis.set = AsyncMock(side_effect=_set)
    return redis


@pytest.fixture
def asset_cache() -> AssetMetadataCache:
    return AssetMetadataCache(
        [
            AssetMetadata(asset=ASSET1, name="USDX", decimals=2),
            AssetMetadata(asset=ASSET2, name="TOKEN", decimals=0),
        ]
    )


@pytest.fixture
def rates() -> ExchangeRates:
    return ExchangeRates({"GBYTE_USD": 20.0, f"{ASSET1}_USD": 1.0})

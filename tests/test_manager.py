"""
Test the indexer manager fleet operations.
"""

import pytest

from paygate.core.config import Settings
from paygate.core.exceptions import ChainClientError, UnknownChainError
from paygate.indexer.manager import IndexerManager
from paygate.indexer.types import IndexerStatus

from fakes import ETHEREUM_CHAIN_ID, GATEWAY, PUSH_CHAIN_ID, FakeChainClient


class ClientFactory:
    """Hands out fake clients and remembers them by chain id."""

    def __init__(self):
        self.clients = {}

    def __call__(self, chain_config):
        client = FakeChainClient(chain_config.chain_id)
        self.clients[chain_config.chain_id] = client
        return client


def two_chain_settings(**overrides):
    values = dict(
        gateway_contract_address=GATEWAY,
        ethereum_gateway_contract=GATEWAY,
        indexer_poll_interval=3600,
        indexer_restart_delay=0,
        indexer_stop_timeout=1,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def factory():
    return ClientFactory()


@pytest.fixture
async def manager(store, factory):
    manager = IndexerManager.from_settings(store, config=two_chain_settings(), client_factory=factory)
    yield manager
    await manager.stop_all()


async def test_only_configured_chains_are_indexed(store, factory):
    manager = IndexerManager.from_settings(
        store,
        config=Settings(gateway_contract_address=GATEWAY),
        client_factory=factory
    )

    # The native chain is present even without any external contract
    assert manager.get_supported_chains() == [PUSH_CHAIN_ID]


async def test_from_settings_shares_processor_and_registers_clients(manager, factory):
    assert manager.get_supported_chains() == [ETHEREUM_CHAIN_ID, PUSH_CHAIN_ID]

    processors = {id(w.processor) for w in manager.watchers.values()}
    assert len(processors) == 1

    processor = manager.watchers[PUSH_CHAIN_ID].processor
    assert processor.clients[ETHEREUM_CHAIN_ID] is factory.clients[ETHEREUM_CHAIN_ID]
    assert processor.clients[PUSH_CHAIN_ID] is factory.clients[PUSH_CHAIN_ID]

    watcher = manager.watchers[ETHEREUM_CHAIN_ID]
    assert watcher.chain_name == "ethereum"
    assert watcher.poll_interval == 3600


async def test_start_all_reports_each_chain(manager):
    results = await manager.start_all()

    assert {r.chain_id for r in results} == {PUSH_CHAIN_ID, ETHEREUM_CHAIN_ID}
    assert all(r.success for r in results)
    assert manager.is_indexer_running(PUSH_CHAIN_ID)
    assert manager.is_indexer_running(ETHEREUM_CHAIN_ID)


async def test_one_chain_failing_does_not_block_others(manager, factory):
    factory.clients[ETHEREUM_CHAIN_ID].connect_error = ChainClientError("connection refused")

    results = {r.chain_id: r for r in await manager.start_all()}

    assert results[PUSH_CHAIN_ID].success
    assert not results[ETHEREUM_CHAIN_ID].success
    assert "connection refused" in results[ETHEREUM_CHAIN_ID].error
    assert manager.watchers[ETHEREUM_CHAIN_ID].status == IndexerStatus.FAILED

    summary = manager.get_manager_status()
    assert summary == {"is_running": True, "total_indexers": 2, "running_indexers": 1}


async def test_stop_all_stops_everything(manager):
    await manager.start_all()

    results = await manager.stop_all()

    assert all(r.success for r in results)
    assert manager.get_manager_status()["running_indexers"] == 0
    assert not manager.get_manager_status()["is_running"]


async def test_restart_all_opens_new_generation(manager, factory):
    await manager.start_all()
    generations = {chain_id: w.generation for chain_id, w in manager.watchers.items()}

    results = await manager.restart_all()

    assert all(r.success for r in results)
    for chain_id, watcher in manager.watchers.items():
        assert watcher.is_running
        assert watcher.generation == generations[chain_id] + 1
        assert len(factory.clients[chain_id].subscriptions) == 2


async def test_single_chain_control(manager):
    await manager.start_indexer(ETHEREUM_CHAIN_ID)

    assert manager.is_indexer_running(ETHEREUM_CHAIN_ID)
    assert not manager.is_indexer_running(PUSH_CHAIN_ID)

    await manager.stop_indexer(ETHEREUM_CHAIN_ID)
    assert not manager.is_indexer_running(ETHEREUM_CHAIN_ID)


async def test_unknown_chain_is_rejected(manager):
    with pytest.raises(UnknownChainError) as exc_info:
        await manager.start_indexer(999999)
    assert exc_info.value.code == "UNKNOWN_CHAIN"

    with pytest.raises(UnknownChainError):
        await manager.stop_indexer(999999)

    assert not manager.is_indexer_running(999999)


async def test_status_lists_every_chain(manager):
    await manager.start_indexer(PUSH_CHAIN_ID)

    statuses = {s.chain_id: s for s in manager.get_status()}

    assert statuses[PUSH_CHAIN_ID].status == IndexerStatus.RUNNING
    assert statuses[PUSH_CHAIN_ID].last_processed_block == 900
    assert statuses[ETHEREUM_CHAIN_ID].status == IndexerStatus.STOPPED
    assert statuses[ETHEREUM_CHAIN_ID].last_processed_block is None


async def test_shutdown_stops_and_closes_clients(manager, factory):
    await manager.start_all()

    await manager.shutdown()

    assert manager.get_manager_status()["running_indexers"] == 0
    assert all(client.closed for client in factory.clients.values())

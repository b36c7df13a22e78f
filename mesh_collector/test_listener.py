"""
Tests for StorageListener: layers, accounts, proofs and network info end up
in the store, and replays are harmless.
"""
import shutil
import tempfile

import pytest

from mesh_collector.collector import Collector
from mesh_collector.db import DB
from mesh_collector.listener import StorageListener
from mesh_collector.mapper import MalformedRecordError
from mesh_collector.model import LAYER_STATUS_APPROVED, LAYER_STATUS_APPLIED
from mesh_collector.storage import (
    LAYERS,
    RECEIPTS,
    TRANSACTIONS,
    NotFoundError,
    PersistenceStore,
)
from mesh_collector.test_collector import FakeNode
from mesh_collector.wire import (
    CoinTransfer,
    SmartContract,
    StreamEndedError,
    WireAccount,
    WireActivation,
    WireBlock,
    WireLayer,
    WireMalfeasanceProof,
    WireTransaction,
    WireTransactionReceipt,
)


@pytest.fixture
def db():
    temp_dir = tempfile.mkdtemp()
    db = DB(temp_dir)
    yield db
    db.close()
    shutil.rmtree(temp_dir)


@pytest.fixture
def store(db):
    return PersistenceStore(db)


@pytest.fixture
def listener(store):
    return StorageListener(store)


def _layer(number, status=LAYER_STATUS_APPROVED, malformed=False):
    transfer = WireTransaction(id=bytes([number, 1]), sender=b"\x5e", amount=10,
                               coin_transfer=CoinTransfer(receiver=b"\xaa"))
    call = WireTransaction(id=bytes([number, 2]), sender=b"\x5e", amount=0,
                           smart_contract=SmartContract(type=4, data="abc", account_id=b"\xcc"))
    txs = (transfer, call)
    if malformed:
        txs += (WireTransaction(id=bytes([number, 3]), sender=b"\x5e"),)
    atx = WireActivation(id=bytes([number, 9]), layer=number - 1, smesher_id=b"\x51",
                         coinbase=bytes([0xc0 + number]), num_units=2)
    return WireLayer(
        number=number,
        status=status,
        hash=bytes([number]),
        blocks=(WireBlock(id=bytes([number, 0xb0]), transactions=txs),),
        activations=(atx,),
        receipts=(WireTransactionReceipt(id=bytes([number, 1]), layer=number, index=0,
                                         result=1, gas_used=21, fee=42),),
    )


class TestOnLayer:
    @pytest.mark.asyncio
    async def test_layer_contents_persisted(self, listener, store):
        await listener.on_network_info("0xab", 1000, 4032, 100, 300, 1024)

        await listener.on_layer(_layer(5))

        layer = await store.get_layer(5)
        assert layer.txs_number == 2
        assert layer.txs_amount == 10

        transfer = await store.get_transaction("0x0501")
        assert transfer.receiver == "0xaa"
        assert transfer.index == 0
        call = await store.get_transaction("0x0502")
        assert (call.type, call.svm_data, call.receiver, call.index) == (4, "abc", "0xcc", 1)
        receipt = await store.get_receipt("0x0501")
        assert (receipt.layer, receipt.gas_used, receipt.fee) == (5, 21, 42)

        smesher = await store.get_smesher("0x51")
        assert smesher.coinbase == "0xc5"
        assert smesher.atx_count == 1
        assert smesher.commitment_size == 2048
        assert smesher.timestamp == 1000 + 4 * 300

    @pytest.mark.asyncio
    async def test_checkpoint_follows_layers(self, listener):
        assert await listener.get_last_layer() == 0
        for number in (1, 2, 3):
            await listener.on_layer(_layer(number))
        assert await listener.get_last_layer() == 3

    @pytest.mark.asyncio
    async def test_replay_is_harmless(self, listener, store, db):
        await listener.on_layer(_layer(5))
        await listener.on_layer(_layer(5))

        assert db.count_prefix(LAYERS) == 1
        assert db.count_prefix(TRANSACTIONS) == 2
        assert db.count_prefix(RECEIPTS) == 1
        assert (await store.get_smesher("0x51")).atx_count == 1

    @pytest.mark.asyncio
    async def test_redelivery_refines_status(self, listener, store):
        await listener.on_layer(_layer(5, status=LAYER_STATUS_APPROVED))
        await listener.on_layer(_layer(5, status=LAYER_STATUS_APPLIED))

        assert (await store.get_layer(5)).status == LAYER_STATUS_APPLIED

    @pytest.mark.asyncio
    async def test_malformed_layer_writes_nothing(self, listener, store, db):
        with pytest.raises(MalformedRecordError):
            await listener.on_layer(_layer(6, malformed=True))

        assert db.count_prefix(TRANSACTIONS) == 0
        assert db.count_prefix(RECEIPTS) == 0
        with pytest.raises(NotFoundError):
            await store.get_layer(6)
        assert await listener.get_last_layer() == 0

    @pytest.mark.asyncio
    async def test_coinbase_moves_with_latest_activation(self, listener, store):
        await listener.on_layer(_layer(5))
        await listener.on_layer(_layer(6))

        smesher = await store.get_smesher_by_coinbase("0xc6")
        assert smesher.id == "0x51"
        assert smesher.atx_count == 2


class TestOtherEvents:
    @pytest.mark.asyncio
    async def test_accounts_and_proofs(self, listener, store):
        await listener.on_account(WireAccount(address=b"\xaa", balance=5, counter=1, layer=2))
        proof = WireMalfeasanceProof(smesher_id=b"\x51", layer=7, kind=3, proof=b"\x01")
        await listener.on_malfeasance_proof(proof)
        await listener.on_malfeasance_proof(proof)

        assert (await store.get_account("0xaa")).balance == 5
        assert len(await store.get_malfeasance_proofs("0x51")) == 1

    @pytest.mark.asyncio
    async def test_network_info_stored(self, listener, store):
        await listener.on_network_info("0xab", 1000, 4032, 100, 300, 1024)

        info = await store.get_network_info()
        assert info.genesis_id == "0xab"
        assert info.post_unit_size == 1024
        assert listener.layer_time(10) == 4000


class TestReconcileIntoStore:
    @pytest.mark.asyncio
    async def test_gap_closed_in_store(self, listener, store):
        await listener.on_layer(WireLayer(number=10))
        node = FakeNode(head=13)
        collector = Collector(node, listener)

        await collector.sync_missing_layers()

        assert [layer.number for layer in await store.get_layers(0, 100)] == [10, 11, 12, 13]
        assert await listener.get_last_layer() == 13
        assert await collector.sync_missing_layers() == 0

    @pytest.mark.asyncio
    async def test_layer_missed_before_subscribe_lands_in_store(self, listener, store):
        node = FakeNode(head=3, stream_layers=[WireLayer(number=5)])
        collector = Collector(node, listener)

        await collector.sync_missing_layers()
        with pytest.raises(StreamEndedError):
            await collector.layers_pump()

        assert [layer.number for layer in await store.get_layers(0, 100)] == [1, 2, 3, 4, 5]
        node.head = 5
        assert await collector.sync_missing_layers() == 0

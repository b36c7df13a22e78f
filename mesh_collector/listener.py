"""
Listener: what the collector does with each event it receives.

The collector only knows the abstract Listener. StorageListener is the
implementation used in production: it maps wire records to entities and
writes them through the persistence store.
"""
import logging
from abc import ABC, abstractmethod

from mesh_collector.mapper import (
    account_from_wire,
    activation_from_wire,
    block_from_wire,
    layer_from_wire,
    malfeasance_from_wire,
    receipt_from_wire,
    transaction_from_wire,
)
from mesh_collector.model import NetworkInfo
from mesh_collector.storage import DuplicateKeyError, PersistenceStore
from mesh_collector.utils.encoding import bytes_to_hex
from mesh_collector.wire import WireAccount, WireLayer, WireMalfeasanceProof

logger = logging.getLogger(__name__)


class Listener(ABC):
    @abstractmethod
    async def on_network_info(self, genesis_id: str, genesis_time: int,
                              epoch_num_layers: int, max_tps: int,
                              layer_duration: int, post_unit_size: int): ...

    @abstractmethod
    async def on_account(self, account: WireAccount): ...

    @abstractmethod
    async def on_layer(self, layer: WireLayer):
        """Called once per layer by both the live pump and the reconciler."""

    @abstractmethod
    async def on_malfeasance_proof(self, proof: WireMalfeasanceProof): ...

    @abstractmethod
    async def get_last_layer(self) -> int:
        """Highest layer number durably recorded, 0 if none."""


class StorageListener(Listener):
    def __init__(self, store: PersistenceStore):
        self.store = store
        self.network_info = None

    @property
    def post_unit_size(self) -> int:
        return self.network_info.post_unit_size if self.network_info else 0

    def layer_time(self, layer: int) -> int:
        """Unix time at which a layer starts, 0 before network info is known."""
        if self.network_info is None:
            return 0
        return self.network_info.genesis_time + layer * self.network_info.layer_duration

    async def on_network_info(self, genesis_id, genesis_time, epoch_num_layers,
                              max_tps, layer_duration, post_unit_size):
        self.network_info = NetworkInfo(
            genesis_id=genesis_id,
            genesis_time=genesis_time,
            epoch_num_layers=epoch_num_layers,
            max_transactions_per_second=max_tps,
            layer_duration=layer_duration,
            post_unit_size=post_unit_size,
        )
        await self.store.save_network_info(self.network_info)
        logger.info(f"Network info: genesis {genesis_id} at {genesis_time}, "
                    f"{epoch_num_layers} layers per epoch, {layer_duration}s layers")

    async def on_account(self, account):
        await self.store.save_account(account_from_wire(account))

    async def on_layer(self, layer):
        """
        Persists a layer's contents, then the layer itself.

        The whole layer is mapped before anything is written, so a malformed
        record rejects the layer without a partial write. The layer record
        goes in last: get_last_layer() only moves past this layer once its
        blocks, transactions, receipts and activations are stored.
        Replaying a layer is harmless, every write below is idempotent.
        """
        number = layer.number
        entity = layer_from_wire(layer)

        blocks = []
        txs = []
        index = 0
        for wire_block in layer.blocks:
            block = block_from_wire(wire_block, number)
            blocks.append(block)
            for wire_tx in wire_block.transactions:
                txs.append(transaction_from_wire(wire_tx, number, block.id, index))
                index += 1

        activations = [
            activation_from_wire(atx, self.post_unit_size, self.layer_time(atx.layer))
            for atx in layer.activations
        ]
        receipts = [receipt_from_wire(r) for r in layer.receipts]

        for block in blocks:
            await self.store.save_block(block)
        for tx in txs:
            await self.store.save_transaction(tx)
        for receipt in receipts:
            await self.store.save_receipt(receipt)
        for atx in activations:
            await self.store.save_activation(atx)

        # Later activations of the same smesher win.
        latest = {atx.smesher_id: atx for atx in activations}
        async with self.store.smesher_batch() as batch:
            for atx in latest.values():
                await batch.update_smesher(atx.smesher_id, atx.coinbase,
                                           atx.commitment_size, atx.timestamp)

        try:
            await self.store.save_layer(entity)
        except DuplicateKeyError:
            if await self.store.update_layer_status(number, entity.status):
                logger.info(f"Layer {number} status refined to {entity.status}")
            else:
                logger.debug(f"Layer {number} already stored")
            return

        logger.info(f"Stored layer {number}: {len(blocks)} blocks, {len(txs)} txs, "
                    f"{len(receipts)} receipts, {len(activations)} activations")

    async def on_malfeasance_proof(self, proof):
        stored = await self.store.save_malfeasance_proof(malfeasance_from_wire(proof))
        if stored:
            logger.info(f"Malfeasance proof for {bytes_to_hex(proof.smesher_id)} at layer {proof.layer}")

    async def get_last_layer(self) -> int:
        return await self.store.get_last_layer()

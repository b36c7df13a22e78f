"""
Persistence store for ingested ledger data.

Each collection is a key prefix inside one LevelDB database and every
document is a msgpack-encoded dict. The primary key of a collection is its
unique index: inserts into append-only collections refuse to overwrite an
existing key, upserts overwrite the mutable fields of the stored document.

All public operations are coroutines. The blocking LevelDB call runs on a
worker thread and the caller waits for it under a bounded timeout.
"""
import asyncio
import functools
import hashlib
import logging
import threading
from typing import Optional

import msgpack
import plyvel

from mesh_collector.db import DB, BatchWriter
from mesh_collector.model import (
    Account,
    Activation,
    Block,
    Layer,
    MalfeasanceProof,
    NetworkInfo,
    Smesher,
    Transaction,
    TransactionReceipt,
)
from mesh_collector.utils.encoding import encode_uint

logger = logging.getLogger(__name__)

QUERY_TIMEOUT = 5.0  # seconds
BATCH_SIZE = 1000
MAX_LAYER = (1 << 64) - 1

# Collections
LAYERS = b'layers:'
BLOCKS = b'blocks:'
TRANSACTIONS = b'txs:'
RECEIPTS = b'receipts:'
ACTIVATIONS = b'activations:'
SMESHERS = b'smeshers:'
COINBASES = b'coinbases:'
COINBASE_OWNERS = b'coinbase_owners:'
ACCOUNTS = b'accounts:'
MALFEASANCE = b'malfeasance:'
NETWORK_INFO = b'network_info'


class StorageError(Exception):
    """A store operation failed or timed out."""


class NotFoundError(StorageError):
    """A point lookup matched no document."""


class DuplicateKeyError(StorageError):
    """An insert collided with an existing unique key."""


def _pack(doc: dict) -> bytes:
    return msgpack.packb(doc, use_bin_type=True)


def _unpack(raw: Optional[bytes]) -> Optional[dict]:
    if raw is None:
        return None
    return msgpack.unpackb(raw, raw=False)


def _layer_key(number: int) -> bytes:
    return LAYERS + encode_uint(number)


def _smesher_key(smesher_id: str) -> bytes:
    return SMESHERS + smesher_id.encode()


def _coinbase_key(smesher_id: str) -> bytes:
    return COINBASES + smesher_id.encode()


def _coinbase_owner_key(coinbase: str) -> bytes:
    return COINBASE_OWNERS + coinbase.encode()


def _activations_prefix(smesher_id: str) -> bytes:
    return ACTIVATIONS + smesher_id.encode() + b':'


def _malfeasance_key(proof: MalfeasanceProof) -> bytes:
    digest = hashlib.sha256(_pack(proof.to_dict())).hexdigest()
    return MALFEASANCE + proof.smesher_id.encode() + b':' + digest.encode()


class PersistenceStore:
    def __init__(self, db: DB, query_timeout: float = QUERY_TIMEOUT,
                 batch_size: int = BATCH_SIZE):
        self.db = db
        self.query_timeout = query_timeout
        self.batch_size = batch_size
        # Guards check-then-put and read-modify-write sequences. Calls run on
        # executor threads, so asyncio alone does not serialize them.
        self.lock = threading.Lock()

    async def _run(self, operation: str, fn, *args):
        loop = asyncio.get_running_loop()
        call = functools.partial(fn, *args)
        try:
            return await asyncio.wait_for(loop.run_in_executor(None, call),
                                          timeout=self.query_timeout)
        except asyncio.TimeoutError:
            logger.error(f"{operation}: timed out after {self.query_timeout}s")
            raise StorageError(f"{operation}: timed out after {self.query_timeout}s")
        except (plyvel.Error, RuntimeError) as e:
            logger.error(f"{operation}: {e}")
            raise StorageError(f"{operation}: {e}") from e

    # ------------------------------------------------------------------ #
    # Generic document helpers (run on executor threads)
    # ------------------------------------------------------------------ #
    def _insert(self, key: bytes, doc: dict) -> bool:
        with self.lock:
            if self.db.exists(key):
                return False
            self.db.put(key, _pack(doc))
            return True

    def _find(self, key: bytes) -> Optional[dict]:
        return _unpack(self.db.get(key))

    def _upsert(self, writer, key: bytes, fields: dict, defaults: dict):
        """Sets fields on the document at key, creating it from defaults if absent."""
        with self.lock:
            doc = _unpack(writer.get(key))
            if doc is None:
                doc = dict(defaults)
            doc.update(fields)
            writer.put(key, _pack(doc))
            return doc

    # ------------------------------------------------------------------ #
    # Layers
    # ------------------------------------------------------------------ #
    async def save_layer(self, layer: Layer):
        """
        Inserts a layer. Layers are immutable once written.

        Raises:
            DuplicateKeyError: if a layer with the same number is stored.
        """
        inserted = await self._run('save_layer', self._insert,
                                   _layer_key(layer.number), layer.to_dict())
        if not inserted:
            raise DuplicateKeyError(f"save_layer: layer {layer.number} already exists")

    def _refine_layer_status(self, number: int, status: int) -> bool:
        key = _layer_key(number)
        with self.lock:
            doc = _unpack(self.db.get(key))
            if doc is None:
                raise NotFoundError(f"update_layer_status: layer {number} not found")
            if status <= doc['status']:
                return False
            doc['status'] = status
            self.db.put(key, _pack(doc))
            return True

    async def update_layer_status(self, number: int, status: int) -> bool:
        """
        Moves a stored layer to a later status. Only the status of a layer
        may change after it is written, and only forward.

        Returns True if the status changed.
        """
        return await self._run('update_layer_status', self._refine_layer_status,
                               number, status)

    async def get_layer(self, number: int) -> Layer:
        doc = await self._run('get_layer', self._find, _layer_key(number))
        if doc is None:
            raise NotFoundError(f"get_layer: layer {number} not found")
        return Layer.from_dict(doc)

    async def get_layers(self, start: int, end: int) -> list[Layer]:
        """Returns the stored layers with start <= number <= end, ascending."""
        if end < start:
            return []
        start_key = _layer_key(start)
        if end >= MAX_LAYER:
            stop_key = LAYERS[:-1] + b';'  # first key after the collection
        else:
            stop_key = _layer_key(end + 1)
        rows = await self._run('get_layers', self.db.get_range, start_key, stop_key)
        return [Layer.from_dict(_unpack(value)) for _, value in rows]

    def _last_layer(self) -> int:
        row = self.db.last(LAYERS)
        if row is None:
            return 0
        return _unpack(row[1])['number']

    async def get_last_layer(self) -> int:
        """Highest stored layer number, 0 when nothing is stored yet."""
        return await self._run('get_last_layer', self._last_layer)

    # ------------------------------------------------------------------ #
    # Blocks, transactions, receipts
    # ------------------------------------------------------------------ #
    async def save_block(self, block: Block) -> bool:
        return await self._run('save_block', self._insert,
                               BLOCKS + block.id.encode(), block.to_dict())

    async def save_transaction(self, tx: Transaction) -> bool:
        """Inserts a transaction; returns False if it was already stored."""
        return await self._run('save_transaction', self._insert,
                               TRANSACTIONS + tx.id.encode(), tx.to_dict())

    async def get_transaction(self, tx_id: str) -> Transaction:
        doc = await self._run('get_transaction', self._find, TRANSACTIONS + tx_id.encode())
        if doc is None:
            raise NotFoundError(f"get_transaction: transaction {tx_id} not found")
        return Transaction.from_dict(doc)

    async def save_receipt(self, receipt: TransactionReceipt) -> bool:
        return await self._run('save_receipt', self._insert,
                               RECEIPTS + receipt.id.encode(), receipt.to_dict())

    async def get_receipt(self, tx_id: str) -> TransactionReceipt:
        doc = await self._run('get_receipt', self._find, RECEIPTS + tx_id.encode())
        if doc is None:
            raise NotFoundError(f"get_receipt: receipt {tx_id} not found")
        return TransactionReceipt.from_dict(doc)

    # ------------------------------------------------------------------ #
    # Activations
    # ------------------------------------------------------------------ #
    async def save_activation(self, atx: Activation) -> bool:
        key = _activations_prefix(atx.smesher_id) + atx.id.encode()
        return await self._run('save_activation', self._insert, key, atx.to_dict())

    def _count_activations(self, smesher_id: str) -> int:
        return self.db.count_prefix(_activations_prefix(smesher_id))

    async def get_activations_count(self, smesher_id: str) -> int:
        return await self._run('get_activations_count', self._count_activations, smesher_id)

    # ------------------------------------------------------------------ #
    # Smeshers and coinbase mappings
    # ------------------------------------------------------------------ #
    def _save_smesher(self, writer, smesher: Smesher):
        self._upsert(writer, _smesher_key(smesher.id), smesher.to_dict(), {})

    def _set_coinbase(self, writer, smesher_id: str, coinbase: str):
        """Upserts the smesher's coinbase mapping and its coinbase -> smesher entry."""
        key = _coinbase_key(smesher_id)
        with self.lock:
            doc = _unpack(writer.get(key))
            previous = doc.get('coinbase') if doc else None
            writer.put(key, _pack({'smesher_id': smesher_id, 'coinbase': coinbase}))
            if previous is not None and previous != coinbase:
                old_key = _coinbase_owner_key(previous)
                owner = _unpack(writer.get(old_key))
                if owner is not None and owner.get('smesher_id') == smesher_id:
                    writer.delete(old_key)
            writer.put(_coinbase_owner_key(coinbase), _pack({'smesher_id': smesher_id}))

    def _update_smesher(self, writer, smesher_id: str, coinbase: str,
                        commitment_size: int, timestamp: int):
        # The mapping and the smesher are separate writes: a failure between
        # them leaves the mapping ahead until the next update rewrites both.
        self._set_coinbase(writer, smesher_id, coinbase)

        atx_count = None
        try:
            atx_count = self._count_activations(smesher_id)
        except (plyvel.Error, RuntimeError) as e:
            logger.warning(f"update_smesher: activations count for {smesher_id} failed: {e}")

        fields = {
            'commitment_size': commitment_size,
            'coinbase': coinbase,
            'timestamp': timestamp,
        }
        if atx_count is not None:
            fields['atx_count'] = atx_count
        self._upsert(writer, _smesher_key(smesher_id), fields,
                     Smesher(id=smesher_id).to_dict())

    async def save_smesher(self, smesher: Smesher):
        """Upserts a smesher by id, overwriting every stored field."""
        await self._run('save_smesher', self._save_smesher, self.db, smesher)

    async def update_smesher(self, smesher_id: str, coinbase: str,
                             commitment_size: int, timestamp: int):
        """
        Points the smesher at a new coinbase and refreshes its aggregates.

        Upserts the coinbase mapping, recounts the smesher's activations and
        upserts the smesher. If the activation count cannot be read the
        update goes ahead with the previously stored count.
        """
        await self._run('update_smesher', self._update_smesher, self.db,
                        smesher_id, coinbase, commitment_size, timestamp)

    def smesher_batch(self) -> 'SmesherBatch':
        return SmesherBatch(self)

    async def get_smesher(self, smesher_id: str) -> Smesher:
        doc = await self._run('get_smesher', self._find, _smesher_key(smesher_id))
        if doc is None:
            raise NotFoundError(f"get_smesher: smesher {smesher_id} not found")
        return Smesher.from_dict(doc)

    def _find_coinbase_owner(self, coinbase: str) -> Optional[str]:
        doc = self._find(_coinbase_owner_key(coinbase))
        if doc is None:
            return None
        return doc.get('smesher_id') or None

    async def get_coinbase(self, smesher_id: str) -> str:
        doc = await self._run('get_coinbase', self._find, _coinbase_key(smesher_id))
        if doc is None:
            raise NotFoundError(f"get_coinbase: no coinbase for smesher {smesher_id}")
        return doc['coinbase']

    async def get_smesher_by_coinbase(self, coinbase: str) -> Smesher:
        smesher_id = await self._run('get_smesher_by_coinbase',
                                     self._find_coinbase_owner, coinbase)
        if smesher_id is None:
            raise NotFoundError(f"get_smesher_by_coinbase: no smesher for coinbase {coinbase}")
        return await self.get_smesher(smesher_id)

    async def get_smeshers_count(self) -> int:
        return await self._run('get_smeshers_count', self.db.count_prefix, SMESHERS)

    async def is_smesher_exists(self, smesher_id: str) -> bool:
        return await self._run('is_smesher_exists', self.db.exists, _smesher_key(smesher_id))

    # ------------------------------------------------------------------ #
    # Accounts, malfeasance proofs, network info
    # ------------------------------------------------------------------ #
    async def save_account(self, account: Account):
        await self._run('save_account', self._upsert, self.db,
                        ACCOUNTS + account.address.encode(), account.to_dict(), {})

    async def get_account(self, address: str) -> Account:
        doc = await self._run('get_account', self._find, ACCOUNTS + address.encode())
        if doc is None:
            raise NotFoundError(f"get_account: account {address} not found")
        return Account.from_dict(doc)

    async def save_malfeasance_proof(self, proof: MalfeasanceProof) -> bool:
        """Inserts a proof; re-delivery of identical evidence is a no-op."""
        return await self._run('save_malfeasance_proof', self._insert,
                               _malfeasance_key(proof), proof.to_dict())

    async def get_malfeasance_proofs(self, smesher_id: str) -> list[MalfeasanceProof]:
        rows = await self._run('get_malfeasance_proofs', self.db.get_prefix,
                               MALFEASANCE + smesher_id.encode() + b':')
        return [MalfeasanceProof.from_dict(_unpack(value)) for _, value in rows]

    async def save_network_info(self, info: NetworkInfo):
        await self._run('save_network_info', self.db.put, NETWORK_INFO, _pack(info.to_dict()))

    async def get_network_info(self) -> NetworkInfo:
        doc = await self._run('get_network_info', self._find, NETWORK_INFO)
        if doc is None:
            raise NotFoundError("get_network_info: network info not stored yet")
        return NetworkInfo.from_dict(doc)


class SmesherBatch:
    """
    Accumulates smesher updates and writes them in one LevelDB batch.

    Per-document semantics match PersistenceStore.update_smesher and
    save_smesher; only the number of round trips differs. Usage:

        async with store.smesher_batch() as batch:
            for atx in activations:
                await batch.update_smesher(...)
    """

    def __init__(self, store: PersistenceStore):
        self.store = store
        self.writer = BatchWriter(store.db, batch_size=store.batch_size)

    async def save_smesher(self, smesher: Smesher):
        await self.store._run('batch save_smesher', self.store._save_smesher,
                              self.writer, smesher)

    async def update_smesher(self, smesher_id: str, coinbase: str,
                             commitment_size: int, timestamp: int):
        await self.store._run('batch update_smesher', self.store._update_smesher,
                              self.writer, smesher_id, coinbase, commitment_size, timestamp)

    async def flush(self):
        await self.store._run('flush smesher batch', self.writer.flush)

    def __len__(self):
        return len(self.writer)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            await self.flush()
        return False

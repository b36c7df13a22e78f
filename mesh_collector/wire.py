"""
Node API records and the transport surface the collector consumes.

The records mirror the node's mesh/node/smesher/debug services. They are
produced by a NodeClient implementation and never written to storage
directly; mapper.py turns them into domain entities.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional


class NodeError(Exception):
    """Transport-level failure talking to the node."""


class StreamEndedError(NodeError):
    """A server stream ended without an error. Live ledger streams never should."""


@dataclass(frozen=True)
class CoinTransfer:
    receiver: bytes


@dataclass(frozen=True)
class SmartContract:
    type: int
    data: str
    account_id: bytes


@dataclass(frozen=True)
class WireTransaction:
    id: bytes
    sender: bytes
    amount: int = 0
    counter: int = 0
    gas_provided: int = 0
    gas_price: int = 0
    scheme: int = 0
    signature: bytes = b""
    public_key: bytes = b""
    coin_transfer: Optional[CoinTransfer] = None
    smart_contract: Optional[SmartContract] = None


@dataclass(frozen=True)
class WireTransactionReceipt:
    id: bytes
    layer: int
    index: int
    result: int = 0
    gas_used: int = 0
    fee: int = 0
    svm_data: str = ""


@dataclass(frozen=True)
class WireBlock:
    id: bytes
    transactions: tuple = ()


@dataclass(frozen=True)
class WireActivation:
    id: bytes
    layer: int
    smesher_id: bytes
    coinbase: bytes
    prev_atx: bytes = b""
    num_units: int = 0


@dataclass(frozen=True)
class WireLayer:
    number: int
    status: int = 0
    hash: bytes = b""
    blocks: tuple = ()
    activations: tuple = ()
    receipts: tuple = ()  # outcomes of transactions the node has executed


@dataclass(frozen=True)
class WireAccount:
    address: bytes
    balance: int = 0
    counter: int = 0
    layer: int = 0


@dataclass(frozen=True)
class WireMalfeasanceProof:
    smesher_id: bytes
    layer: int
    kind: int = 0
    debug_info: str = ""
    proof: bytes = b""


@dataclass(frozen=True)
class PostConfig:
    bits_per_label: int
    labels_per_unit: int


@dataclass(frozen=True)
class NodeStatus:
    synced_layer: int
    top_layer: int = 0
    verified_layer: int = 0
    connected_peers: int = 0
    is_synced: bool = False
    extra: dict = field(default_factory=dict, compare=False)


class NodeClient(ABC):
    """
    RPC surface of a mesh node.

    One-shot calls return when the node answers. The two stream methods
    establish the subscription and return an async iterator that yields
    records for as long as the node keeps it open; the iterator simply
    stops when the node closes the stream.
    """

    @abstractmethod
    async def genesis_time(self) -> int: ...

    @abstractmethod
    async def genesis_id(self) -> bytes: ...

    @abstractmethod
    async def epoch_num_layers(self) -> int: ...

    @abstractmethod
    async def max_transactions_per_second(self) -> int: ...

    @abstractmethod
    async def layer_duration(self) -> int: ...

    @abstractmethod
    async def accounts(self) -> list[WireAccount]: ...

    @abstractmethod
    async def post_config(self) -> PostConfig: ...

    @abstractmethod
    async def node_status(self) -> NodeStatus: ...

    @abstractmethod
    async def layers_query(self, start_layer: int, end_layer: int) -> list[WireLayer]: ...

    @abstractmethod
    async def layer_stream(self) -> AsyncIterator[WireLayer]:
        """Open the layer subscription; raises NodeError if it cannot be established."""

    @abstractmethod
    async def malfeasance_stream(self) -> AsyncIterator[WireMalfeasanceProof]:
        """Open the malfeasance proof subscription."""

    async def close(self):
        pass

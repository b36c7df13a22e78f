"""
Domain entities persisted by the collector.
"""
from dataclasses import dataclass, asdict, fields

# Layer status, as reported by the node.
LAYER_STATUS_UNSPECIFIED = 0
LAYER_STATUS_APPROVED = 1
LAYER_STATUS_CONFIRMED = 2
LAYER_STATUS_APPLIED = 3


class _Document:
    """to_dict/from_dict shared by all stored entities."""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict):
        """Builds the entity from a stored document, ignoring unknown keys."""
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in names})


@dataclass
class Layer(_Document):
    number: int
    status: int = LAYER_STATUS_UNSPECIFIED
    hash: str = ""
    blocks_number: int = 0
    txs_number: int = 0
    txs_amount: int = 0


@dataclass
class Block(_Document):
    id: str
    layer: int
    txs_number: int = 0


@dataclass
class Transaction(_Document):
    id: str
    layer: int
    block: str
    index: int  # position in the ordered list of txs executed in the layer
    result: int = 0

    gas_provided: int = 0
    gas_price: int = 0
    gas_used: int = 0  # gas units used by the transaction
    fee: int = 0  # fee charged for the transaction

    amount: int = 0  # coins transferred by the sender
    counter: int = 0  # nonce

    type: int = 0
    scheme: int = 0  # signature scheme
    signature: str = ""
    public_key: str = ""  # set only for schemes that carry the signer's key

    sender: str = ""
    receiver: str = ""
    svm_data: str = ""  # opaque svm payload, decoded downstream


@dataclass
class TransactionReceipt(_Document):
    id: str
    layer: int
    index: int
    result: int = 0
    gas_used: int = 0
    fee: int = 0
    svm_data: str = ""


@dataclass
class Activation(_Document):
    id: str
    layer: int
    smesher_id: str
    coinbase: str
    prev_atx: str = ""
    num_units: int = 0
    commitment_size: int = 0
    timestamp: int = 0


@dataclass
class Smesher(_Document):
    id: str
    name: str = ""
    lon: float = 0.0
    lat: float = 0.0
    commitment_size: int = 0
    coinbase: str = ""
    atx_count: int = 0
    timestamp: int = 0


@dataclass
class Account(_Document):
    address: str
    balance: int = 0
    counter: int = 0
    layer: int = 0


@dataclass
class MalfeasanceProof(_Document):
    smesher_id: str
    layer: int
    kind: int = 0
    debug_info: str = ""
    proof: str = ""


@dataclass
class NetworkInfo(_Document):
    genesis_id: str
    genesis_time: int
    epoch_num_layers: int
    max_transactions_per_second: int
    layer_duration: int
    post_unit_size: int

"""
Wire record -> domain entity mapping.

Every function here is pure: one wire record in, one entity out, no I/O.
"""
from typing import Union

from mesh_collector.model import (
    Account,
    Activation,
    Block,
    Layer,
    MalfeasanceProof,
    Transaction,
    TransactionReceipt,
)
from mesh_collector.utils.encoding import (
    address_to_string,
    bytes_to_hex,
    decode_uint,
)
from mesh_collector.wire import (
    CoinTransfer,
    SmartContract,
    WireAccount,
    WireActivation,
    WireBlock,
    WireLayer,
    WireMalfeasanceProof,
    WireTransaction,
    WireTransactionReceipt,
)

TxPayload = Union[CoinTransfer, SmartContract]


class MalformedRecordError(ValueError):
    """A wire record that cannot be mapped without losing or inventing data."""


def payload_of(tx: WireTransaction) -> TxPayload:
    """
    Returns the single payload variant carried by a wire transaction.

    Raises:
        MalformedRecordError: if neither or both variants are present.
    """
    if tx.coin_transfer is not None and tx.smart_contract is not None:
        raise MalformedRecordError(
            f"Transaction {bytes_to_hex(tx.id)} carries both coin transfer and smart contract payloads"
        )
    if tx.coin_transfer is not None:
        return tx.coin_transfer
    if tx.smart_contract is not None:
        return tx.smart_contract
    raise MalformedRecordError(f"Transaction {bytes_to_hex(tx.id)} carries no payload")


def transaction_from_wire(tx: WireTransaction, layer: int, block_id: str, index: int) -> Transaction:
    out = Transaction(
        id=bytes_to_hex(tx.id),
        layer=decode_uint(layer),
        block=block_id,
        index=decode_uint(index, 32),
        gas_provided=decode_uint(tx.gas_provided),
        gas_price=decode_uint(tx.gas_price),
        amount=decode_uint(tx.amount),
        counter=decode_uint(tx.counter),
        scheme=tx.scheme,
        signature=bytes_to_hex(tx.signature),
        public_key=bytes_to_hex(tx.public_key),
        sender=address_to_string(tx.sender),
    )

    payload = payload_of(tx)
    if isinstance(payload, CoinTransfer):
        out.receiver = address_to_string(payload.receiver)
    elif isinstance(payload, SmartContract):
        out.type = payload.type
        out.svm_data = payload.data
        out.receiver = address_to_string(payload.account_id)
    else:
        raise MalformedRecordError(f"Unknown transaction payload {type(payload).__name__}")

    return out


def receipt_from_wire(receipt: WireTransactionReceipt) -> TransactionReceipt:
    return TransactionReceipt(
        id=bytes_to_hex(receipt.id),
        layer=decode_uint(receipt.layer),
        index=decode_uint(receipt.index, 32),
        result=receipt.result,
        gas_used=decode_uint(receipt.gas_used),
        fee=decode_uint(receipt.fee),
        svm_data=receipt.svm_data,
    )


def block_from_wire(block: WireBlock, layer: int) -> Block:
    return Block(
        id=bytes_to_hex(block.id),
        layer=decode_uint(layer),
        txs_number=len(block.transactions),
    )


def layer_from_wire(layer: WireLayer) -> Layer:
    """Maps the layer header and its aggregate counters."""
    txs_number = 0
    txs_amount = 0
    for block in layer.blocks:
        txs_number += len(block.transactions)
        for tx in block.transactions:
            txs_amount += decode_uint(tx.amount)

    return Layer(
        number=decode_uint(layer.number),
        status=layer.status,
        hash=bytes_to_hex(layer.hash),
        blocks_number=len(layer.blocks),
        txs_number=txs_number,
        txs_amount=txs_amount,
    )


def activation_from_wire(atx: WireActivation, post_unit_size: int = 0, timestamp: int = 0) -> Activation:
    num_units = decode_uint(atx.num_units, 32)
    return Activation(
        id=bytes_to_hex(atx.id),
        layer=decode_uint(atx.layer),
        smesher_id=bytes_to_hex(atx.smesher_id),
        coinbase=address_to_string(atx.coinbase),
        prev_atx=bytes_to_hex(atx.prev_atx),
        num_units=num_units,
        commitment_size=num_units * post_unit_size,
        timestamp=timestamp,
    )


def account_from_wire(account: WireAccount) -> Account:
    return Account(
        address=address_to_string(account.address),
        balance=decode_uint(account.balance),
        counter=decode_uint(account.counter),
        layer=decode_uint(account.layer),
    )


def malfeasance_from_wire(proof: WireMalfeasanceProof) -> MalfeasanceProof:
    return MalfeasanceProof(
        smesher_id=bytes_to_hex(proof.smesher_id),
        layer=decode_uint(proof.layer),
        kind=proof.kind,
        debug_info=proof.debug_info,
        proof=bytes_to_hex(proof.proof),
    )

"""
Tests for wire record -> entity mapping.
"""
import unittest

from mesh_collector.mapper import (
    MalformedRecordError,
    activation_from_wire,
    layer_from_wire,
    malfeasance_from_wire,
    payload_of,
    receipt_from_wire,
    transaction_from_wire,
)
from mesh_collector.utils.encoding import DecodeError
from mesh_collector.wire import (
    CoinTransfer,
    SmartContract,
    WireActivation,
    WireBlock,
    WireLayer,
    WireMalfeasanceProof,
    WireTransaction,
    WireTransactionReceipt,
)


def _tx(**kwargs) -> WireTransaction:
    fields = dict(
        id=bytes.fromhex("01"),
        sender=bytes.fromhex("5e"),
        amount=50,
        counter=3,
        gas_provided=1000,
        gas_price=2,
        scheme=1,
        signature=bytes.fromhex("beef"),
        public_key=bytes.fromhex("cafe"),
    )
    fields.update(kwargs)
    return WireTransaction(**fields)


class TestTransactionVariants(unittest.TestCase):
    def test_coin_transfer(self):
        tx = transaction_from_wire(
            _tx(coin_transfer=CoinTransfer(receiver=bytes.fromhex("AA"))),
            layer=9, block_id="0xb1", index=4,
        )

        self.assertEqual(tx.receiver, "0xaa")
        self.assertEqual(tx.type, 0)
        self.assertEqual(tx.svm_data, "")

    def test_smart_contract(self):
        tx = transaction_from_wire(
            _tx(smart_contract=SmartContract(type=2, data="abc", account_id=bytes.fromhex("c0de"))),
            layer=9, block_id="0xb1", index=4,
        )

        self.assertEqual(tx.type, 2)
        self.assertEqual(tx.svm_data, "abc")
        self.assertEqual(tx.receiver, "0xc0de")

    def test_common_fields(self):
        tx = transaction_from_wire(
            _tx(coin_transfer=CoinTransfer(receiver=b"\xaa")),
            layer=9, block_id="0xb1", index=4,
        )

        self.assertEqual(tx.id, "0x01")
        self.assertEqual(tx.sender, "0x5e")
        self.assertEqual((tx.layer, tx.block, tx.index), (9, "0xb1", 4))
        self.assertEqual((tx.amount, tx.counter), (50, 3))
        self.assertEqual((tx.gas_provided, tx.gas_price), (1000, 2))
        self.assertEqual(tx.signature, "0xbeef")
        self.assertEqual(tx.public_key, "0xcafe")

    def test_no_payload_rejected(self):
        with self.assertRaises(MalformedRecordError):
            transaction_from_wire(_tx(), layer=1, block_id="0xb1", index=0)

    def test_both_payloads_rejected(self):
        wire = _tx(coin_transfer=CoinTransfer(receiver=b"\xaa"),
                   smart_contract=SmartContract(type=2, data="abc", account_id=b"\xbb"))
        with self.assertRaises(MalformedRecordError):
            payload_of(wire)
        with self.assertRaises(MalformedRecordError):
            transaction_from_wire(wire, layer=1, block_id="0xb1", index=0)

    def test_negative_amount_rejected(self):
        with self.assertRaises(DecodeError):
            transaction_from_wire(_tx(amount=-1, coin_transfer=CoinTransfer(receiver=b"\xaa")),
                                  layer=1, block_id="0xb1", index=0)


class TestLayerMapping(unittest.TestCase):
    def test_layer_aggregates(self):
        blocks = (
            WireBlock(id=b"\x01", transactions=(
                _tx(amount=10, coin_transfer=CoinTransfer(receiver=b"\xaa")),
                _tx(amount=5, coin_transfer=CoinTransfer(receiver=b"\xaa")),
            )),
            WireBlock(id=b"\x02", transactions=()),
        )
        layer = layer_from_wire(WireLayer(number=12, status=2, hash=b"\x0f", blocks=blocks))

        self.assertEqual(layer.number, 12)
        self.assertEqual(layer.status, 2)
        self.assertEqual(layer.hash, "0x0f")
        self.assertEqual(layer.blocks_number, 2)
        self.assertEqual(layer.txs_number, 2)
        self.assertEqual(layer.txs_amount, 15)

    def test_activation_commitment_size(self):
        atx = activation_from_wire(
            WireActivation(id=b"\x0a", layer=8, smesher_id=b"\x5a", coinbase=b"\xc0", num_units=4),
            post_unit_size=1024, timestamp=99,
        )

        self.assertEqual(atx.smesher_id, "0x5a")
        self.assertEqual(atx.coinbase, "0xc0")
        self.assertEqual(atx.commitment_size, 4096)
        self.assertEqual(atx.timestamp, 99)
        self.assertEqual(atx.prev_atx, "")

    def test_receipt(self):
        receipt = receipt_from_wire(WireTransactionReceipt(
            id=b"\x01", layer=3, index=1, result=1, gas_used=21, fee=42, svm_data="x"))

        self.assertEqual(receipt.id, "0x01")
        self.assertEqual((receipt.gas_used, receipt.fee, receipt.svm_data), (21, 42, "x"))

    def test_malfeasance(self):
        proof = malfeasance_from_wire(WireMalfeasanceProof(
            smesher_id=b"\x5a", layer=7, kind=3, debug_info="double vote", proof=b"\x01\x02"))

        self.assertEqual(proof.smesher_id, "0x5a")
        self.assertEqual(proof.proof, "0x0102")
        self.assertEqual(proof.debug_info, "double vote")


if __name__ == '__main__':
    unittest.main()

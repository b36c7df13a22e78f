"""
NodeClient over the node's JSON HTTP gateway.

The gateway exposes every API method as POST /v1/<service>/<method> with a
JSON body. Server streams come back as one JSON object per line, either
{"result": {...}} or {"error": {...}}. Bytes are base64, 64-bit integers
are decimal strings and enums are their names.
"""
import base64
import binascii
import json
import logging
from typing import AsyncIterator, Optional

import aiohttp

from mesh_collector.utils.encoding import DecodeError, decode_uint
from mesh_collector.wire import (
    CoinTransfer,
    NodeClient,
    NodeError,
    NodeStatus,
    PostConfig,
    SmartContract,
    WireAccount,
    WireActivation,
    WireBlock,
    WireLayer,
    WireMalfeasanceProof,
    WireTransaction,
    WireTransactionReceipt,
)

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30.0

LAYER_STATUS = {
    'LAYER_STATUS_UNSPECIFIED': 0,
    'LAYER_STATUS_APPROVED': 1,
    'LAYER_STATUS_CONFIRMED': 2,
    'LAYER_STATUS_APPLIED': 3,
}

SIGNATURE_SCHEME = {
    'SIGNATURE_SCHEME_UNSPECIFIED': 0,
    'SIGNATURE_SCHEME_ED25519': 1,
    'SIGNATURE_SCHEME_ED25519_PLUS_PLUS': 2,
}

TRANSACTION_TYPE = {
    'TRANSACTION_TYPE_UNSPECIFIED': 0,
    'TRANSACTION_TYPE_SIMPLE': 1,
    'TRANSACTION_TYPE_ATX': 2,
    'TRANSACTION_TYPE_PROOF': 3,
    'TRANSACTION_TYPE_EXEC_APP': 4,
    'TRANSACTION_TYPE_EXEC_AA': 5,
    'TRANSACTION_TYPE_SPAWN_APP': 6,
    'TRANSACTION_TYPE_DEPLOY_TEMPLATE': 7,
}

MALFEASANCE_KIND = {
    'MALFEASANCE_UNSPECIFIED': 0,
    'MALFEASANCE_ATX': 1,
    'MALFEASANCE_BALLOT': 2,
    'MALFEASANCE_HARE': 3,
}

RECEIPT_RESULT = {
    'TRANSACTION_RESULT_UNKNOWN': 0,
    'TRANSACTION_RESULT_EXECUTED': 1,
    'TRANSACTION_RESULT_BAD_COUNTER': 2,
    'TRANSACTION_RESULT_RUNTIME_EXCEPTION': 3,
    'TRANSACTION_RESULT_INSUFFICIENT_GAS': 4,
    'TRANSACTION_RESULT_INSUFFICIENT_FUNDS': 5,
}


# ---------------------------------------------------------------------- #
# JSON -> wire records
# ---------------------------------------------------------------------- #
def _b64(value) -> bytes:
    if not value:
        return b''
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, TypeError) as e:
        raise DecodeError(f"Invalid base64 value {value!r}: {e}")


def _enum(value, names: dict) -> int:
    if value is None:
        return 0
    if isinstance(value, str) and value in names:
        return names[value]
    return decode_uint(value, 32)


def _number(doc: Optional[dict], key: str = 'number', bits: int = 64) -> int:
    """Reads a wrapped number such as {"number": 5} or {"value": "5"}."""
    if not doc:
        return 0
    return decode_uint(doc.get(key, 0), bits)


def parse_transaction(doc: dict) -> WireTransaction:
    gas = doc.get('gasOffered') or {}
    sig = doc.get('signature') or {}

    coin_transfer = None
    if 'coinTransfer' in doc:
        coin_transfer = CoinTransfer(
            receiver=_b64((doc['coinTransfer'].get('receiver') or {}).get('address')),
        )
    smart_contract = None
    if 'smartContract' in doc:
        sc = doc['smartContract']
        smart_contract = SmartContract(
            type=_enum(sc.get('type'), TRANSACTION_TYPE),
            data=sc.get('data', ''),
            account_id=_b64((sc.get('accountId') or {}).get('address')),
        )

    return WireTransaction(
        id=_b64((doc.get('id') or {}).get('id')),
        sender=_b64((doc.get('sender') or {}).get('address')),
        amount=_number(doc.get('amount'), 'value'),
        counter=decode_uint(doc.get('counter', 0)),
        gas_provided=decode_uint(gas.get('gasProvided', 0)),
        gas_price=decode_uint(gas.get('gasPrice', 0)),
        scheme=_enum(sig.get('scheme'), SIGNATURE_SCHEME),
        signature=_b64(sig.get('signature')),
        public_key=_b64(sig.get('publicKey')),
        coin_transfer=coin_transfer,
        smart_contract=smart_contract,
    )


def parse_activation(doc: dict) -> WireActivation:
    return WireActivation(
        id=_b64((doc.get('id') or {}).get('id')),
        layer=_number(doc.get('layer')),
        smesher_id=_b64((doc.get('smesherId') or {}).get('id')),
        coinbase=_b64((doc.get('coinbase') or {}).get('address')),
        prev_atx=_b64((doc.get('prevAtx') or {}).get('id')),
        num_units=decode_uint(doc.get('numUnits', 0), 32),
    )


def parse_receipt(doc: dict) -> WireTransactionReceipt:
    return WireTransactionReceipt(
        id=_b64((doc.get('id') or {}).get('id')),
        layer=_number(doc.get('layerNumber')),
        index=decode_uint(doc.get('index', 0), 32),
        result=_enum(doc.get('result'), RECEIPT_RESULT),
        gas_used=decode_uint(doc.get('gasUsed', 0)),
        fee=_number(doc.get('fee'), 'value'),
        svm_data=doc.get('svmData', ''),
    )


def parse_layer(doc: dict) -> WireLayer:
    blocks = tuple(
        WireBlock(
            id=_b64(block.get('id')),
            transactions=tuple(parse_transaction(tx) for tx in block.get('transactions', [])),
        )
        for block in doc.get('blocks', [])
    )
    return WireLayer(
        number=_number(doc.get('number')),
        status=_enum(doc.get('status'), LAYER_STATUS),
        hash=_b64(doc.get('hash')),
        blocks=blocks,
        activations=tuple(parse_activation(a) for a in doc.get('activations', [])),
        receipts=tuple(parse_receipt(r) for r in doc.get('receipts', [])),
    )


def parse_account(doc: dict) -> WireAccount:
    state = doc.get('stateCurrent') or {}
    return WireAccount(
        address=_b64((doc.get('accountId') or {}).get('address')),
        balance=_number(state.get('balance'), 'value'),
        counter=decode_uint(state.get('counter', 0)),
        layer=_number(state.get('layer')),
    )


def parse_malfeasance_proof(doc: dict) -> WireMalfeasanceProof:
    return WireMalfeasanceProof(
        smesher_id=_b64((doc.get('smesherId') or {}).get('id')),
        layer=_number(doc.get('layer')),
        kind=_enum(doc.get('kind'), MALFEASANCE_KIND),
        debug_info=doc.get('debugInfo', ''),
        proof=_b64(doc.get('proof')),
    )


def parse_node_status(doc: dict) -> NodeStatus:
    status = doc.get('status') or {}
    return NodeStatus(
        synced_layer=_number(status.get('syncedLayer')),
        top_layer=_number(status.get('topLayer')),
        verified_layer=_number(status.get('verifiedLayer')),
        connected_peers=decode_uint(status.get('connectedPeers', 0)),
        is_synced=bool(status.get('isSynced', False)),
    )


# ---------------------------------------------------------------------- #
# Client
# ---------------------------------------------------------------------- #
class GatewayClient(NodeClient):
    def __init__(self, api_url: str, request_timeout: float = REQUEST_TIMEOUT,
                 session: Optional[aiohttp.ClientSession] = None):
        self.api_url = api_url.rstrip('/')
        self.request_timeout = request_timeout
        self._session = session

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def _call(self, path: str, body: Optional[dict] = None) -> dict:
        url = self.api_url + path
        timeout = aiohttp.ClientTimeout(total=self.request_timeout)
        try:
            async with self._get_session().post(url, json=body or {}, timeout=timeout) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise NodeError(f"{path}: HTTP {resp.status}: {text[:200]}")
                return await resp.json(content_type=None)
        except aiohttp.ClientError as e:
            raise NodeError(f"{path}: {e}") from e

    async def _stream(self, path: str, body: Optional[dict] = None) -> AsyncIterator[dict]:
        """Opens a server stream and returns an iterator over its results."""
        url = self.api_url + path
        # No read timeout: a stream may legitimately be idle between layers.
        timeout = aiohttp.ClientTimeout(total=None, connect=self.request_timeout)
        try:
            resp = await self._get_session().post(url, json=body or {}, timeout=timeout)
        except aiohttp.ClientError as e:
            raise NodeError(f"{path}: {e}") from e
        if resp.status != 200:
            text = await resp.text()
            resp.release()
            raise NodeError(f"{path}: HTTP {resp.status}: {text[:200]}")
        return self._read_results(path, resp)

    async def _read_results(self, path: str, resp: aiohttp.ClientResponse):
        buffer = b''
        try:
            async for chunk in resp.content.iter_any():
                buffer += chunk
                while b'\n' in buffer:
                    line, buffer = buffer.split(b'\n', 1)
                    if line.strip():
                        yield self._result(path, line)
            if buffer.strip():
                yield self._result(path, buffer)
        except aiohttp.ClientError as e:
            raise NodeError(f"{path}: {e}") from e
        finally:
            resp.release()

    @staticmethod
    def _result(path: str, line: bytes) -> dict:
        try:
            message = json.loads(line)
        except ValueError as e:
            raise NodeError(f"{path}: invalid stream message: {e}") from e
        if 'error' in message:
            error = message['error'] or {}
            raise NodeError(f"{path}: {error.get('message', error)}")
        return message.get('result', message)

    # One-shot calls
    async def genesis_time(self) -> int:
        doc = await self._call('/v1/mesh/genesistime')
        return _number(doc.get('unixtime'), 'value')

    async def genesis_id(self) -> bytes:
        doc = await self._call('/v1/mesh/genesisid')
        return _b64(doc.get('genesisId'))

    async def epoch_num_layers(self) -> int:
        doc = await self._call('/v1/mesh/epochnumlayers')
        return _number(doc.get('numlayers'))

    async def max_transactions_per_second(self) -> int:
        doc = await self._call('/v1/mesh/maxtransactionspersecond')
        return _number(doc.get('maxTxsPerSecond'), 'value')

    async def layer_duration(self) -> int:
        doc = await self._call('/v1/mesh/layerduration')
        return _number(doc.get('duration'), 'value')

    async def accounts(self) -> list:
        doc = await self._call('/v1/debug/accounts')
        return [parse_account(a) for a in doc.get('accountWrapper', [])]

    async def post_config(self) -> PostConfig:
        doc = await self._call('/v1/smesher/postconfig')
        return PostConfig(
            bits_per_label=decode_uint(doc.get('bitsPerLabel', 0), 32),
            labels_per_unit=decode_uint(doc.get('labelsPerUnit', 0)),
        )

    async def node_status(self) -> NodeStatus:
        return parse_node_status(await self._call('/v1/node/status'))

    async def layers_query(self, start_layer: int, end_layer: int) -> list:
        doc = await self._call('/v1/mesh/layersquery', {
            'startLayer': {'number': start_layer},
            'endLayer': {'number': end_layer},
        })
        return [parse_layer(layer) for layer in doc.get('layer', [])]

    # Streams
    async def layer_stream(self):
        results = await self._stream('/v1/mesh/layerstream')
        return (parse_layer(msg.get('layer') or {}) async for msg in results)

    async def malfeasance_stream(self):
        results = await self._stream('/v1/mesh/malfeasancestream')
        return (parse_malfeasance_proof(msg.get('proof') or {}) async for msg in results)

"""
Ingestion core: network info at startup, gap reconciliation, stream pumps.

Collector.run() is the supervisor. It fetches network info once, then loops:
replay the layers the store is missing, start both pumps, and when a pump
stops, cancel the other, wait and start over. The layer pump only starts
after reconciliation has returned. Layers produced between the two show up
as a hole in front of the first live record; the pump queries them before
forwarding it, so the store never skips a layer.
"""
import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Optional

from mesh_collector.listener import Listener
from mesh_collector.mapper import MalformedRecordError
from mesh_collector.utils.encoding import DecodeError, bytes_to_hex
from mesh_collector.wire import NodeClient, NodeError, StreamEndedError

logger = logging.getLogger(__name__)

INFO_TIMEOUT = 5.0  # seconds, for the one-shot startup calls
NOTIFY_QUEUE_SIZE = 16
RECONNECT_DELAY = 5.0


class StartupError(Exception):
    """Network info could not be fetched; ingestion cannot start."""


class ConsistencyError(Exception):
    """The store is ahead of the node it is syncing from."""


# Errors that retrying the same data cannot fix.
FATAL_ERRORS = (ConsistencyError, MalformedRecordError, DecodeError)


class StreamKind(enum.Enum):
    LAYERS = 'layers'
    MALFEASANCE = 'malfeasance'


@dataclass(frozen=True)
class PumpNotice:
    """Published by a pump when it starts (started=True) and when it stops."""
    stream_kind: StreamKind
    started: bool


class Collector:
    def __init__(self, client: NodeClient, listener: Listener,
                 sync_from_layer: int = 0,
                 sync_missing: bool = True,
                 info_timeout: float = INFO_TIMEOUT,
                 notify_queue_size: int = NOTIFY_QUEUE_SIZE,
                 reconnect_delay: float = RECONNECT_DELAY,
                 monitor=None):
        self.client = client
        self.listener = listener
        self.sync_from_layer = sync_from_layer
        self.sync_missing = sync_missing
        self.info_timeout = info_timeout
        self.reconnect_delay = reconnect_delay
        self.monitor = monitor

        self.notify: asyncio.Queue = asyncio.Queue(maxsize=notify_queue_size)
        self.live_pumps: set = set()
        # Highest layer handed to the listener, None until the first one.
        self.last_layer: Optional[int] = None
        self.running = False
        self._run_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------ #
    # Notifications
    # ------------------------------------------------------------------ #
    def _publish(self, notice: PumpNotice):
        """Queues a notice without ever blocking the pump."""
        try:
            self.notify.put_nowait(notice)
        except asyncio.QueueFull:
            dropped = self.notify.get_nowait()
            logger.warning(f"Notification queue full, dropped {dropped}")
            self.notify.put_nowait(notice)

    async def watch(self):
        """Consumes pump notices and tracks which pumps are live."""
        while True:
            notice = await self.notify.get()
            if notice.started:
                self.live_pumps.add(notice.stream_kind)
            else:
                self.live_pumps.discard(notice.stream_kind)
            logger.debug(f"Pump {notice.stream_kind.value} "
                         f"{'started' if notice.started else 'stopped'}, "
                         f"{len(self.live_pumps)} live")
            if self.monitor:
                self.monitor.set_pump_state(notice.stream_kind.value, notice.started)

    # ------------------------------------------------------------------ #
    # Startup
    # ------------------------------------------------------------------ #
    async def _fetch_network_info(self):
        c = self.client
        return (
            await c.genesis_time(),
            await c.genesis_id(),
            await c.epoch_num_layers(),
            await c.max_transactions_per_second(),
            await c.layer_duration(),
            await c.accounts(),
            await c.post_config(),
        )

    async def get_network_info(self):
        """
        Fetches network parameters and the account snapshot, and hands them
        to the listener. All calls share one deadline.

        Raises:
            StartupError: if any call fails or the deadline passes.
        """
        try:
            (genesis_time, genesis_id, epoch_num_layers, max_tps,
             layer_duration, accounts, post_config) = await asyncio.wait_for(
                self._fetch_network_info(), timeout=self.info_timeout)
        except asyncio.TimeoutError:
            logger.error(f"cannot get network info: timed out after {self.info_timeout}s")
            raise StartupError(f"network info timed out after {self.info_timeout}s")
        except NodeError as e:
            logger.error(f"cannot get network info: {e}")
            raise StartupError(f"cannot get network info: {e}") from e

        post_unit_size = post_config.bits_per_label * post_config.labels_per_unit // 8

        await self.listener.on_network_info(
            bytes_to_hex(genesis_id),
            genesis_time,
            epoch_num_layers,
            max_tps,
            layer_duration,
            post_unit_size,
        )
        for account in accounts:
            await self.listener.on_account(account)

    # ------------------------------------------------------------------ #
    # Gap reconciliation
    # ------------------------------------------------------------------ #
    async def sync_missing_layers(self) -> int:
        """
        Replays the layers between the listener's checkpoint and the node's
        synced layer, one layer at a time, in ascending order.

        A failure aborts the call. Since the checkpoint only moves when a
        layer is fully applied, calling again resumes at the failed layer.

        Returns:
            Number of layers queried.

        Raises:
            ConsistencyError: if the checkpoint is ahead of the node.
        """
        try:
            status = await self.client.node_status()
        except NodeError as e:
            logger.error(f"cannot receive node status: {e}")
            raise
        head = status.synced_layer
        checkpoint = await self.listener.get_last_layer()

        if head < checkpoint:
            raise ConsistencyError(
                f"store is at layer {checkpoint} but node is synced to {head}"
            )
        self.last_layer = checkpoint
        if head == checkpoint:
            return 0

        start = max(checkpoint + 1, self.sync_from_layer)
        await self._replay_layers(start, head)
        return max(0, head + 1 - start)

    async def _replay_layers(self, start: int, end: int):
        """Queries start..end one layer at a time and forwards them in order."""
        for i in range(start, end + 1):
            try:
                layers = await self.client.layers_query(i, i)
            except NodeError as e:
                logger.error(f"cannot query layer {i}: {e}")
                raise
            for layer in layers:
                logger.info(f"Syncing missing layer {layer.number}")
                await self._forward_layer(layer)
                if self.monitor:
                    self.monitor.record_layer(layer.number, reconciled=True)

    async def _forward_layer(self, layer):
        await self.listener.on_layer(layer)
        if self.last_layer is None or layer.number > self.last_layer:
            self.last_layer = layer.number

    # ------------------------------------------------------------------ #
    # Pumps
    # ------------------------------------------------------------------ #
    async def _pump(self, kind: StreamKind, open_stream, handle):
        logger.info(f"Start {kind.value} pump")
        self._publish(PumpNotice(kind, True))
        try:
            try:
                stream = await open_stream()
            except NodeError as e:
                logger.error(f"cannot get {kind.value} stream: {e}")
                raise

            records = stream.__aiter__()
            while True:
                try:
                    record = await records.__anext__()
                except StopAsyncIteration:
                    raise StreamEndedError(f"{kind.value} stream ended")
                except NodeError as e:
                    logger.error(f"cannot receive from {kind.value} stream: {e}")
                    raise
                await handle(record)
        finally:
            self._publish(PumpNotice(kind, False))
            logger.info(f"Stop {kind.value} pump")

    async def _handle_layer(self, layer):
        if layer.number < self.sync_from_layer:
            return
        if self.last_layer is not None and layer.number > self.last_layer + 1:
            start = max(self.last_layer + 1, self.sync_from_layer)
            logger.warning(f"Layer stream skipped to {layer.number}, "
                           f"querying layers {start}..{layer.number - 1}")
            await self._replay_layers(start, layer.number - 1)
        await self._forward_layer(layer)
        if self.monitor:
            self.monitor.record_layer(layer.number)

    async def _handle_proof(self, proof):
        await self.listener.on_malfeasance_proof(proof)
        if self.monitor:
            self.monitor.record_proof()

    async def layers_pump(self):
        """Forwards live layers to the listener until the stream fails or ends."""
        await self._pump(StreamKind.LAYERS, self.client.layer_stream, self._handle_layer)

    async def malfeasance_pump(self):
        await self._pump(StreamKind.MALFEASANCE, self.client.malfeasance_stream,
                         self._handle_proof)

    async def run_pump(self, kind: StreamKind):
        if kind is StreamKind.LAYERS:
            await self.layers_pump()
        elif kind is StreamKind.MALFEASANCE:
            await self.malfeasance_pump()
        else:
            raise ValueError(f"Unknown stream kind {kind}")

    # ------------------------------------------------------------------ #
    # Supervisor
    # ------------------------------------------------------------------ #
    async def _cycle(self):
        if self.sync_missing:
            synced = await self.sync_missing_layers()
            if synced:
                logger.info(f"Synced {synced} missing layers")

        tasks = [asyncio.create_task(self.run_pump(kind)) for kind in StreamKind]
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        for task in done:
            task.result()

    async def run(self):
        """
        Runs the collector until stop() is called or a fatal error occurs.

        Raises:
            StartupError: network info could not be fetched.
            ConsistencyError: the store is ahead of the node.
        """
        self._run_task = asyncio.current_task()
        await self.get_network_info()

        self.running = True
        watcher = asyncio.create_task(self.watch())
        try:
            while self.running:
                try:
                    await self._cycle()
                except FATAL_ERRORS:
                    raise
                except Exception as e:
                    logger.error(f"Collector interrupted: {e}")
                if self.running:
                    logger.info(f"Reconnecting in {self.reconnect_delay}s")
                    await asyncio.sleep(self.reconnect_delay)
        except asyncio.CancelledError:
            logger.info("Collector cancelled")
        finally:
            self.running = False
            watcher.cancel()
            await asyncio.gather(watcher, return_exceptions=True)

    def stop(self):
        self.running = False
        if self._run_task and not self._run_task.done():
            self._run_task.cancel()

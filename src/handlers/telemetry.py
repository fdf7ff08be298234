"""心拍テレメトリ送信ハンドラ

センサーフィードを購読し、届いたサンプルをテレメトリフレームにして
セッションの接続へ書き込む。センサーのコールバックは別スレッドから
呼ばれるので、サンプルはイベントループ上のキューに移してから送る。
"""

import asyncio
import logging
from typing import Awaitable, Callable

from identity import DeviceIdentity
from protocol import format_telemetry

logger = logging.getLogger(__name__)

Writer = Callable[[bytes], Awaitable[None]]


class WriteFailed(ConnectionError):
    """テレメトリの書き込みに失敗した（このプロデューサのみ停止）。"""


class TelemetryProducer:
    """心拍サンプルを接続へストリーミングする。start/stop は冪等。"""

    def __init__(
        self,
        sensor,
        write: Writer,
        identity: DeviceIdentity,
        spawn: Callable[..., asyncio.Task] = asyncio.ensure_future,
        queue_size: int = 32,
    ):
        """
        Args:
            sensor: HeartRateSensor Protocol 準拠のセンサー
            write: 接続への非同期書き込み（失敗時は OSError / ConnectionError）
            identity: フレームに埋め込む識別子
            spawn: 送信タスクの起動方法（Session の TaskGroup を渡す）
            queue_size: 未送信サンプルの上限（超えたら古いものから捨てる）
        """
        self._sensor = sensor
        self._write = write
        self._identity = identity
        self._spawn = spawn
        self._queue_size = queue_size

        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[float] | None = None
        self._task: asyncio.Task | None = None
        self._subscribed = False
        self.sent_count = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------ #
    # 開始・停止                                                           #
    # ------------------------------------------------------------------ #

    def start(self) -> bool:
        """購読と送信タスクを開始する。実行中なら何もしない。"""
        if self.is_running:
            logger.debug("[Telemetry] Already running")
            return True

        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue(maxsize=self._queue_size)
        if not self._sensor.subscribe(self._on_sample):
            logger.error("[Telemetry] Sensor subscription failed; telemetry disabled for this session")
            return False
        self._subscribed = True

        self._task = self._spawn(self._drain())
        logger.info(
            f"[Telemetry] Streaming heart rate (UserID={self._identity.user_id}, "
            f"SmartWatchID={self._identity.watch_id}, AndroidID={self._identity.android_id})"
        )
        return True

    async def stop(self) -> None:
        """送信タスクを止め、購読を解除する。"""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._release()

    # ------------------------------------------------------------------ #
    # 内部                                                                 #
    # ------------------------------------------------------------------ #

    def _release(self) -> None:
        if self._subscribed:
            self._subscribed = False
            # 自分の購読だけを外す（他セッションの購読はそのまま）
            self._sensor.unsubscribe(self._on_sample)
            logger.info("[Telemetry] Heart rate monitoring stopped")

    def _on_sample(self, value: float) -> None:
        """センサーのコールバック（任意のスレッドから呼ばれる）。"""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._enqueue, value)
        except RuntimeError:
            # ループ停止と競合した
            logger.debug("[Telemetry] Sample dropped: event loop closed")

    def _enqueue(self, value: float) -> None:
        if self._queue is None:
            return
        if self._queue.full():
            self._queue.get_nowait()
            logger.warning("[Telemetry] Send queue full, dropping oldest sample")
        self._queue.put_nowait(value)

    async def _drain(self) -> None:
        try:
            while True:
                value = await self._queue.get()
                try:
                    await self._send(value)
                except WriteFailed as e:
                    logger.error(f"[Telemetry] Failed to send heart rate: {e}")
                    break
                except (ValueError, OverflowError) as e:
                    logger.warning(f"[Telemetry] Dropped invalid heart rate sample {value!r}: {e}")
        finally:
            self._release()

    async def _send(self, value: float) -> None:
        # NaN / inf は ValueError / OverflowError（そのサンプルだけ捨てる）
        frame = format_telemetry(
            round(value),
            self._identity.user_id,
            self._identity.watch_id,
            self._identity.android_id,
        )
        try:
            await self._write(frame)
        except (ConnectionError, OSError) as e:
            raise WriteFailed(str(e) or type(e).__name__) from e
        self.sent_count += 1
        logger.debug(f"[Telemetry] Sent heart rate: {frame.decode().strip()}")

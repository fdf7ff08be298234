"""BLE アクチュエータ実装（振動モーター・キャラクタリスティック直接制御）

モーター側は 1 バイトの振幅（0 = 停止）を受け付ける。波形の各セグメントごとに
振幅を書き込み、セグメント長だけ待つことでパルス列を再生する。
"""

import asyncio
import logging
import threading
from bleak import BleakClient, BleakError, BleakScanner

from waveform import OFF, Waveform

logger = logging.getLogger(__name__)

# 接続直後のデバイス側準備待ち（秒）
_CONNECT_SETTLE_DELAY = 0.5
_STOP_CMD = bytes([OFF])


class _MotorBLE:
    """BLE 振動モーターの非同期制御クラス。

    - 接続はスキャンで発見してから行う（アドレス直指定は失敗しやすいため）
    - write 失敗時は 1 度だけ再接続してやり直す
    """

    def __init__(self, address: str, motor_uuid: str, connect_timeout: float, write_retries: int):
        self._address = address
        self._motor_uuid = motor_uuid
        self._connect_timeout = connect_timeout
        self._write_retries = max(1, write_retries)
        self._client: BleakClient | None = None
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.is_connected

    async def connect(self) -> bool:
        if self._client is not None:
            try:
                await self._client.disconnect()
            except BleakError as e:
                logger.debug(f"BLE stale client disconnect failed: {e}")
            self._client = None

        try:
            logger.info(f"BLE scanning for {self._address} (timeout={self._connect_timeout:.0f}s)...")
            device = await BleakScanner.find_device_by_address(self._address, timeout=self._connect_timeout)
            if device is None:
                logger.error(f"BLE scan: device not found: {self._address}")
                return False

            self._client = BleakClient(device, timeout=self._connect_timeout)
            await self._client.connect()
            await asyncio.sleep(_CONNECT_SETTLE_DELAY)
            if not self._client.is_connected:
                logger.error("BLE connect: client reported disconnected after settle")
                self._client = None
                return False

            logger.info(f"BLE connected: {self._address}")
            return True

        except (BleakError, asyncio.TimeoutError, OSError) as e:
            logger.error(f"BLE connect failed: [{type(e).__name__}] {e!r}")
            self._client = None
            return False

    async def disconnect(self) -> None:
        if self._client is not None:
            try:
                await self._client.disconnect()
            except BleakError as e:
                logger.debug(f"BLE disconnect error (ignored): {e}")
            self._client = None
        logger.info("BLE disconnected")

    async def play(self, waveform: Waveform) -> None:
        """セグメントを順に書き込む。キャンセルされたらモーターを止める。"""
        async with self._lock:
            try:
                for segment in waveform.segments:
                    if segment.duration_ms == 0:
                        continue
                    if not await self._write(bytes([segment.amplitude])):
                        return
                    await asyncio.sleep(segment.duration_ms / 1000.0)
            finally:
                await self._write(_STOP_CMD)

    async def _write(self, cmd: bytes) -> bool:
        for attempt in range(1, self._write_retries + 1):
            if not self.is_connected and not await self.connect():
                continue
            try:
                await self._client.write_gatt_char(self._motor_uuid, cmd, response=False)
                return True
            except (BleakError, OSError) as e:
                logger.warning(f"BLE motor write failed (attempt {attempt}/{self._write_retries}): {e}")
                self._client = None
        logger.error(f"BLE motor write failed after {self._write_retries} attempts")
        return False


# ================================================================== #
# BLEActuator: Actuator Protocol に準拠した同期ラッパー               #
# ================================================================== #

class BLEActuator:
    """BLE 経由の振動アクチュエータ。Actuator Protocol に準拠。"""

    def __init__(self, address: str, motor_uuid: str, connect_timeout: float = 20.0, write_retries: int = 2):
        self._address = address
        self._motor = _MotorBLE(address, motor_uuid, connect_timeout, write_retries)
        self._connect_timeout = connect_timeout
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._playing = None  # concurrent.futures.Future

    def _start_loop(self) -> None:
        """イベントループを起動する。既に動作中なら何もしない（冪等）。"""
        if self._loop is not None and not self._loop.is_closed():
            return
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_loop, args=(self._loop,), daemon=True)
        self._thread.start()

    @staticmethod
    def _run_loop(loop: asyncio.AbstractEventLoop) -> None:
        asyncio.set_event_loop(loop)
        loop.run_forever()

    def _run_coro(self, coro, timeout: float):
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return future.result(timeout=timeout)

    # ------------------------------------------------------------------ #
    # Actuator インターフェース                                            #
    # ------------------------------------------------------------------ #

    def connect(self) -> bool:
        if not self._address:
            logger.error("BLE_DEVICE_ADDRESS が設定されていません（.env を確認してください）")
            return False
        self._start_loop()
        try:
            return self._run_coro(self._motor.connect(), timeout=self._connect_timeout * 2 + 3)
        except Exception as e:
            logger.error(f"BLEActuator.connect error: {e}")
            return False

    def disconnect(self) -> None:
        if self._loop is None:
            return
        if self._playing is not None:
            self._playing.cancel()
        try:
            self._run_coro(self._motor.disconnect(), timeout=5)
        except Exception as e:
            logger.debug(f"BLEActuator.disconnect error (ignored): {e}")
        self._loop.call_soon_threadsafe(self._loop.stop)

    def play(self, waveform: Waveform) -> bool:
        if self._loop is None or not self._motor.is_connected:
            logger.error("Device does not support vibration (BLE 未接続です)")
            return False
        # 再生中の波形は置き換える
        if self._playing is not None and not self._playing.done():
            self._playing.cancel()
        self._playing = asyncio.run_coroutine_threadsafe(self._motor.play(waveform), self._loop)
        logger.info(f"BLE waveform scheduled: pulses={waveform.pulse_count}, total={waveform.total_ms}ms")
        return True

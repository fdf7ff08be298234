"""OSC 心拍センサー

心拍ブリッジ（ウェアラブル連携アプリなど）が UDP で送る OSC メッセージを受信し、
購読中のコールバックに BPM を渡す。
"""

import math
import threading
import logging

from pythonosc import osc_server, dispatcher

from .base import SampleCallback

logger = logging.getLogger(__name__)


class OSCHeartRateSensor:
    """OSC 経由の心拍フィード。HeartRateSensor Protocol に準拠。

    サーバーは最初の subscribe() で起動し、unsubscribe() 後も待ち受けを続ける
    （コールバックだけ外す）。close() でサーバーを停止する。

    購読者はスタックで持ち、サンプルは最後に購読したものにだけ渡す。
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 9001, address: str = "/sensor/heart_rate"):
        self._host = host
        self._port = port
        self._address = address
        self._subscribers: list[SampleCallback] = []
        self._lock = threading.Lock()

        self._server = None
        self._server_thread: threading.Thread | None = None

    @property
    def is_subscribed(self) -> bool:
        with self._lock:
            return bool(self._subscribers)

    @property
    def bound_port(self) -> int | None:
        if self._server is None:
            return None
        return self._server.server_address[1]

    # ------------------------------------------------------------------ #
    # 購読                                                                 #
    # ------------------------------------------------------------------ #

    def subscribe(self, callback: SampleCallback) -> bool:
        with self._lock:
            if callback in self._subscribers:
                logger.info("[Sensor] Heart-rate monitoring already active")
                return True

        if self._server is None and not self._start_server():
            logger.error("[Sensor] Heart-rate sensor not available!")
            return False

        with self._lock:
            handed_over = bool(self._subscribers)
            self._subscribers.append(callback)
        if handed_over:
            logger.info("[Sensor] Heart-rate feed handed over to the newest subscriber")
        else:
            logger.info(f"[Sensor] Heart-rate monitoring started ({self._address})")
        return True

    def unsubscribe(self, callback: SampleCallback | None = None) -> None:
        with self._lock:
            if callback is None:
                removed = bool(self._subscribers)
                self._subscribers.clear()
            elif callback in self._subscribers:
                self._subscribers.remove(callback)
                removed = True
            else:
                removed = False
            remaining = len(self._subscribers)

        if not removed:
            logger.debug("[Sensor] Heart-rate monitoring is not active for this subscriber")
        elif remaining:
            logger.info("[Sensor] Heart-rate feed returned to the previous subscriber")
        else:
            logger.info("[Sensor] Heart-rate monitoring stopped")

    def close(self) -> None:
        """OSC サーバーを停止する。"""
        self.unsubscribe()
        if self._server is None:
            return
        try:
            self._server.shutdown()
            self._server.server_close()
            logger.info("[Sensor] OSC server stopped")
        except OSError as e:
            logger.error(f"[Sensor] OSC server stop error: {e}")
        self._server = None

    # ------------------------------------------------------------------ #
    # サーバー                                                             #
    # ------------------------------------------------------------------ #

    def _start_server(self) -> bool:
        try:
            disp = dispatcher.Dispatcher()
            disp.map(self._address, self._handle_heart_rate)
            self._server = osc_server.ThreadingOSCUDPServer((self._host, self._port), disp)
            self._server_thread = threading.Thread(target=self._server.serve_forever, daemon=True)
            self._server_thread.start()
            logger.info(f"[Sensor] OSC server started on {self._host}:{self._port}")
            return True
        except OSError as e:
            logger.error(f"[Sensor] OSC server failed to start: {e}")
            self._server = None
            return False

    def _handle_heart_rate(self, addr: str, *args) -> None:
        if not args:
            return
        try:
            value = float(args[0])
        except (TypeError, ValueError):
            logger.warning(f"[Sensor] Non-numeric heart rate on {addr}: {args!r}")
            return
        if not math.isfinite(value):
            logger.warning(f"[Sensor] Non-finite heart rate on {addr}: {value}")
            return
        logger.debug(f"[Sensor] Heart rate detected: {value}")
        with self._lock:
            callback = self._subscribers[-1] if self._subscribers else None
        if callback:
            callback(value)

"""
セッション（受け付けた 1 接続の寿命）

Accepted → Reading → Closing → Closed

1 セッション = 1 つの TaskGroup。読み込みループ・テレメトリ送信・ハートビートを
まとめて持ち、接続が閉じたら全部止めてから接続を 1 回だけ閉じる。

1 フレームの不正ではセッションを終わらせない。読み込みエラー / EOF でのみ終了する。
"""

import asyncio
import logging
import socket
from dataclasses import dataclass, field

from handlers.telemetry import TelemetryProducer
from handlers.trigger import TriggerHandler
from identity import parse_identity
from protocol import (
    FrameDecoder, FrameInvalidPayload, FrameMalformed,
    MonitoringCommand, VibrateCommand, decode_command, parse_frame,
)
from state_machine import Mode, ModeStateMachine
from .transport import Connection, ConnectionLost

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionConfig:
    """セッションに必要な設定値セット。"""
    read_size: int = 1024
    max_frame_length: int = 1024
    frame_flush_delay: float = 0.05
    heartbeat_interval: float = 3.0
    log_frames: bool = True
    local_name: str = ""
    aliases: dict[str, str] = field(default_factory=dict)

    @staticmethod
    def from_settings() -> "SessionConfig":
        """現在の settings から SessionConfig を生成する。"""
        import settings as s_mod
        s = s_mod.settings
        return SessionConfig(
            read_size=s.link.read_size,
            max_frame_length=s.link.max_frame_length,
            frame_flush_delay=s.link.frame_flush_delay,
            heartbeat_interval=s.link.heartbeat_interval,
            log_frames=s.debug.log_frames,
            local_name=s.identity.local_name or socket.gethostname(),
            aliases=dict(s.identity.aliases),
        )


class Session:
    """1 接続分のコマンド受信・ディスパッチ・テレメトリ送信を担う。"""

    def __init__(
        self,
        connection: Connection,
        machine: ModeStateMachine,
        trigger: TriggerHandler,
        sensor,
        cfg: SessionConfig | None = None,
    ):
        self._conn = connection
        self._machine = machine
        self._trigger = trigger
        self._sensor = sensor
        self._cfg = cfg if cfg is not None else SessionConfig.from_settings()

        self._decoder = FrameDecoder(self._cfg.max_frame_length)
        self._tg: asyncio.TaskGroup | None = None
        self.telemetry: TelemetryProducer | None = None
        self.state = "accepted"

    @property
    def peer_name(self) -> str:
        """ピアの表示名（aliases にあればそちら、なければアドレス）。

        aliases はアドレス全体、次にポートを除いたホストで引く
        （TCP のポートは接続ごとに変わるため）。
        """
        addr = self._conn.peer_address
        aliases = self._cfg.aliases
        if addr in aliases:
            return aliases[addr]
        return aliases.get(self._conn.peer_host, addr)

    # ------------------------------------------------------------------ #
    # 実行                                                                 #
    # ------------------------------------------------------------------ #

    async def run(self) -> None:
        logger.info(f"[Session] Device connected: {self.peer_name}")
        try:
            async with asyncio.TaskGroup() as tg:
                self._tg = tg
                heartbeat = tg.create_task(self._heartbeat())
                self.state = "reading"
                try:
                    await self._read_loop()
                finally:
                    self.state = "closing"
                    heartbeat.cancel()
                    if self.telemetry is not None:
                        await self.telemetry.stop()
        finally:
            self._tg = None
            if await self._conn.close():
                logger.info(f"[Session] Socket closed: {self.peer_name}")
            self.state = "closed"

    async def _read_loop(self) -> None:
        cfg = self._cfg
        while True:
            try:
                if self._decoder.has_pending:
                    try:
                        data = await asyncio.wait_for(self._conn.read(cfg.read_size), cfg.frame_flush_delay)
                    except TimeoutError:
                        # 改行なしで送ってくる相手: 無通信になった時点で 1 フレームとして確定する
                        await self._dispatch(self._decoder.flush())
                        continue
                else:
                    data = await self._conn.read(cfg.read_size)
            except ConnectionLost as e:
                logger.error(f"[Session] Error while reading from socket: {e}")
                return

            if not data:
                tail = self._decoder.flush()
                if tail is not None:
                    await self._dispatch(tail)
                logger.info(f"[Session] Peer disconnected: {self.peer_name}")
                return

            for raw in self._decoder.feed(data):
                await self._dispatch(raw)

    async def _heartbeat(self) -> None:
        interval = self._cfg.heartbeat_interval
        if interval <= 0:
            return
        while True:
            await asyncio.sleep(interval)
            logger.debug(f"[Session] Heartbeat: session with {self.peer_name} is still alive")

    # ------------------------------------------------------------------ #
    # ディスパッチ                                                         #
    # ------------------------------------------------------------------ #

    async def _dispatch(self, raw: bytes | None) -> None:
        if raw is None:
            return
        if self._cfg.log_frames:
            logger.info(f"[Session] Received: {raw!r}")

        try:
            command = decode_command(parse_frame(raw))
        except FrameMalformed as e:
            logger.error(f"[Session] Dropped malformed frame: {e}")
            return
        except FrameInvalidPayload as e:
            logger.error(f"[Session] Dropped frame with invalid payload: {e}")
            return

        if isinstance(command, MonitoringCommand):
            if self._machine.select(command.mode_name) is Mode.HEART_RATE:
                self._start_telemetry()
        elif isinstance(command, VibrateCommand):
            # アクチュエータは同期 API（HTTP / BLE 待ち）なのでスレッドに逃がす
            await asyncio.to_thread(self._trigger.handle, command.params)
        else:
            logger.warning(f"[Session] Unknown command: {command.name!r}")

    def _start_telemetry(self) -> None:
        """この接続で初めて HeartRate に入ったときだけテレメトリを開始する。"""
        if self.telemetry is not None:
            logger.debug("[Session] Heart rate telemetry already started for this connection")
            return
        identity = parse_identity(self._cfg.local_name, self.peer_name)
        self.telemetry = TelemetryProducer(
            self._sensor,
            self._conn.write,
            identity,
            spawn=self._tg.create_task,
        )
        self.telemetry.start()

"""
link/session.py の単体テスト

FakeConnection にチャンクを積み、EOF / 読み込みエラーでセッションを終わらせて
ディスパッチ結果とクローズ回数を確認する。
"""

import asyncio
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from fakes import FakeConnection, FakeSensor, RecordingActuator, wait_until
from handlers.trigger import TriggerHandler
from link.session import Session, SessionConfig
from state_machine import Mode, ModeStateMachine
from waveform import OFF, WaveformConfig, WaveformPolicy

TEST_CFG = SessionConfig(
    frame_flush_delay=0.02,
    heartbeat_interval=0,
    log_frames=False,
    local_name="UserID-7-SmartWatchID-42",
)


class Rig:
    """1 セッション分の部品一式。"""

    def __init__(
        self,
        cfg: SessionConfig = TEST_CFG,
        peer: str = "Android-9",
        sensor: FakeSensor | None = None,
        peer_host: str | None = None,
    ):
        self.conn = FakeConnection(peer, peer_host)
        self.machine = ModeStateMachine()
        self.actuator = RecordingActuator()
        self.sensor = sensor or FakeSensor()
        self.trigger = TriggerHandler(self.machine, self.actuator, WaveformConfig(policy=WaveformPolicy.AMPLITUDE))
        self.session = Session(self.conn, self.machine, self.trigger, self.sensor, cfg)
        self.task: asyncio.Task | None = None

    def start(self) -> None:
        self.task = asyncio.create_task(self.session.run())

    async def finish(self) -> None:
        self.conn.feed_eof()
        await asyncio.wait_for(self.task, 2.0)


def run_frames(*chunks: bytes) -> Rig:
    """チャンクをすべて積んでから EOF まで処理する。"""
    async def scenario():
        rig = Rig()
        rig.conn.feed(*chunks)
        rig.start()
        await rig.finish()
        return rig

    return asyncio.run(scenario())


# =========================================================
# ディスパッチ
# =========================================================

class TestDispatch:

    def test_heart_rate_vibration(self):
        rig = run_frames(b"Monitoring:HeartRate\n", b"Vibrate:100,3,200,50\n")
        assert rig.machine.mode is Mode.HEART_RATE
        assert len(rig.actuator.played) == 1
        assert rig.actuator.played[0].as_pairs() == [
            (0, OFF), (200, 100), (50, OFF), (200, 100), (50, OFF), (200, 100), (50, OFF),
        ]

    def test_malformed_frames_do_not_end_session(self):
        """不正フレームは捨てて読み続ける"""
        rig = run_frames(b"garbage\nVibrate:1,2\nMonitoring:SunAzimuth\nVibrate:10,1,100,0\n")
        assert rig.machine.mode is Mode.SUN_AZIMUTH
        assert len(rig.actuator.played) == 1

    def test_unknown_command_is_skipped(self):
        rig = run_frames(b"Ping:1\nMonitoring:MoonAzimuth\nVibrate:10,1,100,0\n")
        assert len(rig.actuator.played) == 1

    def test_vibrate_while_unset(self):
        """モード未設定の Vibrate は波形を作らない"""
        rig = run_frames(b"Vibrate:100,3,200,50\n")
        assert rig.actuator.played == []
        assert rig.machine.mode is Mode.UNSET

    def test_unknown_mode_keeps_previous(self):
        rig = run_frames(b"Monitoring:SunAzimuth\nMonitoring:Steps\nVibrate:10,1,100,0\n")
        assert rig.machine.mode is Mode.SUN_AZIMUTH
        assert len(rig.actuator.played) == 1

    def test_fragmented_frame_is_reassembled(self):
        rig = run_frames(b"Monitoring:Sun", b"Azimuth\nVibr", b"ate:100,3,", b"200,50\n")
        assert rig.machine.mode is Mode.SUN_AZIMUTH
        assert rig.actuator.played[0].pulse_count == 3

    def test_tail_without_delimiter_is_flushed_on_eof(self):
        rig = run_frames(b"Monitoring:MoonAzimuth")
        assert rig.machine.mode is Mode.MOON_AZIMUTH

    def test_frame_without_delimiter_is_flushed_when_idle(self):
        """改行なしで送る相手でも、無通信になればフレームとして処理する"""
        async def scenario():
            rig = Rig()
            rig.start()
            rig.conn.feed(b"Monitoring:SunAzimuth")
            await wait_until(lambda: rig.machine.mode is Mode.SUN_AZIMUTH)
            rig.conn.feed(b"Vibrate:10,1,100,0")
            await wait_until(lambda: rig.actuator.played)
            await rig.finish()
            return rig

        rig = asyncio.run(scenario())
        assert len(rig.actuator.played) == 1


# =========================================================
# テレメトリ
# =========================================================

class TestTelemetry:

    def test_heart_rate_twice_subscribes_once(self):
        async def scenario():
            rig = Rig()
            rig.conn.feed(b"Monitoring:HeartRate\n", b"Monitoring:HeartRate\n")
            rig.start()
            await wait_until(lambda: rig.sensor.is_subscribed)
            rig.sensor.emit(70.2)
            await wait_until(lambda: rig.conn.written)
            await rig.finish()
            return rig

        rig = asyncio.run(scenario())
        assert rig.sensor.subscribe_calls == 1
        assert rig.conn.written == [
            b"MonitoringType:HeartRate,Value:70,UserID:7,SmartWatchID:42,AndroidID:9\n"
        ]
        # 終了時に購読解除
        assert not rig.sensor.is_subscribed

    def test_azimuth_mode_does_not_start_telemetry(self):
        rig = run_frames(b"Monitoring:SunAzimuth\n")
        assert rig.sensor.subscribe_calls == 0
        assert rig.session.telemetry is None

    def test_peer_alias_is_used_for_identity(self):
        """aliases でピアアドレスを端末名に読み替える"""
        cfg = SessionConfig(
            frame_flush_delay=0.02,
            heartbeat_interval=0,
            log_frames=False,
            local_name="UserID-1-SmartWatchID-2",
            aliases={"AA:BB:CC:DD:EE:FF": "Android-5"},
        )

        async def scenario():
            rig = Rig(cfg, peer="AA:BB:CC:DD:EE:FF")
            rig.conn.feed(b"Monitoring:HeartRate\n")
            rig.start()
            await wait_until(lambda: rig.sensor.is_subscribed)
            rig.sensor.emit(88)
            await wait_until(lambda: rig.conn.written)
            await rig.finish()
            return rig

        rig = asyncio.run(scenario())
        assert rig.session.peer_name == "Android-5"
        assert rig.conn.written[0].endswith(b"UserID:1,SmartWatchID:2,AndroidID:5\n")

    def test_unknown_names_use_sentinels(self):
        cfg = SessionConfig(frame_flush_delay=0.02, heartbeat_interval=0, log_frames=False, local_name="laptop")

        async def scenario():
            rig = Rig(cfg, peer="127.0.0.1:40000")
            rig.conn.feed(b"Monitoring:HeartRate\n")
            rig.start()
            await wait_until(lambda: rig.sensor.is_subscribed)
            rig.sensor.emit(60)
            await wait_until(lambda: rig.conn.written)
            await rig.finish()
            return rig

        rig = asyncio.run(scenario())
        assert rig.conn.written[0].endswith(b"UserID:UnknownUser,SmartWatchID:UnknownWatch,AndroidID:UnknownAndroid\n")

    def test_close_mid_telemetry(self):
        """送信中に切断されても close は 1 回、以降のサンプルは書かない"""
        async def scenario():
            rig = Rig()
            rig.conn.feed(b"Monitoring:HeartRate\n")
            rig.start()
            await wait_until(lambda: rig.sensor.is_subscribed)
            rig.sensor.emit(70)
            await wait_until(lambda: rig.conn.written)
            await rig.finish()
            rig.sensor.emit(71)
            await asyncio.sleep(0.02)
            return rig

        rig = asyncio.run(scenario())
        assert rig.conn.close_count == 1
        assert len(rig.conn.written) == 1
        assert not rig.session.telemetry.is_running
        assert rig.session.state == "closed"

    def test_write_failure_keeps_session_reading(self):
        """テレメトリの書き込み失敗ではセッションを終わらせない"""
        async def scenario():
            rig = Rig()
            rig.conn.feed(b"Monitoring:HeartRate\n")
            rig.start()
            await wait_until(lambda: rig.sensor.is_subscribed)
            rig.conn.fail_writes = True
            rig.sensor.emit(70)
            await wait_until(lambda: not rig.session.telemetry.is_running)
            rig.conn.feed(b"Vibrate:10,1,100,0\n")
            await wait_until(lambda: rig.actuator.played)
            assert not rig.task.done()
            await rig.finish()
            return rig

        rig = asyncio.run(scenario())
        assert rig.sensor.unsubscribe_calls == 1
        assert rig.conn.close_count == 1

    def test_tcp_peer_alias_ignores_port(self):
        """TCP はポートが毎回変わるので、ホスト部分で aliases を引く"""
        cfg = SessionConfig(
            frame_flush_delay=0.02,
            heartbeat_interval=0,
            log_frames=False,
            local_name="UserID-1-SmartWatchID-2",
            aliases={"192.168.1.20": "Android-6"},
        )

        async def scenario():
            rig = Rig(cfg, peer="192.168.1.20:51234", peer_host="192.168.1.20")
            rig.conn.feed(b"Monitoring:HeartRate\n")
            rig.start()
            await wait_until(lambda: rig.sensor.is_subscribed)
            rig.sensor.emit(75)
            await wait_until(lambda: rig.conn.written)
            await rig.finish()
            return rig

        rig = asyncio.run(scenario())
        assert rig.session.peer_name == "Android-6"
        assert rig.conn.written[0].endswith(b"AndroidID:6\n")

    def test_non_finite_sample_does_not_end_session(self):
        """NaN / inf のサンプルは捨て、セッションもテレメトリも続ける"""
        async def scenario():
            rig = Rig()
            rig.conn.feed(b"Monitoring:HeartRate\n")
            rig.start()
            await wait_until(lambda: rig.sensor.is_subscribed)
            rig.sensor.emit(float("nan"))
            rig.sensor.emit(float("inf"))
            rig.sensor.emit(70)
            await wait_until(lambda: rig.conn.written)
            rig.conn.feed(b"Vibrate:10,1,100,0\n")
            await wait_until(lambda: rig.actuator.played)
            assert not rig.task.done()
            assert rig.session.telemetry.is_running
            await rig.finish()
            return rig

        rig = asyncio.run(scenario())
        assert len(rig.conn.written) == 1
        assert b"Value:70," in rig.conn.written[0]
        assert len(rig.actuator.played) == 1
        assert rig.conn.close_count == 1

    def test_closing_newer_session_keeps_older_stream(self):
        """後から来たセッションが閉じても、先のセッションのテレメトリは切れない"""
        async def scenario():
            a = Rig()
            a.conn.feed(b"Monitoring:HeartRate\n")
            a.start()
            await wait_until(lambda: len(a.sensor.callbacks) == 1)

            b_conn = FakeConnection()
            b = Session(b_conn, a.machine, a.trigger, a.sensor, TEST_CFG)
            b_conn.feed(b"Monitoring:HeartRate\n")
            b_task = asyncio.create_task(b.run())
            await wait_until(lambda: len(a.sensor.callbacks) == 2)

            # 配信先は新しいセッション
            a.sensor.emit(79)
            await wait_until(lambda: b_conn.written)

            b_conn.feed_eof()
            await asyncio.wait_for(b_task, 2.0)

            # 閉じたら先のセッションに戻る
            a.sensor.emit(80)
            await wait_until(lambda: a.conn.written)
            await a.finish()
            return a, b_conn

        a, b_conn = asyncio.run(scenario())
        assert len(b_conn.written) == 1 and b"Value:79," in b_conn.written[0]
        assert len(a.conn.written) == 1 and b"Value:80," in a.conn.written[0]
        assert not a.sensor.is_subscribed

    def test_sensor_unavailable(self):
        rig_sensor = FakeSensor(available=False)

        async def scenario():
            rig = Rig(sensor=rig_sensor)
            rig.conn.feed(b"Monitoring:HeartRate\n", b"Monitoring:HeartRate\n")
            rig.start()
            await rig.finish()
            return rig

        rig = asyncio.run(scenario())
        # 接続ごとに 1 回だけ試す
        assert rig_sensor.subscribe_calls == 1
        assert rig.conn.written == []


# =========================================================
# ライフサイクル
# =========================================================

class TestLifecycle:

    def test_eof_closes_once(self):
        rig = run_frames(b"Monitoring:SunAzimuth\n")
        assert rig.conn.close_count == 1
        assert rig.session.state == "closed"

    def test_read_error_closes_once(self):
        async def scenario():
            rig = Rig()
            rig.conn.feed(b"Monitoring:SunAzimuth\n")
            rig.conn.feed_error()
            rig.start()
            await asyncio.wait_for(rig.task, 2.0)
            return rig

        rig = asyncio.run(scenario())
        assert rig.conn.close_count == 1
        assert rig.machine.mode is Mode.SUN_AZIMUTH

    def test_cancel_closes_once(self):
        """サーバー停止でキャンセルされても接続は 1 回だけ閉じる"""
        async def scenario():
            rig = Rig()
            rig.conn.feed(b"Monitoring:HeartRate\n")
            rig.start()
            await wait_until(lambda: rig.sensor.is_subscribed)
            rig.task.cancel()
            try:
                await rig.task
            except asyncio.CancelledError:
                pass
            return rig

        rig = asyncio.run(scenario())
        assert rig.conn.close_count == 1
        assert rig.sensor.unsubscribe_calls == 1

    def test_mode_persists_across_sessions(self):
        """モードはプロセス全体で 1 つ。次の接続に引き継がれる"""
        async def scenario():
            first = Rig()
            first.conn.feed(b"Monitoring:MoonAzimuth\n")
            first.start()
            await first.finish()

            second_conn = FakeConnection()
            trigger = TriggerHandler(first.machine, first.actuator, WaveformConfig())
            second = Session(second_conn, first.machine, trigger, first.sensor, TEST_CFG)
            second_conn.feed(b"Vibrate:10,1,100,0\n")
            second_conn.feed_eof()
            await asyncio.wait_for(second.run(), 2.0)
            return first

        first = asyncio.run(scenario())
        assert len(first.actuator.played) == 1

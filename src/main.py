import logging
import signal
from pathlib import Path

import settings as settings_module
from devices.factory import create_actuator
from handlers.trigger import TriggerHandler
from link.server import LinkServer
from link.session import Session, SessionConfig
from link.transport import PermissionDenied, TransportUnavailable, create_listener
from sensors.factory import create_sensor
from state_machine import ModeStateMachine

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
_LOG_DIR = Path(__file__).parent.parent / "logs"

logger = logging.getLogger(__name__)

_server: LinkServer | None = None


def setup_logging() -> None:
    """ログ設定（debug.level / debug.log_to_file に従う）"""
    s = settings_module.settings
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if s.debug.log_to_file:
        _LOG_DIR.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(_LOG_DIR / "link_server.log", encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, s.debug.level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
    )


def build_server(actuator, sensor) -> LinkServer:
    """設定からモード状態機械・トリガー・サーバーを組み立てる。"""
    machine = ModeStateMachine()
    trigger = TriggerHandler(machine, actuator)
    session_cfg = SessionConfig.from_settings()

    def session_factory(connection) -> Session:
        return Session(connection, machine, trigger, sensor, session_cfg)

    return LinkServer(create_listener, session_factory)


def start_server() -> None:
    """リンクサーバーを起動する（stop_server() が呼ばれるまでブロック）。"""
    global _server
    actuator = create_actuator()
    sensor = create_sensor()

    if not actuator.connect():
        logger.error("アクチュエータに接続できません。振動コマンドは無視されます")

    _server = build_server(actuator, sensor)
    try:
        _server.start()
    finally:
        close = getattr(sensor, "close", None)
        if close is not None:
            close()
        else:
            sensor.unsubscribe()
        actuator.disconnect()
        _server = None


def stop_server() -> None:
    """リンクサーバーを停止する（どのスレッドからでも呼べる）。"""
    if _server is not None:
        _server.stop()


def main():
    """メインプログラム"""
    setup_logging()
    logger.info("===== Haptic Link Server Starting =====")

    # Ctrl+C / SIGTERM で受け付けループを止める（ハンドラはメインスレッドで動く）
    def _on_signal(signum, frame):
        logger.info("Shutting down...")
        stop_server()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    try:
        start_server()
    except (TransportUnavailable, PermissionDenied) as e:
        logger.error(f"サーバーを起動できません: {e}")
        return 1
    finally:
        logger.info("===== Haptic Link Server Stopped =====")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

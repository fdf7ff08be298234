"""ログ出力のみのアクチュエータ（ハードウェアなしで動かすとき用）"""

import logging
from collections import deque

from waveform import Waveform

logger = logging.getLogger(__name__)


class LogActuator:
    """波形をログに出し、直近の再生履歴を保持する。Actuator Protocol に準拠。"""

    def __init__(self, history_size: int = 50):
        self.history: deque[Waveform] = deque(maxlen=history_size)
        self._connected = False

    def connect(self) -> bool:
        self._connected = True
        logger.info("ログアクチュエータで起動（振動は実行されません）")
        return True

    def disconnect(self) -> None:
        self._connected = False

    def play(self, waveform: Waveform) -> bool:
        if not self._connected:
            logger.error("Device does not support vibration (actuator not connected)")
            return False
        self.history.append(waveform)
        logger.info(
            f"[Actuator] play: pulses={waveform.pulse_count}, total={waveform.total_ms}ms, "
            f"pattern={waveform.as_pairs()}"
        )
        return True

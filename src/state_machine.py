"""
モード状態機械

コンパニオン端末が Monitoring コマンドで選んだフィードバックモードを保持する。
プロセス全体で 1 つだけ持ち、接続をまたいで引き継がれる（再起動で Unset に戻る）。

前提: 同時に張られるセッションは 1 本だけ。複数セッションで独立したモードを
持たせる場合は、接続ごとの ModeStateMachine とルーティング表が必要になる。

副作用（テレメトリ開始・振動）は持たず、イベントコールバックで通知する。
"""

import logging
import threading
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)

Event = Callable[..., None]


class Mode(str, Enum):
    UNSET = ""
    HEART_RATE = "HeartRate"
    SUN_AZIMUTH = "SunAzimuth"
    MOON_AZIMUTH = "MoonAzimuth"

    @classmethod
    def from_name(cls, name: str) -> "Mode | None":
        """大文字小文字を区別せずにモード名を引く。Unset や未知の名前は None。"""
        key = name.strip().lower()
        for mode in cls:
            if mode is not cls.UNSET and mode.value.lower() == key:
                return mode
        return None


class TriggerProfile(str, Enum):
    """Vibrate コマンドに適用するトリガーの種類。"""
    HEART_RATE = "heart_rate"
    AZIMUTH = "azimuth"


# Sun / Moon は現状同じ扱い（将来分岐できるようモードは分けておく）
_PROFILES = {
    Mode.HEART_RATE: TriggerProfile.HEART_RATE,
    Mode.SUN_AZIMUTH: TriggerProfile.AZIMUTH,
    Mode.MOON_AZIMUTH: TriggerProfile.AZIMUTH,
}


class ModeStateMachine:
    """現在のフィードバックモードを管理する状態機械（スレッドセーフ）。"""

    def __init__(self):
        self._lock = threading.Lock()
        self._mode: Mode = Mode.UNSET
        self._on_mode_change: list[Event] = []  # (old: Mode, new: Mode)

    @property
    def mode(self) -> Mode:
        with self._lock:
            return self._mode

    def subscribe_mode_change(self, cb: Event) -> None:
        self._on_mode_change.append(cb)

    def select(self, name: str) -> Mode | None:
        """
        Monitoring コマンドのモード名で遷移する。

        Returns:
            遷移後のモード。未知の名前なら None（状態は変えない）。
        """
        new = Mode.from_name(name)
        if new is None:
            logger.warning(f"[Mode] Unknown or unsupported monitoring type: {name!r} (keeping {self.mode.value or 'Unset'})")
            return None

        with self._lock:
            old = self._mode
            self._mode = new

        logger.info(f"[Mode] Monitoring type set to: {new.value}")
        if old is not new:
            self._fire(self._on_mode_change, old, new)
        return new

    def trigger_profile(self) -> TriggerProfile | None:
        """現在のモードに対応するトリガープロファイル。Unset なら None。"""
        return _PROFILES.get(self.mode)

    # ------------------------------------------------------------------ #
    # 内部                                                                 #
    # ------------------------------------------------------------------ #

    @staticmethod
    def _fire(callbacks: list[Event], *args) -> None:
        for cb in callbacks:
            try:
                cb(*args)
            except Exception as e:
                logger.error(f"[Mode] Event callback error: {e}", exc_info=True)

"""振動トリガーハンドラ

Vibrate コマンドのパラメータを現在のモードのプロファイルで解釈し、
波形を生成してアクチュエータへ渡す。
"""

import logging

from protocol import TriggerParameters
from state_machine import Mode, ModeStateMachine
from waveform import InvalidParameters, Waveform, WaveformConfig, build_waveform

logger = logging.getLogger(__name__)


class TriggerHandler:
    """Vibrate コマンド → 波形 → アクチュエータ の橋渡しを担う。"""

    def __init__(self, machine: ModeStateMachine, actuator, cfg: WaveformConfig | None = None):
        """
        Args:
            machine: ModeStateMachine（プロファイル判定 + mode_change 購読）
            actuator: Actuator Protocol 準拠のデバイス
            cfg: 波形生成設定（None なら settings から生成）
        """
        self._machine = machine
        self._actuator = actuator
        self._cfg = cfg if cfg is not None else WaveformConfig.from_settings()

        machine.subscribe_mode_change(self._on_mode_change)

    @property
    def config(self) -> WaveformConfig:
        return self._cfg

    # ------------------------------------------------------------------ #
    # コマンド処理                                                         #
    # ------------------------------------------------------------------ #

    def handle(self, params: TriggerParameters) -> Waveform | None:
        """
        Returns:
            再生に渡した波形。モード未設定・パラメータ不正・再生失敗なら None。
        """
        profile = self._machine.trigger_profile()
        if profile is None:
            logger.warning(
                f"[Trigger] Vibration command received, but monitoring type is unknown or unsupported: "
                f"{self._machine.mode.value or 'Unset'}"
            )
            return None

        logger.info(
            f"[Trigger] {profile.value} vibration: intensity={params.intensity}, pulses={params.pulses}, "
            f"duration={params.duration}, interval={params.interval}, policy={self._cfg.policy.value}"
        )
        try:
            waveform = build_waveform(
                params.intensity, params.pulses, params.duration, params.interval, self._cfg
            )
        except InvalidParameters as e:
            logger.error(f"[Trigger] Invalid parameters for {profile.value} vibration: {e}")
            return None

        if not self._actuator.play(waveform):
            logger.error(f"[Trigger] Actuator rejected {profile.value} vibration")
            return None
        logger.info(f"[Trigger] {profile.value} vibration triggered")
        return waveform

    # ------------------------------------------------------------------ #
    # イベントハンドラ                                                     #
    # ------------------------------------------------------------------ #

    def _on_mode_change(self, old: Mode, new: Mode) -> None:
        profile = self._machine.trigger_profile()
        logger.info(
            f"[Trigger] Profile for {new.value}: {profile.value if profile else 'none'} "
            f"(was {old.value or 'Unset'})"
        )

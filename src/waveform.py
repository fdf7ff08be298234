"""
波形生成モジュール

外部状態に依存しない純粋関数のみを提供する。
(intensity, pulses, duration, interval) をアクチュエータ用のパルス列に変換する。
マッピング方式（policy）は WaveformConfig にまとめて渡すので、pytest から任意の値でテスト可能。
"""

from dataclasses import dataclass
from enum import Enum

MIN_AMPLITUDE = 1
MAX_AMPLITUDE = 255
OFF = 0

# アクチュエータが受け付ける 1 セグメントの最大長（ms）
MAX_SEGMENT_MS = 2**31 - 1


class WaveformPolicy(str, Enum):
    """パルス区間への intensity の反映方法。"""
    AMPLITUDE = "amplitude"              # 固定長 + 振幅 = intensity
    SCALED_DURATION = "scaled_duration"  # 長さ = duration × intensity、振幅は最大


class InvalidParameters(ValueError):
    """トリガーパラメータが波形の前提条件を満たさない。"""


@dataclass(frozen=True)
class Segment:
    duration_ms: int
    amplitude: int  # OFF(0) は休止

    @property
    def is_pulse(self) -> bool:
        return self.amplitude != OFF


@dataclass(frozen=True)
class Waveform:
    """先頭の 0ms 休止から始まり、パルス / 休止が交互に並ぶセグメント列。"""
    segments: tuple[Segment, ...]

    @property
    def timings(self) -> list[int]:
        return [s.duration_ms for s in self.segments]

    @property
    def amplitudes(self) -> list[int]:
        return [s.amplitude for s in self.segments]

    @property
    def total_ms(self) -> int:
        return sum(self.timings)

    @property
    def pulse_count(self) -> int:
        return sum(1 for s in self.segments if s.is_pulse)

    def as_pairs(self) -> list[tuple[int, int]]:
        return [(s.duration_ms, s.amplitude) for s in self.segments]


@dataclass(frozen=True)
class WaveformConfig:
    """波形生成に必要な設定値セット。"""
    policy: WaveformPolicy = WaveformPolicy.AMPLITUDE
    max_amplitude: int = MAX_AMPLITUDE

    @staticmethod
    def from_settings() -> "WaveformConfig":
        """現在の settings から WaveformConfig を生成する。"""
        import settings as s_mod
        s = s_mod.settings
        return WaveformConfig(
            policy=parse_policy(s.waveform.policy),
            max_amplitude=s.waveform.max_amplitude,
        )


def parse_policy(name: str) -> WaveformPolicy:
    try:
        return WaveformPolicy(name.strip().lower())
    except ValueError:
        valid = ", ".join(p.value for p in WaveformPolicy)
        raise ValueError(f"不明な waveform policy: {name!r}（{valid} のいずれかを設定してください）") from None


def clamp_amplitude(intensity: int, max_amplitude: int = MAX_AMPLITUDE) -> int:
    """intensity をアクチュエータの振幅範囲（1〜max_amplitude）に収める。"""
    return max(MIN_AMPLITUDE, min(max_amplitude, intensity))


def build_waveform(
    intensity: int,
    pulses: int,
    duration: int,
    interval: int,
    cfg: WaveformConfig = WaveformConfig(),
) -> Waveform:
    """
    トリガーパラメータをパルス列に変換する。

    出力（pulses = n）：
      [0]            → (0, OFF)          即時開始
      奇数インデックス → パルス
      偶数インデックス → interval ms の休止
    セグメント数は常に 2n + 1（奇数）。末尾は interval ms の休止で、
    連続トリガー時もパルス間隔が保たれる。

    policy ごとのパルス区間：
      amplitude        → (duration, clamp(intensity))
      scaled_duration  → (duration × intensity, max_amplitude)

    Args:
        intensity: 強度（> 0）
        pulses: パルス数（> 0）
        duration: 1 パルスの長さ ms（> 0）
        interval: パルス間の休止 ms（>= 0、0 は連続パルス）
        cfg: 波形生成設定

    Returns:
        Waveform

    Raises:
        InvalidParameters: 前提条件を満たさない場合
    """
    if pulses <= 0 or intensity <= 0 or duration <= 0:
        raise InvalidParameters(
            f"pulses, intensity, duration must be > 0 "
            f"(intensity={intensity}, pulses={pulses}, duration={duration})"
        )
    if interval < 0:
        raise InvalidParameters(f"interval must be >= 0 (interval={interval})")
    if interval > MAX_SEGMENT_MS:
        raise InvalidParameters(f"interval too long: {interval}ms")

    if cfg.policy is WaveformPolicy.SCALED_DURATION:
        pulse_ms = duration * intensity
        if pulse_ms > MAX_SEGMENT_MS:
            raise InvalidParameters(f"duration × intensity too long: {pulse_ms}ms")
        pulse = Segment(pulse_ms, cfg.max_amplitude)
    else:
        if duration > MAX_SEGMENT_MS:
            raise InvalidParameters(f"duration too long: {duration}ms")
        pulse = Segment(duration, clamp_amplitude(intensity, cfg.max_amplitude))

    pause = Segment(interval, OFF)
    segments = [Segment(0, OFF)]
    for _ in range(pulses):
        segments.append(pulse)
        segments.append(pause)
    return Waveform(tuple(segments))

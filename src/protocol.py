"""
コマンドプロトコル コーデック

コンパニオン端末から届くテキストフレーム "<Command>:<Payload>" を解析する。
副作用は持たない。ログ出力・破棄の判断は呼び出し側（Session）が行う。

  Monitoring:<ModeName>                         モード選択
  Vibrate:<intensity>,<pulses>,<duration>,<interval>  フィードバック発火

送信方向（テレメトリ）のフォーマットも format_telemetry() としてここに置く。
"""

from dataclasses import dataclass

MONITORING = "Monitoring"
VIBRATE = "Vibrate"

_SEPARATOR = ":"
_VIBRATE_FIELDS = 4


class FrameError(ValueError):
    """1 フレーム単位の回復可能なエラー。"""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw


class FrameMalformed(FrameError):
    """"Command:Payload" の形になっていない。"""


class FrameInvalidPayload(FrameError):
    """コマンドは既知だがペイロードが不正。"""


@dataclass(frozen=True)
class Frame:
    command: str
    payload: str


@dataclass(frozen=True)
class TriggerParameters:
    intensity: int
    pulses: int
    duration: int
    interval: int


@dataclass(frozen=True)
class MonitoringCommand:
    mode_name: str


@dataclass(frozen=True)
class VibrateCommand:
    params: TriggerParameters


@dataclass(frozen=True)
class UnhandledCommand:
    name: str
    payload: str


Command = MonitoringCommand | VibrateCommand | UnhandledCommand


def parse_frame(raw: bytes | str) -> Frame:
    """
    1 フレームを Command / Payload に分割する。

    前後の空白を除去し、最初の ":" でのみ分割する（Payload 内の ":" は保持）。

    Raises:
        FrameMalformed: ":" を含まない、またはコマンド名が空
    """
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    text = text.strip()
    command, sep, payload = text.partition(_SEPARATOR)
    if not sep:
        raise FrameMalformed(f"Invalid message format: {text!r}", text)
    command = command.strip()
    if not command:
        raise FrameMalformed(f"Empty command name: {text!r}", text)
    return Frame(command, payload.strip())


def parse_trigger_parameters(payload: str) -> TriggerParameters:
    """
    "intensity,pulses,duration,interval" を TriggerParameters に変換する。

    値域チェック（> 0 など）は波形生成側で行う。ここでは形式のみ検証する。

    Raises:
        FrameInvalidPayload: 要素数が 4 でない、または 10 進整数でない
    """
    tokens = [t.strip() for t in payload.split(",")]
    if len(tokens) != _VIBRATE_FIELDS:
        raise FrameInvalidPayload(
            f"Incorrect number of vibration parameters ({len(tokens)} != {_VIBRATE_FIELDS}): {payload!r}",
            payload,
        )
    values = []
    for token in tokens:
        # int() は "+5" や "1_000" も受け付けるので、符号付き 10 進数字のみに限定する
        digits = token[1:] if token[:1] == "-" else token
        if not digits.isascii() or not digits.isdigit():
            raise FrameInvalidPayload(f"Invalid numbers in vibration command: {payload!r}", payload)
        values.append(int(token))
    return TriggerParameters(*values)


def decode_command(frame: Frame) -> Command:
    """Frame を型付きコマンドに変換する。未知のコマンドは UnhandledCommand として返す。"""
    if frame.command == MONITORING:
        return MonitoringCommand(frame.payload)
    if frame.command == VIBRATE:
        return VibrateCommand(parse_trigger_parameters(frame.payload))
    return UnhandledCommand(frame.command, frame.payload)


def format_telemetry(value: int, user_id: str, watch_id: str, android_id: str) -> bytes:
    """心拍テレメトリの送信フレームを組み立てる（改行終端）。"""
    return (
        f"MonitoringType:HeartRate,"
        f"Value:{value},"
        f"UserID:{user_id},"
        f"SmartWatchID:{watch_id},"
        f"AndroidID:{android_id}\n"
    ).encode("utf-8")


class FrameDecoder:
    """読み込みチャンクをフレーム単位に組み直すバッファ。

    改行（\\n / \\r\\n）でフレームを区切る。最後の改行以降は保留し、
    続きが届くか flush() されるまで保持する。改行を送らない相手には
    Session が一定時間の無通信後に flush() を呼ぶ。
    """

    def __init__(self, max_frame_length: int = 1024):
        self._max = max_frame_length
        self._buffer = bytearray()

    @property
    def has_pending(self) -> bool:
        return bool(self._buffer.strip())

    def feed(self, data: bytes) -> list[bytes]:
        """データを追加し、確定したフレームを返す（空行は除外）。"""
        self._buffer.extend(data)
        frames: list[bytes] = []
        while True:
            idx = self._buffer.find(b"\n")
            if idx < 0:
                break
            line = bytes(self._buffer[:idx]).strip()
            del self._buffer[: idx + 1]
            if line:
                frames.append(line)

        if len(self._buffer) >= self._max:
            tail = self.flush()
            if tail is not None:
                frames.append(tail)
        return frames

    def flush(self) -> bytes | None:
        """保留中のデータを 1 フレームとして確定する。"""
        tail = bytes(self._buffer).strip()
        self._buffer.clear()
        return tail or None

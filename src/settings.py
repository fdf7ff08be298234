"""
設定管理モジュール

読み込み優先順位（後勝ち）:
  1. config/default.toml  （デフォルト値・git管理）
  2. config/user.toml     （ユーザー上書き・gitignore）
  3. .env                 （秘密情報: API KEY, BLE アドレス, ホスト名）
"""

import tomllib
import os
from pathlib import Path
from dataclasses import dataclass, field
from dotenv import load_dotenv

# .env を読み込む
load_dotenv()

# プロジェクトルート（src/ の一つ上）
_ROOT = Path(__file__).parent.parent
_DEFAULT_TOML = _ROOT / "config" / "default.toml"
_USER_TOML = _ROOT / "config" / "user.toml"


def _load_toml(path: Path) -> dict:
    if not path.exists():
        return {}
    with open(path, "rb") as f:
        return tomllib.load(f)


def _deep_merge(base: dict, override: dict) -> dict:
    """override を base にマージ（ネストも対応）"""
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


@dataclass
class LinkSettings:
    transport: str = "tcp"  # "tcp" または "rfcomm"
    host: str = "0.0.0.0"
    port: int = 5555
    rfcomm_channel: int = 1
    adapter_address: str = ""  # 空なら既定アダプタ
    read_size: int = 1024
    max_frame_length: int = 1024
    frame_flush_delay: float = 0.05
    heartbeat_interval: float = 3.0


@dataclass
class WaveformSettings:
    policy: str = "amplitude"  # "amplitude" または "scaled_duration"
    max_amplitude: int = 255


@dataclass
class DeviceSettings:
    control_mode: str = "log"  # "log" / "ble" / "api"


@dataclass
class BleSettings:
    device_address: str = ""  # .env から読む
    motor_uuid: str = "00001001-0000-1000-8000-00805f9b34fb"
    connect_timeout: float = 20.0
    write_retries: int = 2


@dataclass
class ApiSettings:
    api_key: str = ""  # .env から読む
    url: str = "http://127.0.0.1:8080/api/v1/waveform"
    timeout: float = 5.0


@dataclass
class SensorSettings:
    source: str = "osc"  # "osc" または "none"
    listen_host: str = "127.0.0.1"
    listen_port: int = 9001
    heart_rate_param: str = "/sensor/heart_rate"


@dataclass
class IdentitySettings:
    local_name: str = ""  # 空なら .env の LINK_LOCAL_NAME → ホスト名
    aliases: dict[str, str] = field(default_factory=dict)  # ピアアドレス → 表示名


@dataclass
class DebugSettings:
    level: str = "INFO"
    log_frames: bool = True
    log_to_file: bool = False


@dataclass
class Settings:
    link: LinkSettings = field(default_factory=LinkSettings)
    waveform: WaveformSettings = field(default_factory=WaveformSettings)
    device: DeviceSettings = field(default_factory=DeviceSettings)
    ble: BleSettings = field(default_factory=BleSettings)
    api: ApiSettings = field(default_factory=ApiSettings)
    sensor: SensorSettings = field(default_factory=SensorSettings)
    identity: IdentitySettings = field(default_factory=IdentitySettings)
    debug: DebugSettings = field(default_factory=DebugSettings)


# dict をそのまま値として持つフィールド（再帰せずに丸ごと代入する）
_MAPPING_FIELDS = {("identity", "aliases")}


def _apply_toml(settings: Settings, data: dict) -> None:
    """TOML の dict を Settings に適用する"""
    def _walk(obj, d: dict, path: list):
        for k, v in d.items():
            if isinstance(v, dict) and tuple(path + [k]) not in _MAPPING_FIELDS:
                sub = getattr(obj, k, None)
                if sub is not None:
                    _walk(sub, v, path + [k])
            elif hasattr(obj, k):
                setattr(obj, k, dict(v) if isinstance(v, dict) else v)

    _walk(settings, data, [])


def load(default_path: Path = _DEFAULT_TOML, user_path: Path = _USER_TOML) -> Settings:
    """設定を読み込んで Settings を返す"""
    merged = _deep_merge(_load_toml(default_path), _load_toml(user_path))

    s = Settings()
    _apply_toml(s, merged)

    # .env の秘密情報で上書き（未設定なら TOML の値を残す）
    s.ble.device_address = os.getenv("BLE_DEVICE_ADDRESS", s.ble.device_address)
    s.api.api_key = os.getenv("HAPTIC_API_KEY", s.api.api_key)
    s.identity.local_name = os.getenv("LINK_LOCAL_NAME", s.identity.local_name)

    return s


# モジュールロード時に一度だけ読み込む
settings = load()


def reload() -> None:
    """設定を再読み込みする"""
    global settings
    settings = load()

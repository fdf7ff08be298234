"""デバイスファクトリ

CONTROL_MODE の判定はここ1箇所のみ。
"""

from .base import Actuator


def create_actuator() -> Actuator:
    """設定に基づいて適切な Actuator を生成して返す。"""
    import settings as s_mod
    cfg = s_mod.settings

    mode = cfg.device.control_mode

    if mode == "log":
        from .log_device import LogActuator
        return LogActuator()

    if mode == "ble":
        from .ble_device import BLEActuator
        return BLEActuator(
            address=cfg.ble.device_address,
            motor_uuid=cfg.ble.motor_uuid,
            connect_timeout=cfg.ble.connect_timeout,
            write_retries=cfg.ble.write_retries,
        )

    if mode == "api":
        from .api_device import APIActuator
        return APIActuator(
            api_url=cfg.api.url,
            api_key=cfg.api.api_key,
            timeout=cfg.api.timeout,
        )

    raise ValueError(f"不明な CONTROL_MODE: {mode!r}（'log' / 'ble' / 'api' を設定してください）")

"""センサーファクトリ"""

import logging

from .base import HeartRateSensor, SampleCallback

logger = logging.getLogger(__name__)


class NoSensor:
    """心拍センサーを持たない構成。購読は常に失敗する。"""

    is_subscribed = False

    def subscribe(self, callback: SampleCallback) -> bool:
        logger.error("[Sensor] Heart-rate sensor not available!")
        return False

    def unsubscribe(self, callback: SampleCallback | None = None) -> None:
        pass


def create_sensor() -> HeartRateSensor:
    """設定に基づいて適切な HeartRateSensor を生成して返す。"""
    import settings as s_mod
    cfg = s_mod.settings

    source = cfg.sensor.source

    if source == "osc":
        from .osc_sensor import OSCHeartRateSensor
        return OSCHeartRateSensor(
            host=cfg.sensor.listen_host,
            port=cfg.sensor.listen_port,
            address=cfg.sensor.heart_rate_param,
        )

    if source == "none":
        return NoSensor()

    raise ValueError(f"不明な sensor.source: {source!r}（'osc' または 'none' を設定してください）")

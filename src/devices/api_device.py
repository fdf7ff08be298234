"""API アクチュエータ実装（HTTP 経由で別プロセスの振動サービスへ渡す）"""

import logging
import requests

from waveform import Waveform

logger = logging.getLogger(__name__)


class APIActuator:
    """HTTP API 経由のアクチュエータ。Actuator Protocol に準拠。

    API 接続は stateless なので connect/disconnect は設定確認のみ。
    """

    def __init__(self, api_url: str, api_key: str = "", timeout: float = 5.0):
        self._api_url = api_url
        self._api_key = api_key
        self._timeout = timeout

    # ------------------------------------------------------------------ #
    # Actuator インターフェース                                            #
    # ------------------------------------------------------------------ #

    def connect(self) -> bool:
        if not self._api_url:
            logger.error("api.url が設定されていません（config/user.toml を確認してください）")
            return False
        logger.info(f"API アクチュエータで起動: {self._api_url}")
        return True

    def disconnect(self) -> None:
        pass

    def play(self, waveform: Waveform) -> bool:
        payload = {
            "waveform": {
                "timings": waveform.timings,
                "amplitudes": waveform.amplitudes,
                "repeat": -1,
            }
        }
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        try:
            response = requests.post(self._api_url, json=payload, headers=headers, timeout=self._timeout)
            if response.status_code == 200:
                logger.info(f"API waveform sent: pulses={waveform.pulse_count}, total={waveform.total_ms}ms")
                return True
            logger.error(f"Actuator API error: {response.status_code} - {response.text}")
            return False
        except requests.exceptions.RequestException as e:
            logger.error(f"API request failed (waveform): {e}")
            return False

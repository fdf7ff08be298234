"""アクチュエータ抽象化 Protocol"""

from typing import Protocol, runtime_checkable

from waveform import Waveform


@runtime_checkable
class Actuator(Protocol):
    """振動アクチュエータの共通インターフェース。

    ローカルログ / BLE / HTTP API など駆動方式の違いを隠蔽する。
    すべてのメソッドは同期呼び出し。play() は再生を開始したら戻ってよい。
    """

    def connect(self) -> bool:
        """アクチュエータを使用可能にする。成功時 True を返す。"""
        ...

    def disconnect(self) -> None:
        """アクチュエータを解放する。"""
        ...

    def play(self, waveform: Waveform) -> bool:
        """波形を再生する。再生中の波形があれば置き換える。

        Returns:
            再生を開始できた場合 True（例外は投げない）
        """
        ...

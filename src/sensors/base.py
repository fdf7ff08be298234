"""心拍センサー抽象化 Protocol"""

from typing import Callable, Protocol, runtime_checkable

SampleCallback = Callable[[float], None]


@runtime_checkable
class HeartRateSensor(Protocol):
    """心拍サンプルをプッシュ型で届けるセンサーフィード。

    サンプルを受け取るのは常に最後に購読したコールバック 1 つだけ。
    後から購読されると配信先はそちらに移り、それが解除されると
    1 つ前の購読者に戻る。コールバックはセンサー側のスレッドから呼ばれてよい。
    """

    def subscribe(self, callback: SampleCallback) -> bool:
        """購読を開始する。同じコールバックで購読済みなら何もせず True を返す。

        Returns:
            センサーが利用可能で購読できた場合 True
        """
        ...

    def unsubscribe(self, callback: SampleCallback | None = None) -> None:
        """callback の購読を解除する。None なら全購読を解除する。

        他の購読者のコールバックには影響しない。
        """
        ...

    @property
    def is_subscribed(self) -> bool:
        ...

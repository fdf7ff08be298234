"""
リンクサーバー（受け付けループ）

Listener から 1 本ずつ接続を受け付け、接続ごとに Session タスクを起動する。
start() は stop() が呼ばれるか待ち受けが回復不能になるまでブロックする。
stop() はどのスレッドから呼んでもよい。
"""

import asyncio
import logging
import threading
from typing import Callable

from .session import Session
from .transport import Connection, Listener, PermissionDenied, TransportUnavailable

logger = logging.getLogger(__name__)


class LinkServer:
    """接続受け付けとセッション起動を担う。"""

    def __init__(
        self,
        listener_factory: Callable[[], Listener],
        session_factory: Callable[[Connection], Session],
    ):
        """
        Args:
            listener_factory: 待ち受けを開始して Listener を返す（失敗時は
                TransportUnavailable / PermissionDenied）
            session_factory: 接続から Session を生成する
        """
        self._listener_factory = listener_factory
        self._session_factory = session_factory

        self._loop: asyncio.AbstractEventLoop | None = None
        self._listener: Listener | None = None
        self._accept_task: asyncio.Task | None = None
        self._sessions: set[asyncio.Task] = set()
        self._stop_requested = False
        self._stopped = threading.Event()
        self._stopped.set()

    @property
    def is_running(self) -> bool:
        return not self._stopped.is_set()

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    # ------------------------------------------------------------------ #
    # 同期 API                                                             #
    # ------------------------------------------------------------------ #

    def start(self) -> None:
        """サーバーを起動する（ブロッキング呼び出し）。"""
        self._stop_requested = False
        asyncio.run(self.serve())

    def stop(self) -> None:
        """サーバーを停止する（スレッドセーフ・冪等）。"""
        self._stop_requested = True
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._request_stop)
        except RuntimeError:
            # ループが既に閉じている
            pass

    def wait_stopped(self, timeout: float | None = None) -> bool:
        return self._stopped.wait(timeout)

    # ------------------------------------------------------------------ #
    # 非同期 API                                                           #
    # ------------------------------------------------------------------ #

    async def serve(self) -> None:
        """受け付けループ本体。"""
        self._loop = asyncio.get_running_loop()
        try:
            listener = self._listener_factory()
        except (TransportUnavailable, PermissionDenied) as e:
            logger.error(f"[Link] Failed to start server: [{type(e).__name__}] {e}")
            self._loop = None
            raise

        self._listener = listener
        self._stopped.clear()
        logger.info("[Link] Server started. Waiting for connections...")
        try:
            while not self._stop_requested:
                self._accept_task = asyncio.ensure_future(listener.accept())
                try:
                    connection = await self._accept_task
                except asyncio.CancelledError:
                    if asyncio.current_task().cancelling():
                        raise
                    break
                except PermissionError as e:
                    logger.error(f"[Link] Permission error while accepting: {e}")
                    continue
                except OSError as e:
                    if not self._stop_requested:
                        logger.error(f"[Link] Accept failed, stopping server: {e}")
                    break
                finally:
                    self._accept_task = None

                self._spawn_session(connection)
        finally:
            listener.close()
            self._listener = None
            await self._cancel_sessions()
            self._loop = None
            self._stopped.set()
            logger.info("[Link] Server stopped.")

    async def shutdown(self) -> None:
        """serve() と同じループから停止し、終了まで待つ。"""
        self._stop_requested = True
        self._request_stop()
        while not self._stopped.is_set():
            await asyncio.sleep(0.01)

    # ------------------------------------------------------------------ #
    # 内部                                                                 #
    # ------------------------------------------------------------------ #

    def _request_stop(self) -> None:
        """ループスレッド上で呼ぶ。待ち受け中の accept を中断する。"""
        self._stop_requested = True
        if self._accept_task is not None and not self._accept_task.done():
            self._accept_task.cancel()

    def _spawn_session(self, connection: Connection) -> None:
        task = asyncio.ensure_future(self._run_session(connection))
        self._sessions.add(task)
        task.add_done_callback(self._sessions.discard)

    async def _run_session(self, connection: Connection) -> None:
        try:
            session = self._session_factory(connection)
            await session.run()
        except Exception as e:
            # セッション内の失敗はサーバーへ波及させない
            logger.error(f"[Link] Session terminated with error: {e}", exc_info=True)
            await connection.close()

    async def _cancel_sessions(self) -> None:
        sessions = list(self._sessions)
        for task in sessions:
            task.cancel()
        if sessions:
            await asyncio.gather(*sessions, return_exceptions=True)

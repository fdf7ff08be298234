"""リンク層（接続の受け付けとバイトストリーム）

サーバーが使うのは Listener.accept() と Connection の read / write / close のみ。
TCP と Bluetooth RFCOMM（Linux の AF_BLUETOOTH）の 2 種類を用意する。
"""

import asyncio
import logging
import socket
from typing import Protocol

logger = logging.getLogger(__name__)


class TransportUnavailable(RuntimeError):
    """待ち受けを開始できない（Bluetooth 非対応・アダプタ無効など）。"""


class PermissionDenied(RuntimeError):
    """OS の権限不足で待ち受けを開始できない。"""


class ConnectionLost(ConnectionError):
    """接続の読み書きに失敗した（そのセッションのみ終了する）。"""


class Connection(Protocol):
    peer_address: str  # 表示用（TCP は "host:port"）
    peer_host: str  # ポートを除いたアドレス（RFCOMM は MAC アドレス）

    async def read(self, n: int) -> bytes:
        """最大 n バイト読む。EOF なら b""、失敗時は ConnectionLost。"""
        ...

    async def write(self, data: bytes) -> None:
        """data を書き込んで送信完了まで待つ。失敗時は ConnectionLost。"""
        ...

    async def close(self) -> bool:
        """接続を閉じる。実際に閉じたときだけ True（2 回目以降は False）。"""
        ...

    @property
    def is_closed(self) -> bool:
        ...


class Listener(Protocol):
    async def accept(self) -> Connection:
        ...

    def close(self) -> None:
        ...


class StreamConnection:
    """asyncio の StreamReader / StreamWriter をラップした Connection。

    書き込みはロックで直列化する（フレームが混ざらないように）。
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        peer_address: str,
        peer_host: str | None = None,
    ):
        self._reader = reader
        self._writer = writer
        self.peer_address = peer_address
        self.peer_host = peer_host or peer_address
        self._write_lock = asyncio.Lock()
        self._closed = False

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def read(self, n: int) -> bytes:
        try:
            return await self._reader.read(n)
        except (ConnectionError, OSError) as e:
            raise ConnectionLost(f"read failed: {e}") from e

    async def write(self, data: bytes) -> None:
        async with self._write_lock:
            if self._closed or self._writer.is_closing():
                raise ConnectionLost("connection closed")
            try:
                self._writer.write(data)
                await self._writer.drain()
            except (ConnectionError, OSError) as e:
                raise ConnectionLost(f"write failed: {e}") from e

    async def close(self) -> bool:
        if self._closed:
            return False
        self._closed = True
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug(f"[Link] close error (ignored): {e}")
        return True


class SocketListener:
    """待ち受けソケットから 1 本ずつ接続を受け付ける Listener。"""

    def __init__(self, sock: socket.socket, label: str):
        sock.setblocking(False)
        self._sock = sock
        self.label = label

    @property
    def address(self):
        """バインド済みのアドレス（ポート 0 指定時の実ポート確認用）。"""
        return self._sock.getsockname()

    async def accept(self) -> StreamConnection:
        loop = asyncio.get_running_loop()
        conn_sock, addr = await loop.sock_accept(self._sock)
        reader, writer = await asyncio.open_connection(sock=conn_sock)
        host = str(addr[0]) if isinstance(addr, tuple) else str(addr)
        return StreamConnection(reader, writer, _format_address(addr), host)

    def close(self) -> None:
        self._sock.close()


def _format_address(addr) -> str:
    if isinstance(addr, tuple):
        host, port = addr[0], addr[1]
        return f"{host}:{port}" if isinstance(port, int) and ":" not in str(host) else str(host)
    return str(addr)


def open_tcp_listener(host: str, port: int) -> SocketListener:
    try:
        sock = socket.create_server((host, port), backlog=1)
    except PermissionError as e:
        raise PermissionDenied(f"cannot bind {host}:{port}: {e}") from e
    except OSError as e:
        raise TransportUnavailable(f"cannot listen on {host}:{port}: {e}") from e
    return SocketListener(sock, f"tcp://{host}:{port}")


def open_rfcomm_listener(channel: int, adapter_address: str = "") -> SocketListener:
    if not hasattr(socket, "AF_BLUETOOTH") or not hasattr(socket, "BTPROTO_RFCOMM"):
        raise TransportUnavailable("Device does not support Bluetooth (AF_BLUETOOTH unavailable)")

    address = adapter_address or getattr(socket, "BDADDR_ANY", "00:00:00:00:00:00")
    try:
        sock = socket.socket(socket.AF_BLUETOOTH, socket.SOCK_STREAM, socket.BTPROTO_RFCOMM)
    except PermissionError as e:
        raise PermissionDenied(f"Missing Bluetooth permission: {e}") from e
    except OSError as e:
        raise TransportUnavailable(f"Bluetooth is unavailable: {e}") from e

    try:
        sock.bind((address, channel))
        sock.listen(1)
    except PermissionError as e:
        sock.close()
        raise PermissionDenied(f"Missing Bluetooth permission: {e}") from e
    except OSError as e:
        sock.close()
        raise TransportUnavailable(f"Bluetooth is OFF or channel {channel} busy: {e}") from e
    return SocketListener(sock, f"rfcomm://{address}/{channel}")


def create_listener() -> SocketListener:
    """設定に基づいて Listener を生成する（TRANSPORT の判定はここ1箇所のみ）。"""
    import settings as s_mod
    cfg = s_mod.settings.link

    if cfg.transport == "tcp":
        return open_tcp_listener(cfg.host, cfg.port)
    if cfg.transport == "rfcomm":
        return open_rfcomm_listener(cfg.rfcomm_channel, cfg.adapter_address)

    raise ValueError(f"不明な link.transport: {cfg.transport!r}（'tcp' または 'rfcomm' を設定してください）")

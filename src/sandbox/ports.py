"""
ポート割り当てモジュール。

既定ポートから固定幅のウィンドウを線形に走査し、
リスナーが存在しない最初のポートを返す。
予約は行わないため、割り当てからバインドまでの間は
オーケストレーターのロックで直列化する必要がある。
"""

import asyncio
import contextlib
import logging
from typing import Protocol

from src.sandbox.errors import ResourceExhausted

logger = logging.getLogger(__name__)


class PortProbe(Protocol):
    """ポート使用状況確認のプロトコル定義。"""

    async def is_in_use(self, port: int) -> bool:
        """ポートにリスナーが存在するかを返す。"""
        ...


class TcpPortProbe:
    """localhostへのTCP接続でリスナーの有無を確認するPortProbe実装。

    接続できればリスナーあり、拒否されればリスナーなしと判定する。
    タイムアウトした場合は安全側に倒して使用中とみなす。
    """

    def __init__(self, host: str = "127.0.0.1", timeout: float = 0.5) -> None:
        self._host = host
        self._timeout = timeout

    async def is_in_use(self, port: int) -> bool:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self._host, port), timeout=self._timeout
            )
        except TimeoutError:
            logger.debug("Probe of port %d timed out, treating as in use", port)
            return True
        except OSError:
            return False

        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()
        return True


class PortAllocator:
    """空きTCPポートを探す。

    Attributes:
        _probe: ポート使用状況の確認に使うPortProbe
        _start_port: 走査開始ポート
        _window: 走査するポート数
    """

    def __init__(self, probe: PortProbe, start_port: int = 3000, window: int = 100) -> None:
        self._probe = probe
        self._start_port = start_port
        self._window = window

    @property
    def candidates(self) -> range:
        """走査対象のポート範囲を返す。"""
        return range(self._start_port, min(self._start_port + self._window, 65536))

    async def allocate(self) -> int:
        """空きポートを返す。

        Returns:
            リスナーの存在しない最初のポート

        Raises:
            ResourceExhausted: ウィンドウ内の全ポートが使用中の場合
        """
        for port in self.candidates:
            if not await self._probe.is_in_use(port):
                logger.info("Allocated port %d", port)
                return port
            logger.debug("Port %d is in use", port)

        logger.error(
            "No available port in range %d-%d",
            self._start_port,
            self._start_port + self._window - 1,
        )
        raise ResourceExhausted(self._start_port, self._window)

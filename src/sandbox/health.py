"""
ヘルスチェックモジュール。

- 生存確認: 追跡中のPIDがまだ存在するか(ProcessSupervisor.is_aliveを利用)
- 準備完了確認: ポートがHTTP接続を受け付けるまで、リトライポリシーに従って待機

準備完了確認はプロビジョニング時のみ使用し、
定常的なステータス確認は軽量な生存確認で行う。
"""

import asyncio
import logging
from collections.abc import Iterator

import httpx
from pydantic import BaseModel, Field

from src.sandbox.errors import HealthCheckTimeout
from src.sandbox.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)


class RetryPolicy(BaseModel):
    """準備完了確認のリトライポリシー。

    Attributes:
        max_attempts: 最大試行回数
        interval: 初回の待機秒数
        backoff: 待機秒数の倍率(1.0で固定間隔)
        max_interval: 待機秒数の上限
        timeout: 全体のタイムアウト秒数
        request_timeout: 1回の接続試行のタイムアウト秒数
    """

    max_attempts: int = Field(default=30, ge=1)
    interval: float = Field(default=1.0, ge=0)
    backoff: float = Field(default=1.0, ge=1.0)
    max_interval: float = Field(default=10.0, ge=0)
    timeout: float = Field(default=60.0, gt=0)
    request_timeout: float = Field(default=2.0, gt=0)

    def delays(self) -> Iterator[float]:
        """試行間の待機秒数を順に返す(max_attempts - 1個)。"""
        delay = self.interval
        for _ in range(self.max_attempts - 1):
            yield min(delay, self.max_interval)
            delay *= self.backoff


class HealthMonitor:
    """開発サーバーの生存確認と準備完了確認を行う。"""

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        client: httpx.AsyncClient | None = None,
        host: str = "127.0.0.1",
    ) -> None:
        self._supervisor = supervisor
        self._client = client
        self._host = host

    def probe_process(self, pid: int | None) -> bool:
        """プロセスが生存しているかを返す。PIDが無い場合はFalse。"""
        if pid is None:
            return False
        healthy = self._supervisor.is_alive(pid)
        logger.debug("Process probe: pid=%d, healthy=%s", pid, healthy)
        return healthy

    async def _poll(self, client: httpx.AsyncClient, port: int, policy: RetryPolicy) -> int:
        url = f"http://{self._host}:{port}/"
        delays = policy.delays()
        last_error: str | None = None

        for attempt in range(1, policy.max_attempts + 1):
            try:
                response = await client.get(url, timeout=policy.request_timeout)
                # 応答があればステータスコードに関わらず準備完了とみなす
                logger.info(
                    "Server on port %d ready after %d attempts (status %d)",
                    port,
                    attempt,
                    response.status_code,
                )
                return attempt
            except httpx.TransportError as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.debug("Port %d not ready (attempt %d): %s", port, attempt, last_error)

            delay = next(delays, None)
            if delay is not None:
                await asyncio.sleep(delay)

        raise HealthCheckTimeout(port, policy.max_attempts, last_error)

    async def wait_for_ready(self, port: int, policy: RetryPolicy) -> int:
        """ポートがHTTP接続を受け付けるまで待機する。

        Args:
            port: 確認するポート
            policy: リトライポリシー

        Returns:
            準備完了までの試行回数

        Raises:
            HealthCheckTimeout: 試行回数または全体のタイムアウトを超えた場合
        """
        logger.info("Waiting for server on port %d", port)
        if self._client is not None:
            client = self._client
            owns_client = False
        else:
            client = httpx.AsyncClient(trust_env=False)
            owns_client = True

        try:
            return await asyncio.wait_for(self._poll(client, port, policy), timeout=policy.timeout)
        except TimeoutError as e:
            raise HealthCheckTimeout(port, policy.max_attempts, "overall timeout exceeded") from e
        finally:
            if owns_client:
                await client.aclose()

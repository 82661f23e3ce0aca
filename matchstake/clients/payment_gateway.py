import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Optional

import httpx

from matchstake.config import settings
from matchstake.contracts.contracts import GatewayDepositRequest, GatewayTokenResponse, GatewayWithdrawRequest
from matchstake.exceptions import ProviderError
from matchstake.logging_config import get_logger

logger = get_logger(__name__)

DEPOSIT_PATH = "/api/v1/transaction/deposit"
WITHDRAW_PATH = "/api/v1/transaction/withdraw"

GatewayTask = Callable[[str], Awaitable[Any]]


def _error_payload(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class GatewayTokenManager:
    """Fetches short-lived bearer tokens; every queued gateway task asks for its own."""

    def __init__(self, client: httpx.AsyncClient, auth_path: str | None = None):
        self.client = client
        self.auth_path = auth_path or settings.gateway_auth_path

    async def fetch_token(self) -> str:
        try:
            response = await self.client.post(
                self.auth_path,
                json={"userName": settings.gateway_username, "password": settings.gateway_password},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ProviderError(
                "gateway authentication failed",
                status_code=exc.response.status_code,
                payload=_error_payload(exc.response),
            ) from exc
        except httpx.RequestError as exc:
            raise ProviderError(f"gateway authentication request error: {exc}") from exc
        try:
            return GatewayTokenResponse.model_validate(response.json()).access_token
        except ValueError as exc:
            raise ProviderError("gateway authentication returned no token", payload=_error_payload(response)) from exc


@dataclass
class _QueuedTask:
    name: str
    fn: GatewayTask
    future: asyncio.Future


class PaymentGatewayClient:
    """
    Mobile-money gateway client.

    Calls go through a single FIFO so only one is in flight at a time; each task fetches a fresh
    token immediately before it runs because tokens are short-lived shared state on the provider side.
    """

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        token_manager: GatewayTokenManager | None = None,
    ):
        self.client = httpx.AsyncClient(
            base_url=str(base_url or settings.gateway_base_url),
            timeout=timeout if timeout is not None else settings.gateway_timeout_seconds,
        )
        self.token_manager = token_manager or GatewayTokenManager(self.client)
        self._queue: Deque[_QueuedTask] = deque()
        self._processing = False
        self.completed_tasks = 0
        self.failed_tasks = 0

    async def enqueue(self, name: str, fn: GatewayTask) -> Any:
        future = asyncio.get_running_loop().create_future()
        self._queue.append(_QueuedTask(name, fn, future))
        if not self._processing:
            self._processing = True
            asyncio.get_running_loop().create_task(self._process_queue())
        return await future

    async def _process_queue(self) -> None:
        try:
            while self._queue:
                task = self._queue.popleft()
                if task.future.done():
                    continue
                try:
                    token = await self.token_manager.fetch_token()
                    result = await task.fn(token)
                except Exception as exc:  # noqa: BLE001
                    self.failed_tasks += 1
                    logger.error("Gateway task failed task=%s error=%s", task.name, exc)
                    if not task.future.done():
                        task.future.set_exception(exc)
                    continue
                self.completed_tasks += 1
                if not task.future.done():
                    task.future.set_result(result)
        finally:
            self._processing = False

    async def _post(self, path: str, payload: dict, token: str) -> dict:
        try:
            response = await self.client.post(
                path,
                json=payload,
                headers={"Content-Type": "application/json", "Authorization": f"Bearer {token}"},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ProviderError(
                f"gateway returned {exc.response.status_code} for {path}",
                status_code=exc.response.status_code,
                payload=_error_payload(exc.response),
            ) from exc
        except httpx.RequestError as exc:
            raise ProviderError(f"gateway request error: {exc}") from exc
        body = _error_payload(response)
        return body if isinstance(body, dict) else {"raw": body}

    async def deposit(self, request: GatewayDepositRequest) -> dict:
        payload = request.model_dump()
        logger.info(
            "Submitting deposit requestId=%s amount=%s", request.originatorRequestId, request.amount
        )
        return await self.enqueue("deposit", lambda token: self._post(DEPOSIT_PATH, payload, token))

    async def withdraw(self, request: GatewayWithdrawRequest) -> dict:
        payload = request.model_dump()
        logger.info(
            "Submitting withdrawal requestId=%s amount=%s", request.originatorRequestId, request.amount
        )
        return await self.enqueue("withdraw", lambda token: self._post(WITHDRAW_PATH, payload, token))

    def status(self) -> dict:
        return {
            "queueLength": len(self._queue),
            "isProcessing": self._processing,
            "completedTasks": self.completed_tasks,
            "failedTasks": self.failed_tasks,
        }

    async def close(self) -> None:
        while self._queue:
            task = self._queue.popleft()
            if not task.future.done():
                task.future.set_exception(ProviderError("gateway client shutting down"))
        await self.client.aclose()


def transaction_id_from(response: Optional[dict]) -> Optional[str]:
    if not response:
        return None
    value = response.get("transactionId") or response.get("transactionReference")
    return str(value) if value else None

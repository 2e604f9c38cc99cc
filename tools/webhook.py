import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import httpx
from loguru import logger
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_fixed

from pipeline.state import DispatchBatch, DispatchFailure, DispatchItem, ResearchResponse
from tools.config import ResearchSettings
from tools.errors import DispatchError, WebhookClientError, WebhookServerError, WebhookTimeoutError

Sleep = Callable[[float], Awaitable[Any]]


def build_payload(items: List[DispatchItem]) -> List[Dict[str, str]]:
    """Request body in the field naming the research workflow expects."""
    return [
        {
            "First Name": item.first_name,
            "Last Name": item.last_name,
            "LinkedIn": item.linkedin_url or "",
            "Title": item.title,
            "Company": item.company,
            "EMail": item.email,
            "Correlation Id": item.correlation_id,
        }
        for item in items
    ]


def _is_retryable(exc: BaseException) -> bool:
    """Only timeouts and 5xx answers are worth another attempt."""
    return isinstance(exc, DispatchError) and exc.retryable


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    delay = retry_state.next_action.sleep if retry_state.next_action else 0
    logger.warning(
        f"Webhook attempt {retry_state.attempt_number} failed ({exc}), "
        f"retrying in {delay:.0f}s"
    )


class ResearchWebhookClient:
    """Sends dispatch batches to the external research webhook."""

    def __init__(self, settings: ResearchSettings,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 sleep: Sleep = asyncio.sleep):
        self.settings = settings
        self.transport = transport
        self._sleep = sleep

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.settings.max_retries + 1),
            wait=wait_fixed(self.settings.retry_delay_seconds),
            retry=retry_if_exception(_is_retryable),
            before_sleep=_log_retry,
            reraise=True,
            sleep=self._sleep,
        )

    async def dispatch(self, batch: DispatchBatch) -> Union[ResearchResponse, DispatchFailure]:
        """
        POST one batch, retrying timeouts and 5xx answers.

        Args:
            batch: Records to research together

        Returns:
            ResearchResponse on a 2xx answer, DispatchFailure otherwise
        """
        payload = build_payload(batch.items)
        max_attempts = self.settings.max_retries + 1
        attempts = 0
        logger.info(
            f"Dispatching batch {batch.number} with {len(batch.items)} prospects "
            f"to {self.settings.webhook_url}"
        )

        try:
            async with httpx.AsyncClient(timeout=self.settings.webhook_timeout_seconds,
                                         transport=self.transport) as client:
                async for attempt in self._retrying():
                    with attempt:
                        attempts = attempt.retry_state.attempt_number
                        logger.info(f"Batch {batch.number}: attempt {attempts}/{max_attempts}")
                        response = await self._post(client, payload, batch.number, attempts)
        except DispatchError as e:
            reason = str(e)
            if e.retryable:
                reason = f"{reason} (gave up after {attempts} attempts)"
            logger.error(f"Batch {batch.number} dispatch failed: {reason}")
            return DispatchFailure(reason=reason, attempts=attempts, status_code=e.status_code)
        except httpx.HTTPError as e:
            reason = f"Research webhook request failed: {e}"
            logger.error(f"Batch {batch.number} dispatch failed: {reason}")
            return DispatchFailure(reason=reason, attempts=attempts)

        try:
            body = response.json()
        except ValueError:
            logger.error(f"Batch {batch.number}: webhook answered {response.status_code} with a non-JSON body")
            return DispatchFailure(
                reason=f"Research webhook returned a non-JSON body (HTTP {response.status_code})",
                attempts=attempts,
                status_code=response.status_code,
            )

        logger.info(f"Batch {batch.number}: webhook succeeded on attempt {attempts}")
        return ResearchResponse(status_code=response.status_code, body=body, attempts=attempts)

    async def _post(self, client: httpx.AsyncClient, payload: List[Dict[str, str]],
                    batch_number: int, attempt: int) -> httpx.Response:
        timeout = self.settings.webhook_timeout_seconds
        # Wall-clock bound on the whole attempt; httpx timeouts only apply per phase
        try:
            response = await asyncio.wait_for(
                client.post(
                    self.settings.webhook_url,
                    json=payload,
                    headers={
                        "X-Batch-Number": str(batch_number),
                        "X-Retry-Attempt": str(attempt),
                        "X-Request-Timeout": str(timeout * 1000),
                    },
                ),
                timeout,
            )
        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            raise WebhookTimeoutError(f"Research webhook timed out after {timeout}s") from e

        if response.status_code >= 500:
            raise WebhookServerError(
                f"Research webhook failed with HTTP {response.status_code}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise WebhookClientError(
                f"Research webhook rejected the batch with HTTP {response.status_code}: "
                f"{response.text[:200]}",
                status_code=response.status_code,
            )
        return response

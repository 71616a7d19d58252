"""Bounded-concurrency, rate-limited submission of resolved records."""

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, Iterable, List, Optional
import httpx
from tenacity import AsyncRetrying, before_sleep_log, retry_if_result, stop_after_attempt

from .models import DispatchOutcome, OutcomeKind, ResolvedRecord
from .ratelimit import TokenBucketLimiter


logger = logging.getLogger(__name__)

SubmitFn = Callable[[ResolvedRecord], Awaitable[httpx.Response]]
OutcomeCallback = Callable[[DispatchOutcome], None]


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds from a Retry-After header, or None when absent or a date."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def _decode_body(response: httpx.Response):
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


class ConcurrentDispatcher:
    """Submits records with at most ``concurrency`` requests in flight.

    Every submission takes one permit from the shared rate limiter first.
    Failures never stop the run. When ``cancel_event`` is set, workers stop
    taking new records and anything left in the queue is kept in
    ``not_attempted``.
    """

    def __init__(
        self,
        concurrency: int,
        rate_limiter: TokenBucketLimiter,
        honor_retry_after: bool = False,
        max_retries: int = 3,
        max_retry_wait: float = 60.0,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        if concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {concurrency}")
        self.concurrency = concurrency
        self.rate_limiter = rate_limiter
        self.honor_retry_after = honor_retry_after
        self.max_retries = max_retries
        self.max_retry_wait = max_retry_wait
        self.cancel_event = cancel_event

        self.in_flight = 0
        self.max_in_flight = 0
        self.not_attempted: List[ResolvedRecord] = []

    async def outcomes(
        self,
        records: Iterable[ResolvedRecord],
        submit: SubmitFn,
    ) -> AsyncIterator[DispatchOutcome]:
        """Yield one outcome per submitted record, in completion order."""
        queue: asyncio.Queue = asyncio.Queue()
        for record in records:
            queue.put_nowait(record)
        results: asyncio.Queue = asyncio.Queue()
        self.not_attempted = []

        workers = [
            asyncio.create_task(self._worker(queue, results, submit))
            for _ in range(self.concurrency)
        ]

        try:
            finished = 0
            while finished < len(workers):
                item = await results.get()
                if item is None:
                    finished += 1
                    continue
                yield item
            # Surface any unexpected worker failure
            await asyncio.gather(*workers)
        finally:
            for worker in workers:
                if not worker.done():
                    worker.cancel()
            while not queue.empty():
                self.not_attempted.append(queue.get_nowait())
            if self.not_attempted:
                logger.warning("%d records were not attempted", len(self.not_attempted))

    async def dispatch(
        self,
        records: Iterable[ResolvedRecord],
        submit: SubmitFn,
        on_outcome: Optional[OutcomeCallback] = None,
    ) -> List[DispatchOutcome]:
        """Submit every record and collect the outcomes."""
        collected: List[DispatchOutcome] = []
        async for outcome in self.outcomes(records, submit):
            collected.append(outcome)
            if on_outcome is not None:
                on_outcome(outcome)
        return collected

    async def _worker(
        self,
        queue: asyncio.Queue,
        results: asyncio.Queue,
        submit: SubmitFn,
    ) -> None:
        try:
            while self.cancel_event is None or not self.cancel_event.is_set():
                try:
                    record = queue.get_nowait()
                except asyncio.QueueEmpty:
                    break
                outcome = await self._submit_one(record, submit)
                await results.put(outcome)
        finally:
            results.put_nowait(None)

    async def _submit_one(self, record: ResolvedRecord, submit: SubmitFn) -> DispatchOutcome:
        attempts = 0

        async def attempt() -> httpx.Response:
            nonlocal attempts
            attempts += 1
            await self.rate_limiter.acquire()
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            try:
                return await submit(record)
            finally:
                self.in_flight -= 1

        try:
            if self.honor_retry_after:
                response = await self._retrying()(attempt)
            else:
                response = await attempt()
        except httpx.HTTPError as e:
            logger.error("%s %s: %s: %s", record.entity.entity_type, record.ref_id, type(e).__name__, e)
            return DispatchOutcome(
                ref_id=record.ref_id,
                row_number=record.entity.row_number,
                kind=OutcomeKind.TRANSPORT_ERROR,
                message=f"{type(e).__name__}: {e}",
                attempts=attempts,
            )
        except Exception as e:
            # The request could not be built or sent, e.g. a body that is not valid JSON
            logger.exception("%s %s: request failed before a response", record.entity.entity_type, record.ref_id)
            return DispatchOutcome(
                ref_id=record.ref_id,
                row_number=record.entity.row_number,
                kind=OutcomeKind.TRANSPORT_ERROR,
                message=f"{type(e).__name__}: {e}",
                attempts=attempts,
            )

        return self._classify(record, response, attempts)

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=self._retry_after_wait,
            retry=retry_if_result(lambda response: response.status_code == 429),
            retry_error_callback=lambda state: state.outcome.result(),
            before_sleep=before_sleep_log(logger, logging.WARNING),
        )

    def _retry_after_wait(self, retry_state) -> float:
        response = retry_state.outcome.result()
        wait = parse_retry_after(response.headers.get("Retry-After"))
        if wait is None:
            wait = 2 ** (retry_state.attempt_number - 1)
        return min(wait, self.max_retry_wait)

    def _classify(
        self,
        record: ResolvedRecord,
        response: httpx.Response,
        attempts: int,
    ) -> DispatchOutcome:
        status = response.status_code
        body = _decode_body(response)
        logger.info("%s %s: response %s", record.entity.entity_type, record.ref_id, status)

        if 200 <= status < 300:
            return DispatchOutcome(
                ref_id=record.ref_id,
                row_number=record.entity.row_number,
                kind=OutcomeKind.SUCCESS,
                status=status,
                body=body,
                attempts=attempts,
            )

        headers = {}
        if status == 429:
            headers = dict(response.headers)
            logger.warning(
                "Rate limited on %s %s (Retry-After: %s); headers: %s",
                record.entity.entity_type,
                record.ref_id,
                response.headers.get("Retry-After", "not given"),
                headers,
            )
        else:
            logger.error("%s %s failed: HTTP %s %s", record.entity.entity_type, record.ref_id, status, body)

        return DispatchOutcome(
            ref_id=record.ref_id,
            row_number=record.entity.row_number,
            kind=OutcomeKind.REMOTE_ERROR,
            status=status,
            body=body,
            headers=headers,
            attempts=attempts,
        )

"""
Settlement orchestration - watches each deposit address, then re-prices and
completes the exchange.

Every in-flight request owns a row in the settlement job table. The
scheduler loop starts one asyncio task per job, so a restart picks up
where the previous process stopped.
"""

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Optional, TypeVar

import structlog

from .amounts import btc_to_sats, quantize_amount
from .currencies import BTC, fee_rate_for
from .db import ExchangeDatabase
from .errors import ExchangeError, PersistenceError, UpstreamError
from .explorer import ChainObserver
from .models import (
    STATUS_EXPIRED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    STATUS_WAITING,
    TERMINAL_STATUSES,
    ExchangeRequest,
    PaymentCheck,
    PaymentClassification,
    PaymentRecord,
    PaymentStatus,
    SettlementJob,
    utcnow,
)
from .prices import PriceOracle

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass
class OrchestratorState:
    """Current scheduler state."""

    is_running: bool = False
    last_tick_time: Optional[datetime] = None
    completed: int = 0
    failed: int = 0
    expired: int = 0


class SettlementOrchestrator:
    """
    Drives exchange requests from deposit to a terminal state.

    pending -> waiting -> processing -> completed, with failed and expired
    reachable from any non-terminal state.
    """

    def __init__(
        self,
        store: ExchangeDatabase,
        observer: ChainObserver,
        oracle: PriceOracle,
        poll_interval_seconds: float = 30.0,
        watch_window_seconds: float = 1800.0,
        scheduler_tick_seconds: float = 5.0,
    ):
        self.store = store
        self.observer = observer
        self.oracle = oracle
        self.poll_interval_seconds = poll_interval_seconds
        self.watch_window_seconds = watch_window_seconds
        self.scheduler_tick_seconds = scheduler_tick_seconds
        self.state = OrchestratorState()
        self._tasks: dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def new_job(self, request_id: str) -> SettlementJob:
        now = utcnow()
        return SettlementJob(
            request_id=request_id,
            next_poll_at=now + timedelta(seconds=self.poll_interval_seconds),
            deadline=now + timedelta(seconds=self.watch_window_seconds),
        )

    def schedule(self, request_id: str) -> SettlementJob:
        """
        Persist a settlement job for `request_id`.

        A request that already has a job keeps it.
        """
        job = self.new_job(request_id)
        if not self.store.enqueue_job(job):
            existing = self.store.get_job(request_id)
            logger.debug("settlement_job_exists", request_id=request_id)
            if existing is not None:
                return existing
        logger.info("settlement_job_scheduled", request_id=request_id, deadline=job.deadline.isoformat())
        return job

    def _next_poll_at(self, job: SettlementJob) -> datetime:
        return min(utcnow() + timedelta(seconds=self.poll_interval_seconds), job.deadline)

    async def _db(self, fn: Callable[..., T], *args: Any) -> T:
        # Store calls run on a worker thread, off the event loop.
        return await asyncio.to_thread(fn, *args)

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def mark_waiting(self, request_id: str) -> bool:
        """Move a pending request to waiting once monitoring has begun."""
        request = await self._db(self.store.get_request, request_id)
        if request.status != STATUS_PENDING:
            return False
        return await self._db(self.store.update_status, request_id, STATUS_WAITING)

    async def poll(self, job: SettlementJob) -> str:
        """
        Run one payment check for a job and apply its outcome.

        Returns the request status afterwards.
        """
        request = await self._db(self.store.get_request, job.request_id)
        if request.is_terminal:
            await self._db(self.store.delete_job, request.id)
            return request.status

        now = utcnow()
        if now >= job.deadline:
            return await self._expire(request)

        if request.status == STATUS_PENDING:
            await self._db(self.store.update_status, request.id, STATUS_WAITING)

        remaining = (job.deadline - now).total_seconds()
        try:
            check = await asyncio.wait_for(
                self.observer.classify_payment(
                    request.payment_address, btc_to_sats(request.btc_amount)
                ),
                timeout=remaining,
            )
        except asyncio.TimeoutError:
            return await self._expire(request)
        except UpstreamError as e:
            logger.warning(
                "payment_check_failed",
                request_id=request.id,
                attempt=job.attempts + 1,
                error=str(e),
            )
            await self._db(self.store.reschedule_job, request.id, self._next_poll_at(job), str(e))
            return (await self._db(self.store.get_request, request.id)).status

        if check.classification is PaymentClassification.CONFIRMED:
            await self.finalize(request.id, check)
            return (await self._db(self.store.get_request, request.id)).status

        if check.classification is PaymentClassification.UNCONFIRMED:
            await self._db(self.store.update_status, request.id, STATUS_PROCESSING)
            logger.info(
                "payment_seen_unconfirmed",
                request_id=request.id,
                unconfirmed_sats=check.unconfirmed_sats,
                txid=check.txid,
            )

        await self._db(self.store.reschedule_job, request.id, self._next_poll_at(job))
        return (await self._db(self.store.get_request, request.id)).status

    async def finalize(self, request_id: str, check: PaymentCheck) -> bool:
        """
        Record a confirmed payment, re-price and complete the request.

        Returns False without side effects if the request is already
        terminal, so calling it twice settles once.
        """
        request = await self._db(self.store.get_request, request_id)
        if request.is_terminal:
            return False

        recorded = await self._db(
            self.store.record_payment,
            PaymentRecord(
                id=str(uuid.uuid4()),
                request_id=request.id,
                address=check.address,
                amount_sats=check.confirmed_sats,
                confirmations=check.confirmations,
                status=PaymentClassification.CONFIRMED.value,
                detected_at=utcnow(),
                txid=check.txid,
            ),
        )
        if not recorded:
            return False

        currency = request.output_currency
        try:
            converted = await self.oracle.convert_value(BTC, currency, request.btc_amount)
        except UpstreamError as e:
            await self._fail(request.id, f"re-pricing failed: {e}")
            return False
        final_output = quantize_amount(converted * (Decimal("1") - fee_rate_for(currency)))

        try:
            completed = await self._db(self.store.complete_request, request.id, final_output)
        except PersistenceError as e:
            await self._fail(request.id, f"could not persist final output: {e}")
            return False
        if not completed:
            return False

        self.state.completed += 1
        self._simulate_payout(request, final_output)
        return True

    def _simulate_payout(self, request: ExchangeRequest, final_output: Decimal) -> None:
        # Outbound transfers are not broadcast; the split is only logged.
        for output in request.output_addresses:
            logger.info(
                "payout_simulated",
                request_id=request.id,
                currency=request.output_currency,
                address=output.address,
                percentage=str(output.percentage),
                amount=str(quantize_amount(final_output * output.percentage / Decimal("100"))),
            )

    async def _expire(self, request: ExchangeRequest) -> str:
        if await self._db(self.store.update_status, request.id, STATUS_EXPIRED):
            self.state.expired += 1
            logger.info(
                "request_expired",
                request_id=request.id,
                payment_address=request.payment_address,
            )
        await self._db(self.store.delete_job, request.id)
        return (await self._db(self.store.get_request, request.id)).status

    async def _fail(self, request_id: str, reason: str) -> None:
        if await self._db(self.store.update_status, request_id, STATUS_FAILED):
            self.state.failed += 1
            logger.error("request_failed", request_id=request_id, reason=reason)
        await self._db(self.store.delete_job, request_id)

    # ------------------------------------------------------------------
    # Driving requests
    # ------------------------------------------------------------------

    async def settle(self, request_id: str) -> str:
        """
        Poll one request until it reaches a terminal state.

        The request moves to waiting before the first poll. Polls are
        sequential and spaced by the job's next poll time. Store failures
        are logged and retried after one poll interval.
        """
        try:
            await self.mark_waiting(request_id)
        except PersistenceError as e:
            logger.error("settlement_start_error", request_id=request_id, error=str(e))

        while True:
            try:
                job = await self._db(self.store.get_job, request_id)
                if job is None:
                    return (await self._db(self.store.get_request, request_id)).status

                delay = (job.next_poll_at - utcnow()).total_seconds()
                if delay > 0:
                    await asyncio.sleep(delay)

                status = await self.poll(job)
            except PersistenceError as e:
                logger.error("settlement_poll_error", request_id=request_id, error=str(e))
                await asyncio.sleep(self.poll_interval_seconds)
                continue

            if status in TERMINAL_STATUSES:
                logger.info("settlement_finished", request_id=request_id, status=status)
                return status

    async def _settle_task(self, request_id: str) -> None:
        try:
            await self.settle(request_id)
        except ExchangeError as e:
            logger.error("settlement_task_error", request_id=request_id, error=str(e))
        except Exception as e:
            # The job row survives; the next scheduler tick restarts it.
            logger.exception("settlement_task_crashed", request_id=request_id, error=str(e))

    def _start_task(self, request_id: str) -> None:
        task = asyncio.create_task(self._settle_task(request_id))
        self._tasks[request_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(request_id, None))

    def start_pending(self) -> int:
        """Start a task for every persisted job not already in flight."""
        started = 0
        for job in self.store.list_jobs():
            if job.request_id not in self._tasks:
                self._start_task(job.request_id)
                started += 1
        return started

    @property
    def in_flight(self) -> list[str]:
        return list(self._tasks)

    async def run(self) -> None:
        """Run the scheduler loop until stop() is called."""
        self.state.is_running = True
        logger.info(
            "settlement_scheduler_starting",
            poll_interval=self.poll_interval_seconds,
            watch_window=self.watch_window_seconds,
        )

        try:
            while self.state.is_running:
                try:
                    started = self.start_pending()
                    if started:
                        logger.info("settlement_tasks_started", count=started, in_flight=len(self._tasks))
                except PersistenceError as e:
                    logger.error("scheduler_tick_error", error=str(e))

                self.state.last_tick_time = utcnow()
                await asyncio.sleep(self.scheduler_tick_seconds)
        finally:
            tasks = list(self._tasks.values())
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("settlement_scheduler_stopped")

    async def run_once(self) -> dict[str, str]:
        """
        Poll every due job once.

        Returns the resulting status per request id.
        """
        results = {}
        jobs = await self._db(self.store.list_jobs, utcnow())
        for job in jobs:
            if job.request_id in self._tasks:
                continue
            try:
                results[job.request_id] = await self.poll(job)
            except Exception as e:
                logger.error("settlement_poll_error", request_id=job.request_id, error=str(e))

        self.state.last_tick_time = utcnow()
        return results

    def stop(self) -> None:
        """Stop the scheduler loop."""
        self.state.is_running = False
        logger.info("settlement_scheduler_stopping")

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    async def payment_status(self, request_id: str) -> PaymentStatus:
        """Live payment state of a request's deposit address."""
        request = await self._db(self.store.get_request, request_id)
        check = await self.observer.classify_payment(
            request.payment_address, btc_to_sats(request.btc_amount)
        )
        status = check.to_status()

        # The recorded payment stays authoritative once the request settled.
        records = await self._db(self.store.get_payment_records, request_id)
        if records and records[0].txid and status.payment_txid is None:
            status.payment_txid = records[0].txid
        return status

import asyncio
import contextlib
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

import httpx
from loguru import logger
from pydantic import ValidationError

from pipeline.partition import partition
from pipeline.state import BatchState, DispatchBatch, DispatchItem
from pipeline.workflow import build_batch_workflow
from tools.config import ResearchSettings
from tools.correlator import ResultCorrelator
from tools.csv_mapper import read_rows
from tools.errors import NotRetryableError, ProspectNotFoundError
from tools.progress import ProgressTracker
from tools.store import FAILED, CsvUpload, Owner, Prospect, ProspectInput, ProspectStore
from tools.webhook import ResearchWebhookClient, Sleep

_DONE = object()


@dataclass
class _StagingFailed:
    error: Exception


class ResearchPipeline:
    """
    Runs prospects through the research webhook.

    One instance is bound to one immutable settings value. CSV uploads are
    staged into a one-slot queue by a producer coroutine and dispatched by a
    single consumer, so each upload has at most one batch in flight and one
    batch waiting. Separate uploads run as separate tasks.
    """

    def __init__(self, store: ProspectStore, settings: ResearchSettings,
                 correlator: Optional[ResultCorrelator] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 sleep: Sleep = asyncio.sleep):
        self.store = store
        self.settings = settings
        self.correlator = correlator or ResultCorrelator(store)
        self.tracker = ProgressTracker(store)
        self.client = ResearchWebhookClient(settings, transport=transport, sleep=sleep)
        self.workflow = build_batch_workflow(self.client, self.correlator, self.tracker)
        self._sleep = sleep

    def with_settings(self, settings: ResearchSettings) -> "ResearchPipeline":
        """A pipeline sharing this one's store, correlator and transport, bound to new settings."""
        return ResearchPipeline(self.store, settings, correlator=self.correlator,
                                transport=self.client.transport, sleep=self._sleep)

    async def run_batch(self, batch: DispatchBatch) -> BatchState:
        """Run one dispatch cycle; batches whose rows were all skipped only count progress."""
        if not batch.items:
            if batch.upload_id is not None:
                await self.tracker.on_batch_resolved(batch.upload_id, 0, skipped=batch.skipped_rows)
            return {"batch": batch, "completed": [], "failed": [], "errors": []}
        return await self.workflow.ainvoke({"batch": batch, "errors": []})

    # Single prospects

    async def submit_prospect(self, data: ProspectInput, owner: Owner) -> Prospect:
        prospect = await self.store.create_prospect(data, owner)
        logger.info(f"Prospect {prospect.id} submitted by {owner.user_id}")
        return prospect

    async def dispatch_prospects(self, prospects: List[Prospect], batch_number: int = 1) -> BatchState:
        batch = DispatchBatch(
            number=batch_number,
            items=[DispatchItem.from_prospect(p) for p in prospects],
        )
        return await self.run_batch(batch)

    async def retry_prospect(self, prospect_id: int, owner: Owner) -> Prospect:
        """Move a failed prospect back to processing; the caller dispatches it as a batch of one."""
        prospect = await self.store.get_prospect(prospect_id, owner)
        if prospect is None:
            raise ProspectNotFoundError(f"Prospect {prospect_id} not found")
        if prospect.status != FAILED:
            raise NotRetryableError(f"Only failed prospects can be retried (status is {prospect.status})")
        if not await self.store.reset_for_retry(prospect_id):
            raise NotRetryableError(f"Prospect {prospect_id} is already being retried")

        logger.info(f"Prospect {prospect_id} reset to processing for retry by {owner.user_id}")
        return await self.store.get_prospect(prospect_id)

    # CSV uploads

    async def start_upload(self, raw: bytes, file_name: str, mapping: Dict[str, Optional[str]],
                           owner: Owner, start_row: int = 1, max_rows: Optional[int] = None,
                           has_headers: bool = True) -> Tuple[CsvUpload, List[Dict[str, str]]]:
        """Validate the file and mapping and register the upload. Nothing is dispatched yet."""
        rows = read_rows(raw, mapping, start_row=start_row, max_rows=max_rows, has_headers=has_headers)
        upload = await self.store.create_upload(owner, file_name, len(rows))
        return upload, rows

    async def run_upload(self, upload_id: int, owner: Owner, rows: List[Dict[str, Any]],
                         batch_size: Optional[int] = None) -> Optional[CsvUpload]:
        batch_size = self.settings.batch_size if batch_size is None else batch_size
        logger.info(f"Upload {upload_id}: processing {len(rows)} rows in batches of {batch_size}")

        queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        try:
            batches = partition(rows, batch_size)
            producer = asyncio.create_task(self._stage_batches(upload_id, owner, batches, queue))
            try:
                await self._drain(queue)
            finally:
                if not producer.done():
                    producer.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await producer
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"
            await self._abandon_queued(queue, f"Upload aborted before dispatch: {reason}")
            await self.tracker.on_pipeline_failed(upload_id, reason)

        upload = await self.store.get_upload(upload_id)
        if upload is not None:
            logger.info(
                f"Upload {upload_id} finished as {upload.status}: "
                f"{upload.processed_rows}/{upload.total_rows} rows, {upload.skipped_rows} skipped"
            )
        return upload

    async def _stage_batches(self, upload_id: int, owner: Owner,
                             batches: Iterable[List[Dict[str, Any]]], queue: asyncio.Queue) -> None:
        """Create records batch by batch and hand each batch to the consumer."""
        items: List[DispatchItem] = []
        try:
            for number, rows in enumerate(batches, start=1):
                items, skipped = [], 0
                for row in rows:
                    try:
                        data = ProspectInput.model_validate(row)
                    except ValidationError as e:
                        skipped += 1
                        problems = ", ".join(
                            f"{err['loc'][0] if err['loc'] else 'row'}: {err['msg']}" for err in e.errors()
                        )
                        logger.warning(f"Upload {upload_id}, batch {number}: skipping row ({problems})")
                        continue
                    prospect = await self.store.create_prospect(data, owner, upload_id=upload_id)
                    items.append(DispatchItem.from_prospect(prospect))

                await queue.put(DispatchBatch(number=number, items=items, skipped_rows=skipped,
                                              upload_id=upload_id))
                items = []
        except asyncio.CancelledError:
            if items:
                await self._abandon(items, "Upload aborted before dispatch")
            raise
        except Exception as e:
            logger.error(f"Upload {upload_id}: staging failed: {e}")
            if items:
                await self._abandon(items, f"Upload aborted before dispatch: {e}")
            await queue.put(_StagingFailed(e))
        else:
            await queue.put(_DONE)

    async def _abandon(self, items: List[DispatchItem], message: str) -> None:
        try:
            await self.correlator.fail_batch([item.record_id for item in items], message)
        except Exception as e:
            logger.error(f"Could not fail {len(items)} staged prospects: {e}")

    async def _abandon_queued(self, queue: asyncio.Queue, message: str) -> None:
        """Fail the records of batches staged into the queue but never dispatched."""
        while not queue.empty():
            item = queue.get_nowait()
            if isinstance(item, DispatchBatch) and item.items:
                await self._abandon(item.items, message)

    async def _drain(self, queue: asyncio.Queue) -> None:
        dispatched_any = False
        delay = self.settings.inter_batch_delay_seconds
        while True:
            item = await queue.get()
            if item is _DONE:
                return
            if isinstance(item, _StagingFailed):
                raise item.error

            if item.items and dispatched_any and delay:
                logger.info(f"Waiting {delay}s before batch {item.number}")
                await self._sleep(delay)
            try:
                await self.run_batch(item)
            except Exception as e:
                await self._abandon(item.items, f"Upload aborted during dispatch: {type(e).__name__}: {e}")
                raise
            dispatched_any = dispatched_any or bool(item.items)

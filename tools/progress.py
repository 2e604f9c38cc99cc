from typing import Optional

from loguru import logger

from tools.store import COMPLETED, FAILED, CsvUpload, ProspectStore


class ProgressTracker:
    """Keeps CSV upload counters and status in step with resolved batches."""

    def __init__(self, store: ProspectStore):
        self.store = store

    async def on_batch_resolved(self, upload_id: int, resolved_count: int, skipped: int = 0) -> CsvUpload:
        """
        Count a finished batch against its upload.

        Args:
            upload_id: Owning CSV upload
            resolved_count: Records of the batch that reached a terminal state
            skipped: Rows of the batch rejected by row validation

        Returns:
            The upload after the update
        """
        upload = await self.store.increment_upload_progress(
            upload_id, resolved_count + skipped, skipped=skipped
        )
        logger.info(f"Upload {upload_id}: {upload.processed_rows}/{upload.total_rows} rows processed")

        if upload.processed_rows >= upload.total_rows:
            finished = await self.store.set_upload_status(upload_id, COMPLETED)
            if finished:
                logger.info(
                    f"Upload {upload_id} completed ({finished.skipped_rows} rows skipped)"
                )
                return finished
        return upload

    async def on_pipeline_failed(self, upload_id: int, reason: str) -> Optional[CsvUpload]:
        logger.error(f"Upload {upload_id} aborted: {reason}")
        return await self.store.set_upload_status(upload_id, FAILED, error_message=reason)

from pipeline.state import BatchState
from tools.progress import ProgressTracker
from loguru import logger


def make_track(tracker: ProgressTracker):
    async def track(state: BatchState) -> BatchState:
        """Count the resolved batch against its CSV upload, if it has one."""
        batch = state["batch"]
        if batch.upload_id is None:
            return state

        resolved = len(batch.items)
        logger.info(f"Batch {batch.number} resolved: {resolved} prospects, {batch.skipped_rows} skipped")
        await tracker.on_batch_resolved(batch.upload_id, resolved, skipped=batch.skipped_rows)
        return state

    return track

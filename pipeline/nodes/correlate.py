from pipeline.state import BatchState
from tools.correlator import ResultCorrelator
from tools.errors import UnknownShapeError
from loguru import logger


def make_correlate(correlator: ResultCorrelator):
    async def correlate(state: BatchState) -> BatchState:
        """Apply the webhook response to every record of the batch."""
        batch = state["batch"]
        response = state["response"]
        logger.info(f"Starting correlation for batch {batch.number}")

        try:
            state["completed"] = await correlator.apply_batch_result(batch.record_ids, response.body)
            state["failed"] = []
            logger.info(f"Batch {batch.number}: {len(state['completed'])} prospects completed")
        except UnknownShapeError as e:
            error_msg = f"Unrecognised research response: {e}"
            logger.error(f"Batch {batch.number}: {error_msg}")
            state.setdefault("errors", []).append(error_msg)
            state["completed"] = []
            state["failed"] = await correlator.fail_batch(batch.record_ids, error_msg)

        return state

    return correlate

from pipeline.state import BatchState, DispatchFailure
from tools.correlator import ResultCorrelator
from loguru import logger


def make_fail(correlator: ResultCorrelator):
    async def fail(state: BatchState) -> BatchState:
        """Mark every record of a batch the webhook never answered as failed."""
        batch = state["batch"]
        failure = state.get("failure") or DispatchFailure(reason="Dispatch produced no outcome", attempts=0)
        logger.warning(f"Failing batch {batch.number}: {failure.reason}")

        state["completed"] = []
        state["failed"] = await correlator.fail_batch(batch.record_ids, failure.reason)
        return state

    return fail

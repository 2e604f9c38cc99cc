from pipeline.state import BatchState, ResearchResponse
from tools.webhook import ResearchWebhookClient
from loguru import logger


def make_dispatch(client: ResearchWebhookClient):
    async def dispatch(state: BatchState) -> BatchState:
        """Send the batch to the research webhook and record the outcome."""
        batch = state["batch"]
        logger.info(f"Starting dispatch for batch {batch.number} ({len(batch.items)} prospects)")

        result = await client.dispatch(batch)
        if isinstance(result, ResearchResponse):
            state["response"] = result
            state["failure"] = None
        else:
            state["response"] = None
            state["failure"] = result
            state.setdefault("errors", []).append(result.reason)

        return state

    return dispatch


def dispatch_outcome(state: BatchState) -> str:
    """Branch after dispatch: correlate a response, fail the batch otherwise."""
    return "correlate" if state.get("response") is not None else "fail"

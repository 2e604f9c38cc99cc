from langgraph.graph import StateGraph, START, END

from pipeline.state import BatchState
from pipeline.nodes.dispatch import make_dispatch, dispatch_outcome
from pipeline.nodes.correlate import make_correlate
from pipeline.nodes.fail import make_fail
from pipeline.nodes.track import make_track
from tools.correlator import ResultCorrelator
from tools.progress import ProgressTracker
from tools.webhook import ResearchWebhookClient


def build_batch_workflow(client: ResearchWebhookClient, correlator: ResultCorrelator,
                         tracker: ProgressTracker):
    """Build the dispatch-and-correlate cycle run once per dispatch batch."""
    workflow = StateGraph(BatchState)

    workflow.add_node("dispatch", make_dispatch(client))
    workflow.add_node("correlate", make_correlate(correlator))
    workflow.add_node("fail", make_fail(correlator))
    workflow.add_node("track", make_track(tracker))

    workflow.add_edge(START, "dispatch")
    workflow.add_conditional_edges(
        "dispatch",
        dispatch_outcome,
        {
            "correlate": "correlate",
            "fail": "fail"
        }
    )
    workflow.add_edge("correlate", "track")
    workflow.add_edge("fail", "track")
    workflow.add_edge("track", END)

    return workflow.compile()

import json
from typing import Any, Dict, List

import httpx

from tools.config import ResearchSettings
from tools.store import Owner, ProspectInput

WEBHOOK_URL = "https://research.example.com/webhook/prospects"

RESEARCH_OUTPUT = {
    "firstname": "Ada",
    "lastname": "Lovelace",
    "Industry": "SaaS",
    "Overall Prospect Summary": "Runs analytics engineering at a mid-size SaaS company",
}

OWNER = Owner(user_id="user-1", client_id="client-a")
OTHER_OWNER = Owner(user_id="user-2", client_id="client-b")


class RecordingSleep:
    """Async stand-in for asyncio.sleep that only records the requested delays."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float):
        self.calls.append(seconds)


class WebhookStub:
    """
    httpx.MockTransport handler replaying scripted outcomes.

    Each outcome is (status, json_body), an httpx.Response, or "timeout".
    The last outcome repeats once the script runs out.
    """

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes) or [(200, [{"output": RESEARCH_OUTPUT}])]
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, str) and outcome == "timeout":
            raise httpx.ReadTimeout("timed out", request=request)
        if isinstance(outcome, httpx.Response):
            return outcome
        status, body = outcome
        return httpx.Response(status, json=body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def payloads(self) -> List[List[Dict[str, Any]]]:
        return [json.loads(request.content) for request in self.requests]


def make_settings(**overrides) -> ResearchSettings:
    values = {
        "webhook_url": WEBHOOK_URL,
        "webhook_timeout_seconds": 30,
        "max_retries": 1,
        "retry_delay_seconds": 1,
        "batch_size": 10,
        "inter_batch_delay_seconds": 0,
    }
    values.update(overrides)
    return ResearchSettings(**values)


def prospect_row(i: int, **overrides) -> Dict[str, str]:
    row = {
        "first_name": f"First{i}",
        "last_name": f"Last{i}",
        "company": f"Company {i}",
        "title": "Head of Data",
        "email": f"person{i}@example.com",
        "linkedin_url": "",
    }
    row.update(overrides)
    return row


def prospect_input(i: int = 1, **overrides) -> ProspectInput:
    return ProspectInput(**prospect_row(i, **overrides))

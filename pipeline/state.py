from dataclasses import dataclass, field
from typing import TypedDict, Optional, List, Any

from tools.store import Prospect


@dataclass(frozen=True)
class DispatchItem:
    """One record inside a dispatch batch: its id plus the identity sent to the webhook."""
    record_id: int
    correlation_id: str
    first_name: str
    last_name: str
    company: str
    title: str
    email: str
    linkedin_url: str = ""

    @classmethod
    def from_prospect(cls, prospect: Prospect) -> "DispatchItem":
        return cls(
            record_id=prospect.id,
            correlation_id=prospect.correlation_id,
            first_name=prospect.first_name,
            last_name=prospect.last_name,
            company=prospect.company,
            title=prospect.title,
            email=prospect.email,
            linkedin_url=prospect.linkedin_url or "",
        )


@dataclass
class DispatchBatch:
    """Records sent together in one webhook call. Never persisted."""
    number: int
    items: List[DispatchItem]
    skipped_rows: int = 0
    upload_id: Optional[int] = None

    @property
    def record_ids(self) -> List[int]:
        return [item.record_id for item in self.items]


@dataclass
class ResearchResponse:
    status_code: int
    body: Any
    attempts: int


@dataclass
class DispatchFailure:
    reason: str
    attempts: int
    status_code: Optional[int] = None


class BatchState(TypedDict, total=False):
    """State shape for one dispatch-and-correlate cycle."""
    batch: DispatchBatch
    response: Optional[ResearchResponse]   # set when the webhook answered 2xx
    failure: Optional[DispatchFailure]     # set when dispatch gave up
    completed: List[int]                   # record ids moved to completed
    failed: List[int]                      # record ids moved to failed
    errors: List[str]

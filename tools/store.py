import asyncio
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator

PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
STATUSES = (PROCESSING, COMPLETED, FAILED)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Owner:
    """The user (and optional tenant) a record belongs to."""
    user_id: str
    client_id: Optional[str] = None


class ProspectInput(BaseModel):
    """Identity fields of a prospect, as entered by hand or mapped from a CSV row."""

    model_config = ConfigDict(str_strip_whitespace=True)

    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    company: str = Field(min_length=1)
    title: str = Field(min_length=1)
    email: str
    linkedin_url: str = ""

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        if not EMAIL_RE.match(value):
            raise ValueError("Valid email is required")
        return value

    @field_validator("linkedin_url", mode="before")
    @classmethod
    def _blank_linkedin(cls, value: Any) -> Any:
        return value or ""

    @field_validator("linkedin_url")
    @classmethod
    def _check_linkedin(cls, value: str) -> str:
        if value and not value.lower().startswith(("http://", "https://")):
            raise ValueError("LinkedIn URL must be an http(s) URL")
        return value


class Prospect(ProspectInput):
    id: int
    user_id: str
    client_id: Optional[str] = None
    upload_id: Optional[int] = None
    status: str = PROCESSING
    research_result: Optional[Any] = None
    error_message: Optional[str] = None
    correlation_id: str
    created_at: datetime
    updated_at: datetime


class CsvUpload(BaseModel):
    id: int
    user_id: str
    client_id: Optional[str] = None
    file_name: str
    total_rows: int
    processed_rows: int = 0
    skipped_rows: int = 0
    status: str = PROCESSING
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime


def _owned(item, owner: Optional[Owner]) -> bool:
    if owner is None:
        return True
    return item.user_id == owner.user_id and item.client_id == owner.client_id


class ProspectStore:
    """
    In-process record store for prospects and CSV uploads.

    Every mutation runs under one asyncio lock, so each write is atomic with
    respect to concurrent pipelines and callbacks. Reads return copies; callers
    never hold a live reference to stored state.
    """

    def __init__(self):
        self._prospects: Dict[int, Prospect] = {}
        self._uploads: Dict[int, CsvUpload] = {}
        self._next_prospect_id = 1
        self._next_upload_id = 1
        self._lock = asyncio.Lock()

    # Prospects

    async def create_prospect(self, data: ProspectInput, owner: Owner,
                              upload_id: Optional[int] = None) -> Prospect:
        async with self._lock:
            now = utcnow()
            prospect = Prospect(
                **data.model_dump(),
                id=self._next_prospect_id,
                user_id=owner.user_id,
                client_id=owner.client_id,
                upload_id=upload_id,
                status=PROCESSING,
                correlation_id=uuid.uuid4().hex,
                created_at=now,
                updated_at=now,
            )
            self._prospects[prospect.id] = prospect
            self._next_prospect_id += 1
        logger.debug(f"Created prospect {prospect.id} for user {owner.user_id}")
        return prospect.model_copy(deep=True)

    async def get_prospect(self, prospect_id: int, owner: Optional[Owner] = None) -> Optional[Prospect]:
        prospect = self._prospects.get(prospect_id)
        if prospect is None or not _owned(prospect, owner):
            return None
        return prospect.model_copy(deep=True)

    async def list_prospects(self, owner: Owner, status: Optional[str] = None) -> List[Prospect]:
        return [
            p.model_copy(deep=True)
            for p in sorted(self._prospects.values(), key=lambda p: p.id)
            if _owned(p, owner) and (status is None or p.status == status)
        ]

    async def list_processing(self) -> List[Prospect]:
        """All processing prospects across every tenant, oldest first."""
        return [
            p.model_copy(deep=True)
            for p in sorted(self._prospects.values(), key=lambda p: p.id)
            if p.status == PROCESSING
        ]

    async def mark_completed(self, prospect_id: int, result: Any) -> bool:
        return await self._transition(prospect_id, PROCESSING, COMPLETED,
                                      research_result=result, error_message=None)

    async def mark_failed(self, prospect_id: int, message: str) -> bool:
        return await self._transition(prospect_id, PROCESSING, FAILED,
                                      research_result=None, error_message=message)

    async def reset_for_retry(self, prospect_id: int) -> bool:
        return await self._transition(prospect_id, FAILED, PROCESSING,
                                      research_result=None, error_message=None)

    async def _transition(self, prospect_id: int, expected: str, target: str, **fields) -> bool:
        async with self._lock:
            prospect = self._prospects.get(prospect_id)
            if prospect is None:
                logger.warning(f"Prospect {prospect_id} not found for {expected} -> {target}")
                return False
            if prospect.status != expected:
                logger.debug(
                    f"Prospect {prospect_id} is {prospect.status}, skipping {expected} -> {target}"
                )
                return False
            self._prospects[prospect_id] = prospect.model_copy(
                update={"status": target, "updated_at": utcnow(), **fields}
            )
        logger.info(f"Prospect {prospect_id}: {expected} -> {target}")
        return True

    async def stale_processing(self, max_age_seconds: int, now: Optional[datetime] = None) -> List[Prospect]:
        cutoff = (now or utcnow()) - timedelta(seconds=max_age_seconds)
        return [p for p in await self.list_processing() if p.updated_at < cutoff]

    async def count_by_status(self) -> Dict[str, int]:
        counts = {status: 0 for status in STATUSES}
        for prospect in self._prospects.values():
            counts[prospect.status] = counts.get(prospect.status, 0) + 1
        return counts

    # CSV uploads

    async def create_upload(self, owner: Owner, file_name: str, total_rows: int) -> CsvUpload:
        async with self._lock:
            now = utcnow()
            upload = CsvUpload(
                id=self._next_upload_id,
                user_id=owner.user_id,
                client_id=owner.client_id,
                file_name=file_name,
                total_rows=total_rows,
                created_at=now,
                updated_at=now,
            )
            self._uploads[upload.id] = upload
            self._next_upload_id += 1
        logger.info(f"Created CSV upload {upload.id} ({file_name}, {total_rows} rows)")
        return upload.model_copy()

    async def get_upload(self, upload_id: int, owner: Optional[Owner] = None) -> Optional[CsvUpload]:
        upload = self._uploads.get(upload_id)
        if upload is None or not _owned(upload, owner):
            return None
        return upload.model_copy()

    async def increment_upload_progress(self, upload_id: int, count: int, skipped: int = 0) -> CsvUpload:
        async with self._lock:
            upload = self._uploads[upload_id]
            processed = min(upload.total_rows, upload.processed_rows + max(count, 0))
            upload = upload.model_copy(update={
                "processed_rows": processed,
                "skipped_rows": upload.skipped_rows + max(skipped, 0),
                "updated_at": utcnow(),
            })
            self._uploads[upload_id] = upload
        return upload.model_copy()

    async def set_upload_status(self, upload_id: int, status: str,
                                error_message: Optional[str] = None) -> Optional[CsvUpload]:
        """Move a processing upload to a terminal status; terminal uploads are left alone."""
        async with self._lock:
            upload = self._uploads[upload_id]
            if upload.status != PROCESSING:
                return None
            upload = upload.model_copy(update={
                "status": status,
                "error_message": error_message,
                "updated_at": utcnow(),
            })
            self._uploads[upload_id] = upload
        logger.info(f"CSV upload {upload_id} -> {status}")
        return upload.model_copy()

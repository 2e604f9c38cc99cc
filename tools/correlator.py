from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from loguru import logger

from tools.errors import UnknownShapeError
from tools.store import Prospect, ProspectStore

CORRELATION_KEYS = ("Correlation Id", "correlationId", "correlation_id")
FIRST_NAME_KEYS = ("firstName", "firstname", "first_name", "First Name")
LAST_NAME_KEYS = ("lastName", "lastname", "last_name", "Last Name")
EMAIL_KEYS = ("email", "EMail", "Email")


@dataclass(frozen=True)
class DecodedResult:
    shape: str
    payload: Any


@dataclass(frozen=True)
class CallbackIdentity:
    correlation_id: Optional[str] = None
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


def _unwrap_object(obj: Dict[str, Any]) -> Optional[DecodedResult]:
    response = obj.get("response")
    if isinstance(response, dict) and isinstance(response.get("body"), dict):
        body = response["body"]
        if "output" in body:
            return DecodedResult("envelope", body["output"])
        return DecodedResult("envelope_body", body)
    if "output" in obj:
        return DecodedResult("output", obj["output"])
    return None


def decode_result(raw: Any) -> DecodedResult:
    """
    Classify a research payload and strip its wrapper.

    Known shapes: {response:{body:{output:X}}}, {response:{body:X}}, {output:X},
    a bare object, any of the wrappers as the first element of an array, or an
    array of objects kept whole. Everything else raises UnknownShapeError.
    """
    if isinstance(raw, dict):
        return _unwrap_object(raw) or DecodedResult("bare", raw)

    if isinstance(raw, list):
        if not raw:
            raise UnknownShapeError("Research payload is an empty array")
        if not all(isinstance(item, dict) for item in raw):
            raise UnknownShapeError("Research payload array contains non-object items")
        wrapped = _unwrap_object(raw[0])
        if wrapped:
            return DecodedResult(f"array_{wrapped.shape}", wrapped.payload)
        return DecodedResult("array", raw)

    raise UnknownShapeError(f"Research payload of type {type(raw).__name__} is not recognised")


def _first_value(sources: List[Dict[str, Any]], keys) -> Optional[str]:
    for source in sources:
        for key in keys:
            value = source.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None


def extract_identity(item: Dict[str, Any], payload: Any) -> CallbackIdentity:
    sources = [item]
    response = item.get("response")
    if isinstance(response, dict) and isinstance(response.get("body"), dict):
        sources.append(response["body"])
    if isinstance(item.get("output"), dict):
        sources.append(item["output"])
    if isinstance(payload, dict) and payload is not item:
        sources.append(payload)
    return CallbackIdentity(
        correlation_id=_first_value(sources, CORRELATION_KEYS),
        email=_first_value(sources, EMAIL_KEYS),
        first_name=_first_value(sources, FIRST_NAME_KEYS),
        last_name=_first_value(sources, LAST_NAME_KEYS),
    )


class ResultCorrelator:
    """Maps research results back onto the prospects they belong to."""

    def __init__(self, store: ProspectStore):
        self.store = store
        self.stats: Counter = Counter()

    async def apply_batch_result(self, record_ids: List[int], raw: Any) -> List[int]:
        """
        Complete every record of a dispatched batch with the same decoded payload.

        Raises:
            UnknownShapeError: if the response body matches no known shape
        """
        decoded = decode_result(raw)
        logger.info(f"Decoded research response as '{decoded.shape}' for {len(record_ids)} prospects")
        completed = []
        for record_id in record_ids:
            if await self.store.mark_completed(record_id, decoded.payload):
                completed.append(record_id)
        self.stats["sync_completed"] += len(completed)
        return completed

    async def fail_batch(self, record_ids: List[int], message: str) -> List[int]:
        failed = []
        for record_id in record_ids:
            if await self.store.mark_failed(record_id, message):
                failed.append(record_id)
        self.stats["dispatch_failed"] += len(failed)
        return failed

    async def correlate_callback(self, raw: Any) -> List[int]:
        """
        Apply an out-of-band research callback.

        Unmatched or unrecognised results are logged and dropped; nothing is
        raised to the caller. Returns the ids of completed prospects.
        """
        if isinstance(raw, list):
            items = raw
        else:
            items = [raw]

        completed = []
        for item in items:
            if not isinstance(item, dict):
                logger.warning(f"Discarding callback item of type {type(item).__name__}")
                self.stats["discarded"] += 1
                continue
            try:
                decoded = decode_result(item)
            except UnknownShapeError as e:
                logger.warning(f"Discarding callback item: {e}")
                self.stats["discarded"] += 1
                continue

            identity = extract_identity(item, decoded.payload)
            prospect = await self._match(identity)
            if prospect is None:
                logger.warning(f"No processing prospect matches callback identity {identity}, discarding")
                self.stats["discarded"] += 1
                continue

            if await self.store.mark_completed(prospect.id, decoded.payload):
                completed.append(prospect.id)
            else:
                self.stats["already_resolved"] += 1
        return completed

    async def _match(self, identity: CallbackIdentity) -> Optional[Prospect]:
        candidates = await self.store.list_processing()

        if identity.correlation_id:
            for prospect in candidates:
                if prospect.correlation_id == identity.correlation_id:
                    self.stats["token_matches"] += 1
                    return prospect
            return None

        logger.warning("Callback carries no correlation id, falling back to identity matching")
        self.stats["fallback_lookups"] += 1

        if identity.email:
            email = identity.email.lower()
            for prospect in candidates:
                if prospect.email.lower() == email:
                    self.stats["fallback_matches"] += 1
                    return prospect

        if identity.first_name and identity.last_name:
            first = identity.first_name.lower()
            last = identity.last_name.lower()
            for prospect in candidates:
                if first in prospect.first_name.lower() and last in prospect.last_name.lower():
                    self.stats["fallback_matches"] += 1
                    return prospect
        return None

    async def expire_stale(self, max_age_seconds: int, now: Optional[datetime] = None) -> List[int]:
        """Fail prospects that have waited in processing longer than max_age_seconds."""
        expired = []
        for prospect in await self.store.stale_processing(max_age_seconds, now=now):
            message = f"No research result received within {max_age_seconds}s"
            if await self.store.mark_failed(prospect.id, message):
                expired.append(prospect.id)
        if expired:
            logger.warning(f"Expired {len(expired)} stale processing prospects: {expired}")
        self.stats["expired"] += len(expired)
        return expired

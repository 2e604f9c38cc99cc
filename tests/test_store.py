import asyncio

import pytest
from pydantic import ValidationError

from helpers import OWNER, OTHER_OWNER, prospect_input, prospect_row
from tools.progress import ProgressTracker
from tools.store import COMPLETED, FAILED, PROCESSING, ProspectInput, ProspectStore


class TestProspectInput:
    """Test prospect field validation."""

    def test_valid_input_is_trimmed(self):
        """Test surrounding whitespace is stripped."""
        data = ProspectInput(**prospect_row(1, first_name="  Ada ", email=" ada@engines.io "))

        assert data.first_name == "Ada"
        assert data.email == "ada@engines.io"
        assert data.linkedin_url == ""

    def test_missing_fields_rejected(self):
        """Test blank required fields fail validation."""
        with pytest.raises(ValidationError):
            ProspectInput(**prospect_row(1, company="  "))
        with pytest.raises(ValidationError):
            ProspectInput(**{k: v for k, v in prospect_row(1).items() if k != "title"})

    def test_invalid_email_rejected(self):
        """Test malformed email addresses fail validation."""
        with pytest.raises(ValidationError, match="Valid email is required"):
            ProspectInput(**prospect_row(1, email="not-an-email"))

    def test_linkedin_optional_but_must_be_url(self):
        """Test LinkedIn may be blank or None but not arbitrary text."""
        assert ProspectInput(**prospect_row(1, linkedin_url=None)).linkedin_url == ""
        assert ProspectInput(**prospect_row(1, linkedin_url="https://linkedin.com/in/ada")).linkedin_url

        with pytest.raises(ValidationError):
            ProspectInput(**prospect_row(1, linkedin_url="linkedin.com/in/ada"))


class TestProspectStore:
    """Test record lifecycle and ownership scoping."""

    def setup_method(self):
        self.store = ProspectStore()

    @pytest.mark.asyncio
    async def test_create_starts_processing(self):
        """Test new records are processing with a unique correlation token."""
        first = await self.store.create_prospect(prospect_input(1), OWNER)
        second = await self.store.create_prospect(prospect_input(2), OWNER, upload_id=7)

        assert first.id == 1 and second.id == 2
        assert first.status == PROCESSING
        assert first.correlation_id != second.correlation_id
        assert second.upload_id == 7
        assert first.user_id == "user-1" and first.client_id == "client-a"

    @pytest.mark.asyncio
    async def test_terminal_states_are_final(self):
        """Test completed and failed records ignore further transitions."""
        prospect = await self.store.create_prospect(prospect_input(1), OWNER)

        assert await self.store.mark_completed(prospect.id, {"summary": "done"})
        assert not await self.store.mark_failed(prospect.id, "late failure")
        assert not await self.store.mark_completed(prospect.id, {"summary": "again"})
        assert not await self.store.reset_for_retry(prospect.id)

        stored = await self.store.get_prospect(prospect.id)
        assert stored.status == COMPLETED
        assert stored.research_result == {"summary": "done"}
        assert stored.error_message is None

    @pytest.mark.asyncio
    async def test_failed_record_can_be_reset_once(self):
        """Test only failed records go back to processing, and only once."""
        prospect = await self.store.create_prospect(prospect_input(1), OWNER)
        await self.store.mark_failed(prospect.id, "timed out")

        results = await asyncio.gather(
            self.store.reset_for_retry(prospect.id),
            self.store.reset_for_retry(prospect.id),
        )

        assert sorted(results) == [False, True]
        stored = await self.store.get_prospect(prospect.id)
        assert stored.status == PROCESSING
        assert stored.error_message is None
        assert stored.correlation_id == prospect.correlation_id

    @pytest.mark.asyncio
    async def test_unknown_record_transitions(self):
        """Test transitions on missing records are no-ops."""
        assert not await self.store.mark_completed(999, {})
        assert not await self.store.mark_failed(999, "x")

    @pytest.mark.asyncio
    async def test_reads_are_copies(self):
        """Test mutating a returned record does not touch the store."""
        prospect = await self.store.create_prospect(prospect_input(1), OWNER)
        prospect.status = FAILED

        assert (await self.store.get_prospect(prospect.id)).status == PROCESSING

    @pytest.mark.asyncio
    async def test_owner_scoping(self):
        """Test reads are limited to the owning user and tenant."""
        mine = await self.store.create_prospect(prospect_input(1), OWNER)
        await self.store.create_prospect(prospect_input(2), OTHER_OWNER)

        assert await self.store.get_prospect(mine.id, OTHER_OWNER) is None
        assert [p.id for p in await self.store.list_prospects(OWNER)] == [mine.id]
        assert len(await self.store.list_processing()) == 2

    @pytest.mark.asyncio
    async def test_list_by_status_and_counts(self):
        """Test status filtering and status counts."""
        for i in range(1, 4):
            await self.store.create_prospect(prospect_input(i), OWNER)
        await self.store.mark_completed(1, {"ok": True})
        await self.store.mark_failed(2, "boom")

        failed = await self.store.list_prospects(OWNER, status=FAILED)

        assert [p.id for p in failed] == [2]
        assert await self.store.count_by_status() == {PROCESSING: 1, COMPLETED: 1, FAILED: 1}


class TestProgressTracker:
    """Test upload progress counting."""

    def setup_method(self):
        self.store = ProspectStore()
        self.tracker = ProgressTracker(self.store)

    @pytest.mark.asyncio
    async def test_upload_completes_when_all_rows_resolved(self):
        """Test the upload completes once processed rows reach the total."""
        upload = await self.store.create_upload(OWNER, "leads.csv", 25)

        after_first = await self.tracker.on_batch_resolved(upload.id, 10)
        assert after_first.processed_rows == 10
        assert after_first.status == PROCESSING

        await self.tracker.on_batch_resolved(upload.id, 10)
        finished = await self.tracker.on_batch_resolved(upload.id, 3, skipped=2)

        assert finished.processed_rows == 25
        assert finished.skipped_rows == 2
        assert finished.status == COMPLETED

    @pytest.mark.asyncio
    async def test_processed_rows_never_exceed_total(self):
        """Test over-counting is clamped to the upload size."""
        upload = await self.store.create_upload(OWNER, "leads.csv", 5)

        finished = await self.tracker.on_batch_resolved(upload.id, 8)

        assert finished.processed_rows == 5
        assert finished.status == COMPLETED

    @pytest.mark.asyncio
    async def test_pipeline_failure(self):
        """Test an aborted upload is failed with the reason."""
        upload = await self.store.create_upload(OWNER, "leads.csv", 5)

        failed = await self.tracker.on_pipeline_failed(upload.id, "RuntimeError: disk full")

        assert failed.status == FAILED
        assert failed.error_message == "RuntimeError: disk full"

    @pytest.mark.asyncio
    async def test_completed_upload_is_not_failed_later(self):
        """Test a finished upload keeps its terminal status."""
        upload = await self.store.create_upload(OWNER, "leads.csv", 1)
        await self.tracker.on_batch_resolved(upload.id, 1)

        assert await self.tracker.on_pipeline_failed(upload.id, "late error") is None
        assert (await self.store.get_upload(upload.id)).status == COMPLETED

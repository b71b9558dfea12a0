"""Unit tests for RecrawlCoordinator."""

import asyncio

import pytest

from clipscout.cache.cache_key import CacheKey
from clipscout.jobs.job_models import JobKind, JobState
from clipscout.main.exceptions import (
    ErrorCode,
    InvalidInputError,
    RecrawlDisabledError,
    RecrawlRateLimitedError,
)
from clipscout.recrawl.recrawl_service import RecrawlCoordinator

KEY = CacheKey.of("tiktok", "cats")


async def _finish_recrawl(pipeline, job_id):
    """Claim and complete the recrawl job without running a scraper."""
    job = await pipeline.queue.claim("worker-x")
    assert job is not None and job.id == job_id
    await pipeline.queue.complete(job, [])


class TestReportLinkExpired:
    @pytest.mark.asyncio
    async def test_stale_entry_is_recrawled(self, pipeline):
        await pipeline.cache.set(KEY, [{"id": "old"}])
        pipeline.clock.advance(1)
        normal_id = await pipeline.queue.enqueue(KEY, JobKind.NORMAL)

        ticket = await pipeline.recrawl.report_link_expired("tiktok", "cats")

        assert ticket.already_in_progress is False
        assert ticket.cache_key == "tiktok:cats:all"
        assert ticket.superseded_job_ids == [normal_id]
        assert await pipeline.cache.get(KEY) is None
        assert await pipeline.lock.holder(KEY) == ticket.job_id
        superseded = await pipeline.queue.get(normal_id)
        assert superseded.state == JobState.CANCELLED

        processed = await pipeline.worker_pool().process_next()

        assert processed is True
        job = await pipeline.queue.get(ticket.job_id)
        assert job.kind == JobKind.RECRAWL
        assert job.state == JobState.COMPLETED
        assert [item["id"] for item in await pipeline.cache.get(KEY)] == ["v1", "v2"]
        assert await pipeline.lock.holder(KEY) is None

    @pytest.mark.asyncio
    async def test_concurrent_reports_enqueue_one_job(self, pipeline):
        tickets = await asyncio.gather(
            *(pipeline.recrawl.report_link_expired("tiktok", "cats") for _ in range(5))
        )

        owners = [ticket for ticket in tickets if not ticket.already_in_progress]
        assert len(owners) == 1
        assert {ticket.job_id for ticket in tickets} == {owners[0].job_id}
        deferred = [ticket for ticket in tickets if ticket.already_in_progress]
        assert all(ticket.code == ErrorCode.LOCK_CONTENDED for ticket in deferred)
        assert len(await pipeline.queue.jobs_for_key(KEY)) == 1

    @pytest.mark.asyncio
    async def test_second_report_defers_to_running_recrawl(self, pipeline):
        first = await pipeline.recrawl.report_link_expired("tiktok", "cats")
        await pipeline.queue.claim("worker-x")

        second = await pipeline.recrawl.report_link_expired("TikTok", "  Cats ")

        assert second.already_in_progress is True
        assert second.job_id == first.job_id

    @pytest.mark.asyncio
    async def test_lock_of_finished_job_is_cleared(self, pipeline):
        first = await pipeline.recrawl.report_link_expired("tiktok", "cats")
        await _finish_recrawl(pipeline, first.job_id)
        assert await pipeline.lock.holder(KEY) == first.job_id

        second = await pipeline.recrawl.report_link_expired("tiktok", "cats")

        assert second.already_in_progress is False
        assert second.job_id != first.job_id
        assert await pipeline.lock.holder(KEY) == second.job_id

    @pytest.mark.asyncio
    async def test_rate_limit_per_query_window(self, pipeline):
        for _ in range(3):
            ticket = await pipeline.recrawl.report_link_expired("tiktok", "cats")
            await _finish_recrawl(pipeline, ticket.job_id)

        with pytest.raises(RecrawlRateLimitedError) as exc_info:
            await pipeline.recrawl.report_link_expired("tiktok", "cats", "7days")

        assert exc_info.value.code == ErrorCode.RECRAWL_RATE_LIMITED
        assert 0 < exc_info.value.retry_after_seconds <= 3600
        # The denied attempt must not keep the lock
        assert await pipeline.lock.holder(CacheKey.of("tiktok", "cats", "7days")) is None

    @pytest.mark.asyncio
    async def test_rate_window_expires(self, pipeline):
        for _ in range(3):
            ticket = await pipeline.recrawl.report_link_expired("tiktok", "cats")
            await _finish_recrawl(pipeline, ticket.job_id)

        pipeline.clock.advance(3601)
        ticket = await pipeline.recrawl.report_link_expired("tiktok", "cats")

        assert ticket.already_in_progress is False

    @pytest.mark.asyncio
    async def test_invalid_search_is_rejected_without_side_effects(self, pipeline):
        with pytest.raises(InvalidInputError):
            await pipeline.recrawl.report_link_expired("tiktok", "   ")

        assert await pipeline.queue.waiting_count() == 0

    @pytest.mark.asyncio
    async def test_disabled_coordinator_refuses(self, pipeline):
        recrawl = RecrawlCoordinator(
            pipeline.queue,
            pipeline.cache,
            pipeline.lock,
            pipeline.rate_limiter,
            pipeline.keys,
            enabled=False,
            rate_limit_per_window=3,
            rate_window_seconds=3600,
        )

        with pytest.raises(RecrawlDisabledError):
            await recrawl.report_link_expired("tiktok", "cats")

        assert await pipeline.queue.waiting_count() == 0


class TestRecrawlAdministration:
    @pytest.mark.asyncio
    async def test_state_reports_lock_and_rate_usage(self, pipeline):
        ticket = await pipeline.recrawl.report_link_expired("tiktok", "cats")

        state = await pipeline.recrawl.recrawl_state("tiktok", "cats")

        assert state.lock_holder == ticket.job_id
        assert 0 < state.lock_ttl_seconds <= 300
        assert state.rate_count == 1
        assert state.rate_limit == 3

    @pytest.mark.asyncio
    async def test_clear_lock_and_reset_rate_limit(self, pipeline):
        await pipeline.recrawl.report_link_expired("tiktok", "cats")

        assert await pipeline.recrawl.clear_lock(KEY) is True
        assert await pipeline.recrawl.reset_rate_limit(KEY) is True

        state = await pipeline.recrawl.recrawl_state("tiktok", "cats")
        assert state.lock_holder is None
        assert state.rate_count == 0

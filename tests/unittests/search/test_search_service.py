"""Unit tests for SearchService and search validation."""

from unittest.mock import AsyncMock, patch

import pytest

from clipscout.cache.cache_key import CacheKey
from clipscout.jobs.job_models import JobKind, JobState
from clipscout.jobs.status_reader import JobStatusReader
from clipscout.main.exceptions import InvalidInputError, JobNotFoundError, StoreUnavailableError
from clipscout.search.search_service import SearchService, estimate_wait_seconds
from clipscout.search.validation import MAX_QUERY_LENGTH, build_search_key


class TestBuildSearchKey:
    def test_normalizes_and_defaults_date_range(self):
        key = build_search_key(" TikTok ", "  Funny Cats ")

        assert str(key) == "tiktok:funny cats:all"

    @pytest.mark.parametrize(
        "platform, query, date_range",
        [
            ("vimeo", "cats", None),
            ("tiktok", "   ", None),
            ("tiktok", "x" * (MAX_QUERY_LENGTH + 1), None),
            ("tiktok", "cats", "fortnight"),
            (None, "cats", None),
        ],
    )
    def test_rejects_malformed_searches(self, platform, query, date_range):
        with pytest.raises(InvalidInputError):
            build_search_key(platform, query, date_range)


class TestEstimateWait:
    @pytest.mark.parametrize("waiting, expected", [(0, 15), (7, 15), (8, 16), (50, 100)])
    def test_has_floor(self, waiting, expected):
        assert estimate_wait_seconds(waiting) == expected


class TestEnqueueSearch:
    @pytest.mark.asyncio
    async def test_miss_enqueues_normal_job(self, pipeline):
        response = await pipeline.search.enqueue_search("tiktok", "cats")

        assert response.cached is False
        assert response.state == JobState.WAITING
        assert response.queue_position == 0
        assert response.estimated_wait_seconds == 15
        job = await pipeline.queue.get(response.job_id)
        assert job.kind == JobKind.NORMAL
        assert str(job.cache_key) == "tiktok:cats:all"

    @pytest.mark.asyncio
    async def test_estimate_grows_with_backlog(self, pipeline):
        for index in range(10):
            await pipeline.search.enqueue_search("tiktok", f"query {index}")
            pipeline.clock.advance(1)

        response = await pipeline.search.enqueue_search("tiktok", "late")

        assert response.queue_position == 10
        assert response.estimated_wait_seconds == 22

    @pytest.mark.asyncio
    async def test_hit_is_served_without_a_job(self, pipeline):
        await pipeline.cache.set(CacheKey.of("tiktok", "cats"), [{"id": "v9"}])

        response = await pipeline.search.enqueue_search("TIKTOK", "Cats")

        assert response.cached is True
        assert response.state == JobState.COMPLETED
        assert response.result == [{"id": "v9"}]
        assert response.job_id is None
        assert await pipeline.queue.waiting_count() == 0

    @pytest.mark.asyncio
    async def test_invalid_search_enqueues_nothing(self, pipeline):
        with pytest.raises(InvalidInputError):
            await pipeline.search.enqueue_search("vimeo", "cats")

        assert await pipeline.queue.waiting_count() == 0

    @pytest.mark.asyncio
    async def test_miss_then_poll_then_hit(self, pipeline):
        first = await pipeline.search.enqueue_search("tiktok", "cats")

        await pipeline.worker_pool().process_next()
        status = await pipeline.search.poll_status(first.job_id)
        second = await pipeline.search.enqueue_search("tiktok", "cats")

        assert status.state == JobState.COMPLETED
        assert status.progress == 100
        assert [item["id"] for item in status.result] == ["v1", "v2"]
        assert second.cached is True
        assert second.result == status.result
        assert pipeline.scraper.calls == 1


class TestPollAndCancel:
    @pytest.mark.asyncio
    async def test_unknown_job(self, pipeline):
        with pytest.raises(JobNotFoundError):
            await pipeline.search.poll_status("missing")

    @pytest.mark.asyncio
    async def test_cancel_waiting_job(self, pipeline):
        response = await pipeline.search.enqueue_search("tiktok", "cats")

        assert await pipeline.search.cancel(response.job_id) is True

        status = await pipeline.search.poll_status(response.job_id)
        assert status.state == JobState.CANCELLED
        assert status.error.code == "CANCELLED"
        assert status.error.message == "Cancelled by caller"
        assert await pipeline.search.cancel(response.job_id) is False

    @pytest.mark.asyncio
    async def test_report_link_expired_delegates_to_recrawl(self, pipeline):
        ticket = await pipeline.search.report_link_expired("tiktok", "cats")

        status = await pipeline.search.poll_status(ticket.job_id)
        assert status.kind == JobKind.RECRAWL
        assert status.queue_position == 0


async def _popular(pipeline, query: str, searches: int, cached: bool = True) -> CacheKey:
    key = CacheKey.of("tiktok", query)
    if cached:
        await pipeline.cache.set(key, [{"id": query}])
    for _ in range(searches):
        await pipeline.cache.record_search(key)
    return key


class TestPopularKeys:
    @pytest.mark.asyncio
    async def test_busiest_live_keys_first(self, pipeline):
        busy = await _popular(pipeline, "busy", 3)
        warm = await _popular(pipeline, "warm", 2)
        await _popular(pipeline, "cold", 1)
        await _popular(pipeline, "expired", 5, cached=False)

        assert await pipeline.search.popular_keys(2, 10) == [busy, warm]
        assert await pipeline.search.popular_keys(1, 1) == [busy]

    @pytest.mark.asyncio
    async def test_refresh_skips_keys_with_pending_jobs(self, pipeline):
        busy = await _popular(pipeline, "busy", 3)
        warm = await _popular(pipeline, "warm", 2)
        await pipeline.queue.enqueue(warm, JobKind.NORMAL)
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        search = SearchService(
            pipeline.cache,
            pipeline.queue,
            JobStatusReader(pipeline.queue),
            pipeline.recrawl,
            sleep=fake_sleep,
        )

        results = await search.refresh_popular(2, 10, spacing_seconds=0.5)

        assert results == {"found": 2, "queued": 1, "skipped": 1, "errors": [], "success": True}
        assert sleeps == [0.5]
        jobs = await pipeline.queue.jobs_for_key(busy)
        assert [job.kind for job in jobs] == [JobKind.AUTO_REFRESH]

    @pytest.mark.asyncio
    async def test_refresh_reports_errors_per_key(self, pipeline):
        await _popular(pipeline, "busy", 3)
        failing = AsyncMock(side_effect=StoreUnavailableError(ConnectionError("down")))

        with patch.object(pipeline.queue, "enqueue", failing):
            results = await pipeline.search.refresh_popular(1, 10)

        assert results["queued"] == 0
        assert results["success"] is False
        assert len(results["errors"]) == 1

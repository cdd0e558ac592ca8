"""
Job Manager Tests
Create / status / cancel against the worker, including the cancel-vs-finish races
"""
import asyncio
import random

import pytest

from comicstudio.core.database import AsyncSessionLocal
from comicstudio.core.errors import (
    ErrorCode,
    GenerationError,
    InsufficientCreditsError,
    NotFoundError,
)
from comicstudio.models.db import Panel
from comicstudio.models.dto import JobState, JobType
from comicstudio.services.generation import MockGenerationBackend
from comicstudio.services.job_worker import GenerationWorker
from comicstudio.services.jobs import JobManager, estimate_credits
from comicstudio.services.ledger import REASON_JOB_CANCELLED
from comicstudio.services.scheduler import JobScheduler
from comicstudio.services.subjects import SubjectWriter

HIGH = {"scene_description": "Splash page", "style": {"quality": "high"}}
STANDARD = {"scene_description": "Quiet panel", "style": {"quality": "standard"}}


async def _refunds(ledger, account_id: str, job_id: str) -> list:
    history = await ledger.list_history(account_id, limit=100)
    return [
        entry
        for entry in history
        if entry.reason == REASON_JOB_CANCELLED and (entry.meta or {}).get("job_id") == job_id
    ]


async def _create_panel() -> str:
    async with AsyncSessionLocal() as session:
        panel = Panel()
        session.add(panel)
        await session.commit()
        return panel.panel_id


class TestEstimateCredits:
    def test_standard_quality(self):
        assert estimate_credits(STANDARD) == 1

    def test_high_quality(self):
        assert estimate_credits(HIGH) == 2

    @pytest.mark.parametrize("job_input", [{}, {"style": None}, {"style": "high"}])
    def test_missing_style_costs_standard(self, job_input):
        assert estimate_credits(job_input) == 1


class TestCreateJob:
    @pytest.mark.asyncio
    async def test_scenario_a_debit_and_pending_job(
        self, idle_manager, ledger, make_account, recording_scheduler
    ):
        """Balance 5, job costing 2: balance 3, job pending, one debit entry."""
        account_id = await make_account(credits=5)

        job = await idle_manager.create_job(account_id, JobType.panel_generation, HIGH)

        assert job.status == "pending"
        assert job.estimated_credits == 2
        assert await ledger.get_balance(account_id) == 3

        history = await ledger.list_history(account_id)
        assert len(history) == 2
        assert history[0].amount == -2
        assert history[0].balance_after == 3
        assert history[0].reason == "panel_generation"
        assert history[0].meta == {"job_id": job.job_id}

        assert recording_scheduler.dispatched == [job.job_id]

    @pytest.mark.asyncio
    async def test_scenario_b_insufficient_credits(
        self, idle_manager, ledger, make_account, recording_scheduler
    ):
        """Balance 1, job costing 2: rejected with no job and no ledger entry."""
        account_id = await make_account(credits=1)

        with pytest.raises(InsufficientCreditsError):
            await idle_manager.create_job(account_id, JobType.panel_generation, HIGH)

        assert await ledger.get_balance(account_id) == 1
        assert len(await ledger.list_history(account_id)) == 1
        assert await idle_manager.list_jobs(account_id) == []
        assert recording_scheduler.dispatched == []

    @pytest.mark.asyncio
    async def test_dispatch_failure_still_returns_pending_job(
        self, idle_manager, ledger, make_account, recording_scheduler
    ):
        """A broker outage after commit leaves a pending job for the monitor."""
        account_id = await make_account(credits=5)
        recording_scheduler.error = ConnectionError("broker unavailable")

        job = await idle_manager.create_job(account_id, JobType.panel_generation, HIGH)

        assert job.status == "pending"
        assert recording_scheduler.dispatched == [job.job_id]
        assert (await idle_manager.get_status(job.job_id)).status == "pending"
        assert await ledger.get_balance(account_id) == 3
        latest = (await ledger.list_history(account_id, limit=1))[0]
        assert latest.meta == {"job_id": job.job_id}

    @pytest.mark.asyncio
    async def test_unknown_account(self, idle_manager):
        with pytest.raises(NotFoundError):
            await idle_manager.create_job("missing-account", JobType.panel_generation, STANDARD)
        assert await idle_manager.list_jobs("missing-account") == []

    @pytest.mark.asyncio
    async def test_reason_follows_job_type(self, idle_manager, ledger, make_account):
        account_id = await make_account(credits=5)

        await idle_manager.create_job(account_id, "character_generation", STANDARD)

        latest = (await ledger.list_history(account_id, limit=1))[0]
        assert latest.reason == "character_generation"

    @pytest.mark.asyncio
    async def test_invalid_job_type(self, idle_manager, make_account):
        account_id = await make_account(credits=5)

        with pytest.raises(ValueError):
            await idle_manager.create_job(account_id, "video_generation", STANDARD)


class TestGetStatus:
    @pytest.mark.asyncio
    async def test_status_reads_do_not_write(self, idle_manager, make_account):
        account_id = await make_account()
        job = await idle_manager.create_job(account_id, JobType.panel_generation, STANDARD)

        first = await idle_manager.get_status(job.job_id)
        second = await idle_manager.get_status(job.job_id)

        assert first.status == second.status == "pending"
        assert first.updated_at == second.updated_at
        assert first.progress == second.progress == 0

    @pytest.mark.asyncio
    async def test_unknown_job(self, idle_manager):
        with pytest.raises(NotFoundError):
            await idle_manager.get_status("missing-job")

    @pytest.mark.asyncio
    async def test_progress_visible_while_processing(
        self, manager, backend, scheduler, make_account
    ):
        account_id = await make_account()
        backend.progress = [40, 70, 55]

        job = await manager.create_job(account_id, JobType.panel_generation, STANDARD)
        await backend.started.wait()

        running = await manager.get_status(job.job_id)
        assert running.status == "processing"
        assert running.progress == 70
        assert running.started_at is not None

        backend.release.set()
        await scheduler.join()

        done = await manager.get_status(job.job_id)
        assert done.status == "success"
        assert done.progress == 100


class TestCancel:
    @pytest.mark.asyncio
    async def test_scenario_c_cancel_before_start(
        self, idle_manager, ledger, store, backend, make_account
    ):
        """Cancelled while pending: refunded, and a late worker leaves it alone."""
        account_id = await make_account(credits=5)
        job = await idle_manager.create_job(account_id, JobType.panel_generation, HIGH)

        assert await idle_manager.cancel(job.job_id) is True

        cancelled = await idle_manager.get_status(job.job_id)
        assert cancelled.status == "cancelled"
        assert cancelled.finished_at is not None
        assert await ledger.get_balance(account_id) == 5

        refunds = await _refunds(ledger, account_id, job.job_id)
        assert len(refunds) == 1
        assert refunds[0].amount == 2
        assert refunds[0].balance_after == 5

        worker = GenerationWorker(store=store, backend=backend, subject_writer=None)
        assert await worker.run(job.job_id) is None
        assert backend.calls == 0
        assert (await store.get(job.job_id)).status == "cancelled"

    @pytest.mark.asyncio
    async def test_scenario_d_cancel_while_processing(
        self, manager, ledger, backend, scheduler, make_account
    ):
        """Cancel wins against processing; the worker's result is discarded."""
        account_id = await make_account(credits=5)
        job = await manager.create_job(account_id, JobType.panel_generation, HIGH)
        await backend.started.wait()

        assert await manager.cancel(job.job_id) is True

        backend.release.set()
        await scheduler.join()

        final = await manager.get_status(job.job_id)
        assert final.status == "cancelled"
        assert final.result is None
        assert await ledger.get_balance(account_id) == 5
        assert len(await _refunds(ledger, account_id, job.job_id)) == 1
        assert (await ledger.verify_history(account_id)).ok

    @pytest.mark.asyncio
    async def test_scenario_e_cancel_after_success(
        self, manager, ledger, backend, scheduler, make_account
    ):
        """A finished job is not cancelled and not refunded."""
        account_id = await make_account(credits=5)
        backend.release.set()

        job = await manager.create_job(account_id, JobType.panel_generation, HIGH)
        await scheduler.join()

        assert (await manager.get_status(job.job_id)).status == "success"
        assert await manager.cancel(job.job_id) is False

        final = await manager.get_status(job.job_id)
        assert final.status == "success"
        assert final.result["image_url"] == "/images/panel.jpg"
        assert await ledger.get_balance(account_id) == 3
        assert await _refunds(ledger, account_id, job.job_id) == []

    @pytest.mark.asyncio
    async def test_second_cancel_does_not_refund_again(
        self, idle_manager, ledger, make_account
    ):
        account_id = await make_account(credits=5)
        job = await idle_manager.create_job(account_id, JobType.panel_generation, STANDARD)

        assert await idle_manager.cancel(job.job_id) is True
        assert await idle_manager.cancel(job.job_id) is False

        assert await ledger.get_balance(account_id) == 5
        assert len(await _refunds(ledger, account_id, job.job_id)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_cancels_refund_once(self, idle_manager, ledger, make_account):
        account_id = await make_account(credits=5)
        job = await idle_manager.create_job(account_id, JobType.panel_generation, HIGH)

        results = await asyncio.gather(*[idle_manager.cancel(job.job_id) for _ in range(5)])

        assert results.count(True) == 1
        assert await ledger.get_balance(account_id) == 5
        assert len(await _refunds(ledger, account_id, job.job_id)) == 1

    @pytest.mark.asyncio
    async def test_cancel_unknown_job(self, idle_manager):
        with pytest.raises(NotFoundError):
            await idle_manager.cancel("missing-job")


class TestFailures:
    @pytest.mark.asyncio
    async def test_generation_error_is_not_refunded(
        self, manager, ledger, backend, scheduler, make_account
    ):
        account_id = await make_account(credits=5)
        backend.error = GenerationError("Provider rejected the prompt")
        backend.release.set()

        job = await manager.create_job(account_id, JobType.panel_generation, HIGH)
        await scheduler.join()

        failed = await manager.get_status(job.job_id)
        assert failed.status == "failed"
        assert failed.error == {
            "code": ErrorCode.GENERATION_FAILED.value,
            "message": "Provider rejected the prompt",
        }
        assert failed.result is None
        assert await ledger.get_balance(account_id) == 3
        assert await manager.cancel(job.job_id) is False
        assert await ledger.get_balance(account_id) == 3

    @pytest.mark.asyncio
    async def test_unexpected_exception_fails_job(
        self, manager, backend, scheduler, make_account
    ):
        account_id = await make_account()
        backend.error = RuntimeError("connection reset")
        backend.release.set()

        job = await manager.create_job(account_id, JobType.panel_generation, STANDARD)
        await scheduler.join()

        failed = await manager.get_status(job.job_id)
        assert failed.status == "failed"
        assert failed.error["message"] == "connection reset"


class _BrokenWriter(SubjectWriter):
    async def update_subject_image(self, subject_ref, image_url, thumbnail_url, prompt_used):
        raise RuntimeError("panel store unavailable")


class TestSubjectPropagation:
    @pytest.mark.asyncio
    async def test_result_written_to_panel(self, manager, backend, scheduler, make_account):
        account_id = await make_account()
        panel_id = await _create_panel()
        backend.release.set()

        job = await manager.create_job(
            account_id, JobType.panel_generation, STANDARD, subject_ref=panel_id
        )
        await scheduler.join()

        async with AsyncSessionLocal() as session:
            panel = await session.get(Panel, panel_id)
        assert panel.image_url == "/images/panel.jpg"
        assert panel.thumbnail_url == "/images/thumb.jpg"
        assert panel.generation_prompt == "a rooftop chase at night"
        assert (await manager.get_status(job.job_id)).status == "success"

    @pytest.mark.asyncio
    async def test_missing_panel_keeps_job_successful(
        self, manager, backend, scheduler, make_account
    ):
        account_id = await make_account()
        backend.release.set()

        job = await manager.create_job(
            account_id, JobType.panel_generation, STANDARD, subject_ref="missing-panel"
        )
        await scheduler.join()

        assert (await manager.get_status(job.job_id)).status == "success"

    @pytest.mark.asyncio
    async def test_writer_failure_keeps_job_successful(
        self, ledger, store, backend, make_account
    ):
        account_id = await make_account()
        worker = GenerationWorker(store=store, backend=backend, subject_writer=_BrokenWriter())
        scheduler = JobScheduler(worker=worker)
        manager = JobManager(ledger=ledger, store=store, scheduler=scheduler)
        backend.release.set()

        job = await manager.create_job(
            account_id, JobType.panel_generation, STANDARD, subject_ref="panel-1"
        )
        await scheduler.join()

        assert (await manager.get_status(job.job_id)).status == "success"


class TestRaces:
    @pytest.mark.asyncio
    async def test_random_cancel_timing_keeps_ledger_consistent(
        self, ledger, store, make_account
    ):
        """
        Jobs finishing and cancels arriving at random moments:
        - every job ends in exactly one terminal state
        - cancelled jobs are refunded exactly once, others never
        - the balance equals grant minus the cost of non-cancelled jobs
        """
        rng = random.Random(42)
        account_id = await make_account(credits=30)
        worker = GenerationWorker(
            store=store,
            backend=MockGenerationBackend(delay_seconds=0.03, steps=3, failure_rate=0.0),
            subject_writer=None,
        )
        scheduler = JobScheduler(worker=worker, max_concurrent=4)
        manager = JobManager(ledger=ledger, store=store, scheduler=scheduler)

        jobs = []
        for i in range(10):
            job_input = HIGH if i % 2 else STANDARD
            jobs.append(
                await manager.create_job(account_id, JobType.panel_generation, job_input)
            )

        async def cancel_later(job_id: str, delay: float) -> bool:
            await asyncio.sleep(delay)
            return await manager.cancel(job_id)

        cancel_results = await asyncio.gather(
            *[cancel_later(job.job_id, rng.uniform(0, 0.1)) for job in jobs]
        )
        await scheduler.join()

        expected_balance = 30
        for job, cancelled in zip(jobs, cancel_results):
            final = await manager.get_status(job.job_id)
            assert final.status in ("success", "cancelled")
            assert cancelled == (final.status == "cancelled")

            refunds = await _refunds(ledger, account_id, job.job_id)
            if final.status == "cancelled":
                assert len(refunds) == 1
                assert final.result is None
            else:
                assert refunds == []
                expected_balance -= job.estimated_credits

        assert await ledger.get_balance(account_id) == expected_balance
        assert (await ledger.verify_history(account_id)).ok

    @pytest.mark.asyncio
    async def test_worker_and_cancel_exactly_one_terminal_state(
        self, manager, ledger, store, backend, scheduler, make_account
    ):
        account_id = await make_account(credits=5)
        job = await manager.create_job(account_id, JobType.panel_generation, STANDARD)
        await backend.started.wait()

        backend.release.set()
        cancelled = await manager.cancel(job.job_id)
        await scheduler.join()

        final = await store.get(job.job_id)
        assert JobState(final.status) in (JobState.success, JobState.cancelled)
        assert cancelled == (final.status == "cancelled")
        refunds = await _refunds(ledger, account_id, job.job_id)
        assert len(refunds) == (1 if cancelled else 0)

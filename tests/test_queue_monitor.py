"""Tests for the queue monitor CLI."""
import pytest

from config.settings import reset_settings
from models.schemas import JobKind, JobState
from scripts.queue_monitor import build_parser, cmd_clean, cmd_failed, cmd_requeue, cmd_stats, run


def weekly(allocation_id="A1"):
    return {"facilitatorEmail": "jane@school.edu", "facilitatorName": "Jane Doe",
            "week": 10, "allocationId": allocation_id}


async def failed_job(queue) -> str:
    await queue.enqueue(JobKind.WEEKLY_REMINDER, weekly())
    job = await queue.claim(JobKind.WEEKLY_REMINDER)
    await queue.fail(job.job_id, "550 mailbox unavailable")
    return job.job_id


class TestParser:
    def test_clean_defaults(self):
        args = build_parser().parse_args(["clean"])
        assert args.older_than == 86400
        assert args.state is None

    def test_requires_command(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestCommands:

    @pytest.mark.asyncio
    async def test_stats(self, queue, capsys):
        await queue.enqueue(JobKind.WEEKLY_REMINDER, weekly())
        assert await cmd_stats(queue, build_parser().parse_args(["stats"])) == 0
        out = capsys.readouterr().out
        assert "log-reminders" in out
        line = next(l for l in out.splitlines() if l.startswith("weekly-reminder"))
        assert line.split()[1:] == ["1", "0", "0", "0"]

    @pytest.mark.asyncio
    async def test_failed_lists_errors(self, queue, capsys):
        job_id = await failed_job(queue)
        await cmd_failed(queue, build_parser().parse_args(["failed"]))
        out = capsys.readouterr().out
        assert job_id in out
        assert "550 mailbox unavailable" in out
        assert "jane@school.edu" in out

    @pytest.mark.asyncio
    async def test_failed_empty(self, queue, capsys):
        await cmd_failed(queue, build_parser().parse_args(["failed"]))
        assert "No failed jobs." in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_clean(self, queue, capsys):
        await failed_job(queue)
        args = build_parser().parse_args(["clean", "--older-than", "3600", "--state", "failed"])
        await cmd_clean(queue, args)
        assert "Removed 0 job(s)" in capsys.readouterr().out
        assert (await queue.counts())[JobState.FAILED] == 1

    @pytest.mark.asyncio
    async def test_requeue(self, queue, capsys):
        job_id = await failed_job(queue)
        assert await cmd_requeue(queue, build_parser().parse_args(["requeue", job_id])) == 0
        assert f"Requeued {job_id}" in capsys.readouterr().out
        assert (await queue.counts())[JobState.WAITING] == 1

    @pytest.mark.asyncio
    async def test_requeue_unknown(self, queue, capsys):
        assert await cmd_requeue(queue, build_parser().parse_args(["requeue", "missing"])) == 1
        assert "not found" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_run_against_sql_backend(self, tmp_path, capsys):
        config = tmp_path / "settings.yaml"
        config.write_text(
            f"database:\n  url: sqlite:///{tmp_path}/ops.db\n"
            "queue:\n  backend: sql\n"
        )
        try:
            assert await run(build_parser().parse_args(["--config", str(config), "init-db"])) == 0
            assert await run(build_parser().parse_args(["--config", str(config), "stats"])) == 0
        finally:
            reset_settings()
        assert "weekly-reminder" in capsys.readouterr().out

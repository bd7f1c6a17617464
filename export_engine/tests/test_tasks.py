# export_engine/tests/test_tasks.py

from unittest.mock import patch

from export_engine.exports import tasks
from export_engine.exports.schemas import CleanupResult
from export_engine.exports.worker import ExportOutcome
from export_engine.worker import config as celery_config


class TestExportTasks:

    @patch("export_engine.exports.tasks.get_export_worker")
    @patch("export_engine.exports.tasks.SessionLocal")
    def test_process_export_runs_worker_and_closes_session(self, session_local, get_worker):
        session = session_local.return_value
        get_worker.return_value.run.return_value = ExportOutcome.COMPLETED

        result = tasks.process_export_task.run("0e8a5c9a-1f7b-4c38-9e1b-3b0c8e5d2a11")

        assert result == {"export_id": "0e8a5c9a-1f7b-4c38-9e1b-3b0c8e5d2a11", "outcome": "completed"}
        get_worker.assert_called_once_with(session)
        session.close.assert_called_once()

    @patch("export_engine.exports.tasks.get_export_service")
    @patch("export_engine.exports.tasks.SessionLocal")
    def test_cleanup_task_passes_arguments(self, session_local, get_service):
        get_service.return_value.cleanup_expired_exports.return_value = CleanupResult(scanned=2, deleted=2, passes=1)

        result = tasks.cleanup_expired_exports_task.run(batch_size=50, dry_run=False, days_old=10)

        get_service.return_value.cleanup_expired_exports.assert_called_once_with(
            batch_size=50, dry_run=False, days_old=10
        )
        assert result["deleted"] == 2
        session_local.return_value.close.assert_called_once()

    @patch("export_engine.exports.tasks.get_stuck_export_reclaimer")
    @patch("export_engine.exports.tasks.SessionLocal")
    def test_reclaim_task(self, session_local, get_reclaimer):
        get_reclaimer.return_value.reclaim.return_value = {"failed": [], "requeued": ["x"]}
        assert tasks.reclaim_stuck_exports_task.run() == {"failed": [], "requeued": ["x"]}


class TestCeleryConfig:

    def test_beat_schedule(self):
        schedule = celery_config.beat_schedule
        assert schedule["cleanup-expired-exports"]["task"] == "exports.cleanup_expired_exports"
        assert schedule["reclaim-stuck-exports"]["task"] == "exports.reclaim_stuck_exports"

    def test_time_limits_follow_worker_timeout(self):
        assert celery_config.task_soft_time_limit == 600
        assert celery_config.task_time_limit == 900
        assert celery_config.task_acks_late is True
        assert celery_config.worker_prefetch_multiplier == 1

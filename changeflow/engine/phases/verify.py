"""Verify phase: optional test suggestions for the transformed files."""

import structlog

from changeflow.engine.phases.base import Phase
from changeflow.engine.phases.implement import processing_order
from changeflow.engine.scheduler import Task
from changeflow.enums import LogLevel, SessionStatus, TaskType
from changeflow.models.domain import Session

log = structlog.get_logger(__name__)


class VerifyPhase(Phase):
    """Ask the transformer for test suggestions, one ``test`` task per file.

    Runs only when the batch asked for ``auto_test``. Failures are warnings;
    they never fail the session.
    """

    name = "verify"

    async def execute(self, session: Session) -> None:
        if not session.batch.auto_test:
            return
        transformed: dict[str, str] = session.results.get("transformed") or {}
        done: dict[str, str] = session.results.get("test_suggestions") or {}
        pending = [path for path in processing_order(session, list(transformed)) if path not in done]
        if not pending:
            return

        await self.status(session.id, SessionStatus.TESTING, 90, "Generating test suggestions")

        async def suggest(task: Task) -> str:
            path = task.input["file_path"]
            suggestion = await self.hosts.transformer.suggest_tests(path, transformed[path])
            await self.store.merge_results(session.id, "test_suggestions", {path: suggestion})
            return suggestion

        tasks = [Task(id=f"test:{path}", type=TaskType.TEST, input={"file_path": path}) for path in pending]
        report = await self.scheduler.run(tasks, execute=suggest)

        for result in report.failed:
            await self.log(
                session.id,
                f"Test suggestion failed for {result.task_id.split(':', 1)[1]}: {result.error}",
                LogLevel.WARN,
            )
        await self.log(session.id, f"Generated test suggestions for {len(report.completed)} file(s)")
        log.info("verification_finished", session_id=session.id, completed=len(report.completed))

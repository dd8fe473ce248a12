"""
Implement phase: transform every affected file through the task scheduler.

One ``implement`` task is built per file. A task depends on the other files
of the batch it references, restricted to references that point earlier in
the resolver's order, so cycles in the raw graph never reach the scheduler.
Files transformed by an earlier attempt are not transformed again.

Failures are recorded per file. The phase only fails when no file at all
was transformed.
"""

import time

import structlog

from changeflow.engine.errors import is_fatal
from changeflow.engine.phases.base import Phase
from changeflow.engine.scheduler import RecoveryDecision, Task
from changeflow.enums import FileStatus, LogLevel, SessionStatus, TaskType
from changeflow.exceptions import NoSuccessfulChangesError, TaskExecutionError
from changeflow.models.domain import ChangeRequest, Session

log = structlog.get_logger(__name__)

PROGRESS_START = 30.0
PROGRESS_END = 70.0


def processing_order(session: Session, files: list[str]) -> list[str]:
    """Order ``files`` by the resolver's order, unknown files last in batch order."""
    analysis = session.results.get("analysis") or {}
    position = {path: index for index, path in enumerate(analysis.get("order", []))}
    batch_index = {path: index for index, path in enumerate(files)}
    return sorted(files, key=lambda path: (position.get(path, len(position)), batch_index[path]))


class ImplementPhase(Phase):
    """Run the code transformer over the batch with bounded concurrency."""

    name = "implement"

    async def execute(self, session: Session) -> None:
        await self.status(session.id, SessionStatus.PROCESSING, PROGRESS_START, "Applying changes")
        files = session.batch.changes_by_file()
        if not files:
            await self.log(session.id, "No file changes requested")
            return

        transformed: dict[str, str] = dict(session.results.get("transformed") or {})
        originals: dict[str, str] = dict(session.results.get("original_contents") or {})
        order = processing_order(session, list(files))
        graph: dict[str, list[str]] = (session.results.get("analysis") or {}).get("graph", {})
        position = {path: index for index, path in enumerate(order)}

        tasks: list[Task] = []
        for path in order:
            if path in transformed:
                continue
            depends_on = {
                f"implement:{dep}"
                for dep in graph.get(path, [])
                if dep in files and dep not in transformed and position[dep] < position[path]
            }
            tasks.append(
                Task(
                    id=f"implement:{path}",
                    type=TaskType.IMPLEMENT,
                    input={"file_path": path},
                    depends_on=depends_on,
                    priority=min((c.priority for c in files[path]), key=lambda p: p.rank),
                )
            )

        if not tasks:
            await self.log(session.id, f"All {len(files)} file(s) already transformed")
            return

        total = len(files)
        branch = session.results.get("branch_name") or session.batch.base_branch
        transformer = self.hosts.transformer

        async def transform(task: Task) -> str:
            path = task.input["file_path"]
            changes: list[ChangeRequest] = files[path]
            await self.store.update_file_unit(session.id, path, status=FileStatus.PROCESSING, error=None)

            content = originals.get(path)
            if content is None:
                content = await self.hosts.source_control.get_file_contents(path, branch) or ""

            started = time.monotonic()
            result = await transformer.transform(path, content, changes)
            if not result.success:
                raise TaskExecutionError(result.error or f"Transformation of {path} failed", task_id=task.id)

            elapsed_ms = (time.monotonic() - started) * 1000
            await self.store.merge_results(session.id, "transformed", {path: result.new_content})
            session_after = await self.store.update_file_unit(
                session.id,
                path,
                status=FileStatus.COMPLETED,
                processing_time_ms=round(elapsed_ms, 1),
                error=None,
            )
            done = session_after.completed_files
            await self.status(
                session.id,
                SessionStatus.PROCESSING,
                PROGRESS_START + (PROGRESS_END - PROGRESS_START) * done / total,
                f"Applied changes to {done} of {total} file(s)",
            )
            await self.log(session.id, f"Updated {path}", explanation=result.explanation or None)
            return result.new_content

        async def recover(task: Task, error: Exception) -> RecoveryDecision:
            path = task.input["file_path"]
            if is_fatal(error, self.settings.retry.fatal_patterns):
                return RecoveryDecision.give_up()
            await self.log(
                session.id,
                f"Retrying {path} after error: {error}",
                LogLevel.WARN,
                retry=task.retry_count + 1,
            )
            return RecoveryDecision.retry()

        report = await self.scheduler.run(tasks, execute=transform, recover=recover)

        failed: list[str] = []
        for result in report.failed:
            path = result.task_id.split(":", 1)[1]
            failed.append(path)
            await self.store.update_file_unit(session.id, path, status=FileStatus.FAILED, error=str(result.error))
            await self.log(session.id, f"Failed to update {path}: {result.error}", LogLevel.ERROR)

        succeeded = len(transformed) + len(report.completed)
        if succeeded == 0:
            raise NoSuccessfulChangesError(failed)
        if failed:
            await self.log(
                session.id,
                f"{len(failed)} of {total} file(s) could not be updated",
                LogLevel.WARN,
                failed_files=failed,
            )
        log.info(
            "implementation_finished",
            session_id=session.id,
            succeeded=succeeded,
            failed=len(failed),
        )

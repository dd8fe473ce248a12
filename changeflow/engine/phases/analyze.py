"""Analyze phase: resolve processing order and risk for the affected files."""

import structlog

from changeflow.engine.phases.base import Phase
from changeflow.enums import FileStatus, LogLevel, RiskLevel, SessionStatus
from changeflow.models.domain import Session

log = structlog.get_logger(__name__)


class AnalyzePhase(Phase):
    """Fetch the affected files, resolve their dependencies and seed file units.

    Persists into ``results``:
        analysis: order, risk, cycles and graph from the resolver.
        suggestions: files outside the batch that probably need updates.
        original_contents: current content of each affected file that exists.
    """

    name = "analyze"

    async def execute(self, session: Session) -> None:
        await self.status(session.id, SessionStatus.ANALYZING, 15, "Analyzing dependencies")
        batch = session.batch
        files = batch.changes_by_file()
        host = self.hosts.source_control

        async def fetch(path: str) -> str | None:
            return await host.get_file_contents(path, batch.base_branch)

        contents = await self.resolver.collect(files, fetch)
        resolution = self.resolver.resolve({path: contents.get(path, "") for path in files}, related=contents)
        suggestions = self.resolver.suggest_additional_updates(resolution, files)

        await self.store.set_results(
            session.id,
            analysis=resolution.to_dict(),
            suggestions=[
                {"file_path": s.file_path, "reason": s.reason, "priority": str(s.priority)} for s in suggestions
            ],
            original_contents={path: contents[path] for path in files if path in contents},
        )

        for path, changes in files.items():
            if path not in session.file_units:
                await self.store.update_file_unit(
                    session.id, path, status=FileStatus.PENDING, change_count=len(changes)
                )

        for cycle in resolution.cycles:
            await self.log(
                session.id,
                f"Circular dependency: {' -> '.join([*cycle, cycle[0]])}",
                LogLevel.WARN,
            )
        risky = [path for path in files if resolution.risk.get(path) is RiskLevel.HIGH]
        if risky:
            await self.log(
                session.id,
                f"High-risk files in batch: {', '.join(risky)}",
                LogLevel.WARN,
                files=risky,
            )

        new_files = [path for path in files if path not in contents]
        await self.log(
            session.id,
            f"Analyzed {len(resolution.order)} file(s); {len(suggestions)} related file(s) may need updates",
            order=resolution.order,
            new_files=new_files,
        )
        log.info(
            "dependencies_analyzed",
            session_id=session.id,
            files=len(files),
            analyzed=len(resolution.order),
            cycles=len(resolution.cycles),
        )

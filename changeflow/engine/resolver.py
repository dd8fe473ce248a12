"""
Static dependency resolution for batches of source files.

The resolver turns a flat set of affected files into a safe processing order
and a per-file risk tier. It reads JS/TS-style sources, extracts the
references each file makes (imports, re-exports, ``require`` calls, dynamic
imports and stylesheet imports), resolves the relative and aliased ones to
canonical repository paths, and builds a dependency graph where an edge
``A -> B`` means "A references B".

Ordering:
    Files are ordered by a depth-first topological sort that emits a file's
    dependencies before the file itself. For ``A.tsx`` importing ``./B`` the
    order is ``["B.tsx", "A.tsx"]``. An edge back to a file that is still on
    the DFS stack closes a cycle: the cycle is recorded in
    ``Resolution.cycles`` and the edge is not followed, so resolution always
    terminates with every file listed exactly once.

Risk:
    Risk is driven by fan-in, the number of other analysed files referencing
    a file: more than 5 is high, more than 2 is medium, anything else low.
    Files under a ``lib``, ``shared`` or ``common`` directory, or exporting
    more than 3 symbols, are escalated one tier.

Related files:
    Files referenced by the inputs are pulled into the graph breadth-first,
    up to ``max_depth`` hops and ``max_related_files`` extra files. The
    synchronous ``resolve()`` takes them from a content map; ``collect()``
    performs the same bounded walk against an async fetch callable.

Example:
    >>> resolver = DependencyResolver()
    >>> result = resolver.resolve({
    ...     "src/A.tsx": "import B from './B'",
    ...     "src/B.tsx": "export const B = () => null",
    ... })
    >>> result.order
    ['src/B.tsx', 'src/A.tsx']

The resolver keeps no state between calls and can be shared by concurrent
sessions.
"""

import posixpath
import re
from collections import deque
from collections.abc import Awaitable, Callable, Collection, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog

from changeflow.enums import Priority, RiskLevel
from changeflow.utils.paths import normalize_path

log = structlog.get_logger(__name__)

RESOLVE_EXTENSIONS = (".tsx", ".ts", ".jsx", ".js")
INDEX_FILES = ("/index.tsx", "/index.ts", "/index.js")
STYLESHEET_EXTENSIONS = (".css", ".scss", ".sass", ".less")
SHARED_SEGMENTS = frozenset({"lib", "shared", "common"})

_REFERENCE_PATTERNS = (
    # import X from '...', import { a, b } from '...', import * as X from '...', import '...'
    re.compile(r"""\bimport\s+(?:[\w*{}\s,$]+?\s+from\s+)?['"]([^'"\n]+)['"]"""),
    # export * from '...', export { a } from '...'
    re.compile(r"""\bexport\s+(?:\*(?:\s+as\s+\w+)?|\{[^}]*\})\s+from\s+['"]([^'"\n]+)['"]"""),
    re.compile(r"""\brequire\(\s*['"]([^'"\n]+)['"]\s*\)"""),
    re.compile(r"""\bimport\(\s*['"]([^'"\n]+)['"]\s*\)"""),
)
_EXPORT_PATTERN = re.compile(
    r"\bexport\s+(?:default\s+)?(?:async\s+)?(?:class|function\*?|const|let|var|interface|type|enum)\s+(\w+)"
)
_COMPONENT_PATTERN = re.compile(r"<([A-Z][\w.]*)[\s/>]")

FetchContent = Callable[[str], Awaitable[str | None]]


def extract_references(content: str) -> list[str]:
    """Return module specifiers referenced by ``content`` in source order.

    Duplicates are dropped, keeping the first occurrence.
    """
    found: list[tuple[int, str]] = []
    for pattern in _REFERENCE_PATTERNS:
        for match in pattern.finditer(content):
            found.append((match.start(1), match.group(1).strip()))
    found.sort(key=lambda item: item[0])

    seen: set[str] = set()
    references: list[str] = []
    for _, spec in found:
        if spec and spec not in seen:
            seen.add(spec)
            references.append(spec)
    return references


@dataclass
class FileAnalysis:
    """Static facts extracted from one file.

    Attributes:
        path: Canonical path of the file.
        references: Raw module specifiers in source order.
        related_files: Resolved canonical paths of the referenced files
            that exist in the analysed set, in source order, no self-edges.
        exports: Exported symbol names.
        components: Capitalised JSX element names used by the file.
        stylesheets: Stylesheet specifiers imported by the file.
    """

    path: str
    references: list[str] = field(default_factory=list)
    related_files: list[str] = field(default_factory=list)
    exports: list[str] = field(default_factory=list)
    components: list[str] = field(default_factory=list)
    stylesheets: list[str] = field(default_factory=list)


@dataclass
class Resolution:
    """Result of resolving a set of files.

    Attributes:
        order: Every analysed file exactly once, dependencies first.
        risk: Risk tier per analysed file.
        cycles: Cycles met during ordering, each as the list of files on the
            cycle starting at the file the back edge pointed to.
        graph: Out-edges per file restricted to analysed files.
        analyses: Per-file static facts.
        inputs: The caller's files, canonicalised, in input order.
    """

    order: list[str]
    risk: dict[str, RiskLevel]
    cycles: list[list[str]]
    graph: dict[str, list[str]]
    analyses: dict[str, FileAnalysis]
    inputs: list[str]

    def dependents(self, path: str) -> list[str]:
        """Files that reference ``path``, in graph order."""
        return [source for source, targets in self.graph.items() if path in targets]

    def fan_in(self, path: str) -> int:
        return len(self.dependents(path))

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly summary stored on the session."""
        return {
            "order": list(self.order),
            "risk": {path: str(level) for path, level in self.risk.items()},
            "cycles": [list(cycle) for cycle in self.cycles],
            "graph": {path: list(targets) for path, targets in self.graph.items()},
        }


@dataclass
class UpdateSuggestion:
    """A file outside the batch that probably needs a matching update."""

    file_path: str
    reason: str
    priority: Priority = Priority.LOW


class DependencyResolver:
    """Build dependency graphs, processing orders and risk tiers.

    Attributes:
        max_depth: Hops the related-file walk may take from an input file.
        max_related_files: Cap on files pulled in beyond the inputs.
        path_aliases: Import prefixes mapped to repository paths, e.g.
            ``{"@/": "src/"}``.
    """

    def __init__(
        self,
        max_depth: int = 3,
        max_related_files: int = 50,
        path_aliases: Mapping[str, str] | None = None,
    ) -> None:
        self.max_depth = max_depth
        self.max_related_files = max_related_files
        self.path_aliases = dict(path_aliases or {})

    def candidates(self, spec: str, from_path: str) -> list[str]:
        """Candidate repository paths a specifier could refer to.

        Bare package names (``react``, ``lodash/fp``) yield no candidates.
        Specifiers that climb above the repository root yield none either.
        """
        base: str | None = None
        if spec.startswith("./") or spec.startswith("../") or spec in (".", ".."):
            base = posixpath.join(posixpath.dirname(from_path), spec)
        else:
            for prefix, target in self.path_aliases.items():
                if spec.startswith(prefix):
                    base = target + spec[len(prefix) :]
                    break
        if base is None:
            return []

        base = posixpath.normpath(base)
        if base.startswith("..") or base in ("", "."):
            return []
        base = base.lstrip("/")

        if base.endswith(STYLESHEET_EXTENSIONS) or posixpath.splitext(base)[1] in RESOLVE_EXTENSIONS:
            return [base]
        return [base, *(base + ext for ext in RESOLVE_EXTENSIONS), *(base + index for index in INDEX_FILES)]

    def resolve_reference(self, spec: str, from_path: str, known: Collection[str]) -> str | None:
        """Resolve ``spec`` against the known file set, or None."""
        for candidate in self.candidates(spec, from_path):
            if candidate in known:
                return candidate
        return None

    def analyze_file(self, path: str, content: str, known: Collection[str]) -> FileAnalysis:
        """Extract references, exports and component usages from one file."""
        references = extract_references(content)
        related: list[str] = []
        for spec in references:
            target = self.resolve_reference(spec, path, known)
            if target is not None and target != path and target not in related:
                related.append(target)

        exports: list[str] = []
        for match in _EXPORT_PATTERN.finditer(content):
            if match.group(1) not in exports:
                exports.append(match.group(1))

        components: list[str] = []
        for match in _COMPONENT_PATTERN.finditer(content):
            if match.group(1) not in components:
                components.append(match.group(1))

        return FileAnalysis(
            path=path,
            references=references,
            related_files=related,
            exports=exports,
            components=components,
            stylesheets=[spec for spec in references if spec.endswith(STYLESHEET_EXTENSIONS)],
        )

    def resolve(self, files: Mapping[str, str], related: Mapping[str, str] | None = None) -> Resolution:
        """Resolve processing order, risk and cycles for ``files``.

        Args:
            files: Content of the affected files keyed by path.
            related: Optional wider content map (for example a repository
                snapshot) from which referenced files are pulled in,
                bounded by ``max_depth`` and ``max_related_files``.

        Returns:
            Resolution covering the input files and every related file
            that was pulled in. Never raises on malformed source.
        """
        inputs: dict[str, str] = {}
        for path, content in files.items():
            canonical = normalize_path(path)
            if canonical and canonical not in inputs:
                inputs[canonical] = content or ""

        pool: dict[str, str] = {}
        for path, content in (related or {}).items():
            canonical = normalize_path(path)
            if canonical:
                pool[canonical] = content or ""
        pool.update(inputs)

        analyses: dict[str, FileAnalysis] = {}
        queued = set(inputs)
        queue: deque[tuple[str, int]] = deque((path, 0) for path in inputs)
        extra = 0

        while queue:
            path, depth = queue.popleft()
            analysis = self.analyze_file(path, pool[path], pool)
            analyses[path] = analysis
            if depth >= self.max_depth:
                continue
            for target in analysis.related_files:
                if target in queued:
                    continue
                if extra >= self.max_related_files:
                    log.debug("related_file_cap_reached", path=path, skipped=target)
                    continue
                queued.add(target)
                extra += 1
                queue.append((target, depth + 1))

        graph = {
            path: [target for target in analysis.related_files if target in analyses]
            for path, analysis in analyses.items()
        }
        order, cycles = self._topological_order(graph)
        risk = self._classify_risk(graph, analyses)

        if cycles:
            log.warning("dependency_cycles_detected", count=len(cycles), cycles=cycles)
        log.debug(
            "dependencies_resolved",
            input_files=len(inputs),
            related_files=extra,
            order=order,
        )
        return Resolution(
            order=order,
            risk=risk,
            cycles=cycles,
            graph=graph,
            analyses=analyses,
            inputs=list(inputs),
        )

    async def collect(self, paths: Iterable[str], fetch: FetchContent) -> dict[str, str]:
        """Fetch the inputs and their referenced files with a bounded walk.

        Args:
            paths: Affected file paths.
            fetch: Async callable returning a file's content, or None when
                the file does not exist.

        Returns:
            Content keyed by canonical path for every file that exists.
            Inputs that do not exist yet are omitted.
        """
        contents: dict[str, str] = {}
        seen: set[str] = set()
        queue: deque[tuple[str, int]] = deque()

        for path in paths:
            canonical = normalize_path(path)
            if not canonical or canonical in seen:
                continue
            seen.add(canonical)
            content = await fetch(canonical)
            if content is None:
                log.debug("input_file_missing", path=canonical)
                continue
            contents[canonical] = content
            queue.append((canonical, 0))

        extra = 0
        while queue:
            path, depth = queue.popleft()
            if depth >= self.max_depth:
                continue
            for spec in extract_references(contents[path]):
                options = self.candidates(spec, path)
                if not options or any(option in seen for option in options):
                    continue
                if extra >= self.max_related_files:
                    break
                for option in options:
                    seen.add(option)
                    content = await fetch(option)
                    if content is not None:
                        contents[option] = content
                        queue.append((option, depth + 1))
                        extra += 1
                        break

        log.debug("related_files_collected", total=len(contents), related=extra)
        return contents

    def suggest_additional_updates(
        self, resolution: Resolution, changed_files: Iterable[str]
    ) -> list[UpdateSuggestion]:
        """Suggest files outside the batch that import a changed file.

        A file importing a changed file is a low priority suggestion. It is
        medium when the changed file exports type or interface names, and
        high when a component file imports a changed ``types`` module.
        Results are unique per file and sorted by priority, high first.
        """
        changed = [normalize_path(path) for path in changed_files]
        changed_set = set(changed)
        suggestions: dict[str, UpdateSuggestion] = {}

        for changed_file in changed:
            analysis = resolution.analyses.get(changed_file)
            if analysis is None:
                continue
            exports_types = any("Interface" in name or "Type" in name for name in analysis.exports)
            for dependent in resolution.dependents(changed_file):
                if dependent in changed_set or dependent in suggestions:
                    continue
                if "component" in dependent.lower() and "types" in changed_file.lower():
                    suggestion = UpdateSuggestion(
                        dependent, f"Component may need prop updates from {changed_file}", Priority.HIGH
                    )
                elif exports_types:
                    suggestion = UpdateSuggestion(
                        dependent, f"Uses types/interfaces from {changed_file}", Priority.MEDIUM
                    )
                else:
                    suggestion = UpdateSuggestion(dependent, f"Imports from changed file {changed_file}")
                suggestions[dependent] = suggestion

        return sorted(suggestions.values(), key=lambda s: s.priority.rank)

    def _topological_order(self, graph: Mapping[str, list[str]]) -> tuple[list[str], list[list[str]]]:
        """Depth-first topological sort emitting dependencies first.

        Uses an explicit stack so deep graphs cannot hit the recursion limit.
        """
        order: list[str] = []
        cycles: list[list[str]] = []
        done: set[str] = set()

        for root in graph:
            if root in done:
                continue
            path: list[str] = [root]
            on_stack = {root}
            iterators = [iter(graph[root])]

            while iterators:
                node = path[-1]
                for target in iterators[-1]:
                    if target in done:
                        continue
                    if target in on_stack:
                        cycles.append(path[path.index(target) :])
                        continue
                    path.append(target)
                    on_stack.add(target)
                    iterators.append(iter(graph[target]))
                    break
                else:
                    iterators.pop()
                    path.pop()
                    on_stack.discard(node)
                    done.add(node)
                    order.append(node)

        return order, cycles

    def _classify_risk(
        self, graph: Mapping[str, list[str]], analyses: Mapping[str, FileAnalysis]
    ) -> dict[str, RiskLevel]:
        fan_in = {path: 0 for path in graph}
        for source, targets in graph.items():
            for target in targets:
                if target != source:
                    fan_in[target] += 1

        risk: dict[str, RiskLevel] = {}
        for path, count in fan_in.items():
            if count > 5:
                level = RiskLevel.HIGH
            elif count > 2:
                level = RiskLevel.MEDIUM
            else:
                level = RiskLevel.LOW
            if self._is_shared_path(path) or len(analyses[path].exports) > 3:
                level = level.escalate()
            risk[path] = level
        return risk

    @staticmethod
    def _is_shared_path(path: str) -> bool:
        return any(segment in SHARED_SEGMENTS for segment in path.split("/")[:-1])

"""Tests for engine/resolver.py."""

import pytest

from changeflow.engine.resolver import DependencyResolver, extract_references
from changeflow.enums import Priority, RiskLevel


@pytest.fixture
def resolver() -> DependencyResolver:
    return DependencyResolver(path_aliases={"@/": "src/"})


class TestExtractReferences:
    """Tests for extract_references."""

    def test_all_reference_forms_in_source_order(self):
        """Should find imports, requires, dynamic imports and re-exports."""
        content = (
            "import a from './a'\n"
            "const b = require('./b')\n"
            "const C = lazy(() => import('./c'))\n"
            "export * from './d'\n"
            "export { e } from './e'\n"
            "import './styles.css'\n"
        )

        assert extract_references(content) == ["./a", "./b", "./c", "./d", "./e", "./styles.css"]

    def test_duplicates_keep_first_occurrence(self):
        """Should drop repeated specifiers."""
        content = "import a from './a'\nimport { b } from './b'\nimport { c } from './a'\n"

        assert extract_references(content) == ["./a", "./b"]

    def test_malformed_source_yields_nothing(self):
        """Should not raise on arbitrary text."""
        assert extract_references("import from\n)))(((") == []


class TestCandidates:
    """Tests for specifier resolution."""

    def test_bare_package_has_no_candidates(self, resolver: DependencyResolver):
        assert resolver.candidates("react", "src/App.tsx") == []
        assert resolver.candidates("lodash/fp", "src/App.tsx") == []

    def test_relative_specifier_tries_extensions_and_index(self, resolver: DependencyResolver):
        candidates = resolver.candidates("./components/Header", "src/App.tsx")

        assert candidates[0] == "src/components/Header"
        assert "src/components/Header.tsx" in candidates
        assert "src/components/Header/index.ts" in candidates

    def test_alias_specifier(self, resolver: DependencyResolver):
        candidates = resolver.candidates("@/lib/api", "src/pages/Home.tsx")

        assert "src/lib/api.ts" in candidates

    def test_explicit_extension_is_used_as_is(self, resolver: DependencyResolver):
        assert resolver.candidates("../types.ts", "src/components/Header.tsx") == ["src/types.ts"]

    def test_specifier_above_repository_root(self, resolver: DependencyResolver):
        assert resolver.candidates("../../outside", "src/App.tsx") == []


class TestResolveOrder:
    """Tests for processing order and cycles."""

    def test_dependency_comes_before_dependent(self, resolver: DependencyResolver):
        """A imports B, so B is processed first."""
        result = resolver.resolve(
            {
                "src/A.tsx": "import B from './B'",
                "src/B.tsx": "export const B = () => null",
            }
        )

        assert result.order == ["src/B.tsx", "src/A.tsx"]
        assert result.cycles == []
        assert result.graph["src/A.tsx"] == ["src/B.tsx"]

    def test_every_file_listed_once(self, resolver: DependencyResolver):
        files = {
            "src/a.ts": "import b from './b'\nimport c from './c'",
            "src/b.ts": "import c from './c'",
            "src/c.ts": "export const c = 1",
            "src/d.ts": "export const d = 1",
        }

        result = resolver.resolve(files)

        assert sorted(result.order) == sorted(files)
        assert result.order.index("src/c.ts") < result.order.index("src/b.ts") < result.order.index("src/a.ts")

    def test_cycle_is_recorded_and_resolution_terminates(self, resolver: DependencyResolver):
        result = resolver.resolve(
            {
                "src/A.tsx": "import B from './B'",
                "src/B.tsx": "import A from './A'",
            }
        )

        assert result.order == ["src/B.tsx", "src/A.tsx"]
        assert result.cycles == [["src/A.tsx", "src/B.tsx"]]

    def test_self_import_is_not_an_edge(self, resolver: DependencyResolver):
        result = resolver.resolve({"src/A.tsx": "import A from './A'"})

        assert result.graph == {"src/A.tsx": []}
        assert result.cycles == []

    def test_paths_are_canonicalised(self, resolver: DependencyResolver):
        result = resolver.resolve({"./src/x/../A.tsx": "", "/src/B.tsx": ""})

        assert result.inputs == ["src/A.tsx", "src/B.tsx"]

    def test_empty_input(self, resolver: DependencyResolver):
        result = resolver.resolve({})

        assert result.order == []
        assert result.risk == {}


class TestRelatedFiles:
    """Tests for the bounded related-file walk."""

    def test_walk_is_bounded_by_depth(self):
        resolver = DependencyResolver(max_depth=2)
        related = {
            "src/a.ts": "import b from './b'",
            "src/b.ts": "import c from './c'",
            "src/c.ts": "import d from './d'",
            "src/d.ts": "export const d = 1",
        }

        result = resolver.resolve({"src/a.ts": related["src/a.ts"]}, related=related)

        assert set(result.order) == {"src/a.ts", "src/b.ts", "src/c.ts"}
        assert result.graph["src/c.ts"] == []

    def test_walk_is_capped(self):
        resolver = DependencyResolver(max_related_files=1)
        related = {
            "src/a.ts": "import b from './b'\nimport c from './c'",
            "src/b.ts": "",
            "src/c.ts": "",
        }

        result = resolver.resolve({"src/a.ts": related["src/a.ts"]}, related=related)

        assert set(result.order) == {"src/a.ts", "src/b.ts"}

    @pytest.mark.asyncio
    async def test_collect_fetches_inputs_and_references(self, resolver: DependencyResolver, sample_files):
        fetched: list[str] = []

        async def fetch(path: str) -> str | None:
            fetched.append(path)
            return sample_files.get(path)

        contents = await resolver.collect(["src/App.tsx", "src/New.tsx"], fetch)

        assert set(contents) == {"src/App.tsx", "src/components/Header.tsx", "src/types.ts"}
        assert "src/New.tsx" in fetched
        assert fetched.count("src/components/Header.tsx") == 1


class TestRisk:
    """Tests for risk classification."""

    def test_fan_in_thresholds(self, resolver: DependencyResolver):
        files = {"src/util.ts": "export const u = 1", "src/helper.ts": "export const h = 1"}
        for i in range(6):
            files[f"src/f{i}.ts"] = "import u from './util'"
        for i in range(3):
            files[f"src/g{i}.ts"] = "import h from './helper'"

        result = resolver.resolve(files)

        assert result.fan_in("src/util.ts") == 6
        assert result.risk["src/util.ts"] is RiskLevel.HIGH
        assert result.risk["src/helper.ts"] is RiskLevel.MEDIUM
        assert result.risk["src/f0.ts"] is RiskLevel.LOW

    def test_single_dependent_is_low(self, resolver: DependencyResolver):
        result = resolver.resolve({"src/A.tsx": "import B from './B'", "src/B.tsx": ""})

        assert result.risk["src/B.tsx"] is RiskLevel.LOW

    def test_shared_directory_escalates(self, resolver: DependencyResolver):
        result = resolver.resolve({"src/lib/format.ts": "export const f = 1"})

        assert result.risk["src/lib/format.ts"] is RiskLevel.MEDIUM

    def test_many_exports_escalate(self, resolver: DependencyResolver):
        content = "\n".join(f"export const v{i} = {i}" for i in range(4))

        result = resolver.resolve({"src/values.ts": content})

        assert result.risk["src/values.ts"] is RiskLevel.MEDIUM

    def test_to_dict_is_json_friendly(self, resolver: DependencyResolver):
        result = resolver.resolve({"src/A.tsx": "import B from './B'", "src/B.tsx": ""})

        data = result.to_dict()

        assert data["order"] == ["src/B.tsx", "src/A.tsx"]
        assert data["risk"] == {"src/A.tsx": "low", "src/B.tsx": "low"}


class TestSuggestions:
    """Tests for suggest_additional_updates."""

    def test_priorities_and_sorting(self, resolver: DependencyResolver):
        files = {
            "src/types.ts": "export interface ButtonProps { label: string }\nexport type ButtonType = 'a'",
            "src/components/Button.tsx": "import { ButtonProps } from '../types'",
            "src/pages/Home.tsx": "import { ButtonType } from '../types'",
            "src/utils.ts": "export const clamp = 1",
            "src/pages/About.tsx": "import { clamp } from '../utils'",
        }
        result = resolver.resolve(files)

        suggestions = resolver.suggest_additional_updates(result, ["src/utils.ts", "src/types.ts"])

        assert [(s.file_path, s.priority) for s in suggestions] == [
            ("src/components/Button.tsx", Priority.HIGH),
            ("src/pages/Home.tsx", Priority.MEDIUM),
            ("src/pages/About.tsx", Priority.LOW),
        ]

    def test_changed_files_are_not_suggested(self, resolver: DependencyResolver):
        result = resolver.resolve({"src/A.tsx": "import B from './B'", "src/B.tsx": ""})

        assert resolver.suggest_additional_updates(result, ["src/A.tsx", "src/B.tsx"]) == []

"""
Tests for hybrid discovery: executing spec modules, falling back to static
parsing, caching compiled modules and keeping the ambient DSL state clean.
"""
import pytest

from specmon import dsl
from specmon.cache import CacheStore
from specmon.change_tracker import SpecChangeTracker
from specmon.discovery import DiscoveryState, Executed, SpecDiscoverer, StaticFallback
from specmon.tree import DiscoverySnapshot


def ids(outcome):
    return [spec.id for spec in outcome.specs]


class TestExecutedDiscovery:
    def test_executes_module(self, project, discoverer, calculator_spec):
        path = project.write("calc_spec.py", calculator_spec)
        outcome = discoverer.discover_file(path)

        assert isinstance(outcome, Executed)
        assert discoverer.state(path) is DiscoveryState.EXECUTED
        assert ids(outcome) == [
            "calc_spec.py:Calculator/adds",
            "calc_spec.py:Calculator/divides",
            "calc_spec.py:Calculator/with negatives/subtracts",
        ]
        adds, divides, subtracts = outcome.specs
        assert adds.tags == ("math",)
        assert adds.line == 4
        assert adds.end_line == 6
        assert divides.pending
        assert not subtracts.pending
        assert not any(spec.has_compilation_error for spec in outcome.specs)

    def test_bodies_are_callable(self, project, discoverer):
        path = project.write(
            "body_spec.py",
            '''
            from specmon.dsl import describe, it

            calls = []

            with describe("Body"):
                @it("records")
                def _():
                    calls.append("ran")
                    return calls
            ''',
        )
        (spec,) = discoverer.discover_file(path).specs
        assert spec.definition.body() == ["ran"]

    def test_state_before_discovery(self, project, discoverer):
        assert discoverer.state(project.path("never_spec.py")) is DiscoveryState.NOT_STARTED

    def test_missing_module_raises(self, project, discoverer):
        with pytest.raises(FileNotFoundError):
            discoverer.discover_file(project.path("gone_spec.py"))
        assert discoverer.state(project.path("gone_spec.py")) is DiscoveryState.NOT_STARTED

    def test_forget_drops_per_module_state(self, project, discoverer, calculator_spec):
        path = project.write("calc_spec.py", calculator_spec)
        discoverer.discover_file(path)
        project.remove("calc_spec.py")

        discoverer.forget(path)

        assert discoverer.state(path) is DiscoveryState.NOT_STARTED
        assert path not in discoverer._path_locks
        assert not discoverer.graph.is_test_module(path)

    def test_nested_directory_relative_path(self, project, discoverer, calculator_spec):
        path = project.write("specs/math/calc_spec.py", calculator_spec)
        outcome = discoverer.discover_file(path)
        assert outcome.specs[0].id == "specs/math/calc_spec.py:Calculator/adds"

    def test_spec_imports_local_helper(self, project, discoverer):
        project.write("helpers.py", "def double(x):\n    return 2 * x\n")
        path = project.write(
            "helper_spec.py",
            '''
            from helpers import double
            from specmon.dsl import describe, it

            with describe("Helpers"):
                @it("doubles " + str(double(2)))
                def _():
                    assert double(2) == 4
            ''',
        )
        outcome = discoverer.discover_file(path)
        assert isinstance(outcome, Executed)
        assert outcome.specs[0].description == "doubles 4"


class TestIdempotence:
    def test_unchanged_module_yields_empty_change_set(self, project, discoverer, calculator_spec):
        path = project.write("calc_spec.py", calculator_spec)
        tracker = SpecChangeTracker()

        first = discoverer.snapshot(discoverer.discover_file(path))
        tracker.record_state(path, first)
        second = discoverer.snapshot(discoverer.discover_file(path))

        assert first.identities == second.identities
        assert not tracker.get_changes(path, second).has_changes

    def test_executed_and_static_fingerprints_agree(self, project, discoverer, calculator_spec):
        """Both discovery paths describe an unchanged case identically."""
        path = project.write("calc_spec.py", calculator_spec)
        executed = discoverer.snapshot(discoverer.discover_file(path))

        parsed = discoverer.parser.parse_file(path)
        from specmon.tree import flatten_tree

        static = DiscoverySnapshot.from_specs(flatten_tree(parsed.root, path, "calc_spec.py"))
        assert executed == static


class TestCaching:
    def test_second_discovery_hits_the_cache(self, project, discoverer, executor, calculator_spec):
        path = project.write("calc_spec.py", calculator_spec)
        discoverer.discover_file(path)
        outcome = discoverer.discover_file(path)
        assert executor.compiled == [path]
        assert outcome.cache_hit

    def test_dependency_change_forces_recompilation(self, project, discoverer, executor):
        project.write("helpers.py", "VALUE = 1\n")
        path = project.write(
            "dep_spec.py",
            '''
            import helpers
            from specmon.dsl import describe, it

            with describe("Dep"):
                @it("value " + str(helpers.VALUE))
                def _():
                    pass
            ''',
        )
        discoverer.discover_file(path)
        project.write("helpers.py", "VALUE = 2\n")
        outcome = discoverer.discover_file(path)

        assert executor.compiled == [path, path]
        assert outcome.specs[0].description == "value 2"

    def test_transitive_dependency_change_forces_recompilation(self, project, discoverer, executor):
        project.write("base.py", "VALUE = 1\n")
        project.write("helpers.py", "from base import VALUE\n")
        path = project.write("dep_spec.py", "import helpers\nfrom specmon.dsl import it\nit('x')\n")
        discoverer.discover_file(path)
        discoverer.discover_file(path)
        project.write("base.py", "VALUE = 2\n")
        discoverer.discover_file(path)
        assert executor.compiled == [path, path]

    def test_compiled_modules_persist(self, project, executor, calculator_spec, tmp_path):
        from specmon.db import DB

        path = project.write("calc_spec.py", calculator_spec)
        db = DB(str(tmp_path / ".specmondata"))
        try:
            SpecDiscoverer(project.root, cache=CacheStore(db), executor=executor).discover_file(path)
            outcome = SpecDiscoverer(project.root, cache=CacheStore(db), executor=executor).discover_file(path)
        finally:
            db.close()
        assert executor.compiled == [path]
        assert isinstance(outcome, Executed)


class TestStaticFallback:
    def test_syntax_error_falls_back(self, project, discoverer):
        path = project.write(
            "broken_spec.py",
            '''
            from specmon.dsl import describe, it

            with describe("Broken"):
                @it("still listed")
                def _():
                    assert (1 +
            ''',
        )
        outcome = discoverer.discover_file(path)

        assert isinstance(outcome, StaticFallback)
        assert discoverer.state(path) is DiscoveryState.COMPILE_FAILED
        assert "SyntaxError" in outcome.diagnostic
        (spec,) = outcome.specs
        assert spec.id == "broken_spec.py:Broken/still listed"
        assert spec.has_compilation_error
        assert spec.diagnostic == outcome.diagnostic

    def test_module_level_exception_falls_back(self, project, discoverer):
        path = project.write(
            "raising_spec.py",
            '''
            from specmon.dsl import describe, it

            with describe("Raising"):
                @it("declared before the error")
                def _():
                    pass

                raise RuntimeError("setup exploded")
            ''',
        )
        outcome = discoverer.discover_file(path)
        assert isinstance(outcome, StaticFallback)
        assert "RuntimeError" in outcome.diagnostic
        assert "line 8" in outcome.diagnostic
        assert [spec.description for spec in outcome.specs] == ["declared before the error"]

    def test_fixing_the_module_executes_again(self, project, discoverer, calculator_spec):
        path = project.write("calc_spec.py", "def broken(:\n")
        assert isinstance(discoverer.discover_file(path), StaticFallback)
        project.write("calc_spec.py", calculator_spec)
        assert isinstance(discoverer.discover_file(path), Executed)


class TestAmbientState:
    def test_declaring_outside_discovery_fails(self):
        with pytest.raises(dsl.SpecDeclarationError):
            dsl.it("orphan")

    def test_failed_module_does_not_leak_into_next(self, project, discoverer, calculator_spec):
        broken = project.write(
            "half_spec.py",
            '''
            from specmon.dsl import describe, it

            with describe("Half"):
                raise ValueError("stop")
            ''',
        )
        path = project.write("calc_spec.py", calculator_spec)
        discoverer.discover_file(broken)
        outcome = discoverer.discover_file(path)
        assert [spec.context_path[0] for spec in outcome.specs] == ["Calculator"] * 3
        with pytest.raises(dsl.SpecDeclarationError):
            dsl.describe("after").__enter__()

    def test_only_first_top_level_group_is_used(self, project, discoverer):
        path = project.write(
            "two_spec.py",
            '''
            from specmon.dsl import describe, it

            with describe("First"):
                it("one")

            with describe("Second"):
                it("two")
            ''',
        )
        outcome = discoverer.discover_file(path)
        assert ids(outcome) == ["two_spec.py:First/one"]
        assert any("Second" in warning for warning in outcome.warnings)


class TestDiscoverAsync:
    @pytest.mark.asyncio
    async def test_discovers_every_module(self, project, discoverer, calculator_spec):
        project.write("calc_spec.py", calculator_spec)
        project.write("other_spec.py", "from specmon.dsl import it\nit('alone')\n")
        project.write("helpers.py", "")

        result = await discoverer.discover_async()
        assert result.ok
        assert sorted(spec.id for spec in result.specs) == [
            "calc_spec.py:Calculator/adds",
            "calc_spec.py:Calculator/divides",
            "calc_spec.py:Calculator/with negatives/subtracts",
            "other_spec.py:alone",
        ]

    @pytest.mark.asyncio
    async def test_unreadable_module_is_a_discovery_error(self, project, discoverer, monkeypatch, calculator_spec):
        present = project.write("calc_spec.py", calculator_spec)
        missing = project.path("vanished_spec.py")
        monkeypatch.setattr(discoverer, "find_spec_files", lambda root=None: [present, missing])

        result = await discoverer.discover_async()
        assert len(result.specs) == 3
        (error,) = result.errors
        assert error.relative_source_file == "vanished_spec.py"
        assert "FileNotFoundError" in error.message

    @pytest.mark.asyncio
    async def test_discover_file_async(self, project, discoverer, calculator_spec):
        path = project.write("calc_spec.py", calculator_spec)
        specs = await discoverer.discover_file_async(path)
        assert len(specs) == 3

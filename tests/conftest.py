"""
Shared fixtures for specmon tests.

Spec projects are written into ``tmp_path``; plugin tests use ``pytester``.
"""
import os
import textwrap
import time

import pytest

from specmon.cache import CacheStore
from specmon.discovery import SpecDiscoverer
from specmon.executor import ModuleExecutor

pytest_plugins = ["pytester"]


class SpecProject:
    """A throwaway project directory with helpers to (re)write modules."""

    def __init__(self, root):
        self.root = root
        self._clock = time.time() - 1000

    def write(self, name, source) -> str:
        path = self.root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(source).lstrip("\n"), encoding="utf-8")
        # strictly increasing mtimes, whatever the filesystem's resolution
        self._clock += 1
        os.utime(path, (self._clock, self._clock))
        return os.path.normcase(str(path))

    def remove(self, name):
        os.remove(self.root / name)

    def path(self, name) -> str:
        return os.path.normcase(str(self.root / name))


class CountingExecutor(ModuleExecutor):
    def __init__(self):
        self.compiled = []

    def compile(self, source, path):
        self.compiled.append(path)
        return super().compile(source, path)


@pytest.fixture
def project(tmp_path):
    return SpecProject(tmp_path)


@pytest.fixture
def executor():
    return CountingExecutor()


@pytest.fixture
def discoverer(project, executor):
    spec_discoverer = SpecDiscoverer(project.root, cache=CacheStore(), executor=executor)
    yield spec_discoverer
    spec_discoverer.close()


CALCULATOR_SPEC = '''
from specmon.dsl import describe, context, it, fit, xit

with describe("Calculator"):
    @it("adds", tags=["math"])
    def _():
        assert 1 + 1 == 2

    with context("with negatives"):
        @it("subtracts")
        def _():
            assert 1 - 2 == -1

    it("divides")
'''


@pytest.fixture
def calculator_spec():
    return CALCULATOR_SPEC

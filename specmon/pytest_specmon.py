# -*- coding: utf-8 -*-
"""
Main module of the specmon pytest plugin.

Spec modules are collected through the hybrid discoverer: one pytest item per
case, named by its display name (``Group > Sub group > case``).
"""
import asyncio
import fnmatch
import inspect
import os
import re

import pytest
from _pytest.config import Config

from specmon import configure
from specmon.cache import CacheStore
from specmon.common import SpecmonException, get_logger, normalize_path
from specmon.configure import DEFAULT_DATAFILE, DEFAULT_SPEC_GLOB, SpecmonConf
from specmon.db import DB
from specmon.discovery import SpecDiscoverer, StaticFallback
from specmon.static_parser import NoSpecsAtLineError, StaticSpecParser, find_specs_at_line
from specmon.tree import DiscoveredSpec

logger = get_logger(__name__)


class SpecCompilationError(SpecmonException):
    pass


def pytest_addoption(parser):
    group = parser.getgroup("run describe/it spec modules (pytest-specmon)")

    group.addoption(
        "--specmon-filter",
        action="store",
        dest="specmon_filter",
        default=None,
        metavar="PATTERN",
        help=(
            "Only run specs whose display name ('Group > case') matches this "
            "regular expression. Used by 'specmon watch' for filtered reruns."
        ),
    )

    group.addoption(
        "--specmon-line",
        action="append",
        dest="specmon_lines",
        default=[],
        metavar="FILE:LINE",
        help=(
            "Only run the specs declared at FILE:LINE: the case spanning the line, "
            "or every case of the group spanning it. May be repeated."
        ),
    )

    group.addoption(
        "--specmon-no-cache",
        action="store_true",
        dest="specmon_no_cache",
        help="Don't read or write compiled spec modules in the .specmondata file.",
    )

    group.addoption(
        "--no-specmon",
        action="store_true",
        dest="no_specmon",
        help="Don't collect spec modules (even if the plugin is installed).",
    )

    parser.addini("specmon_spec_glob", "glob of spec module file names", default=DEFAULT_SPEC_GLOB)
    parser.addini("specmon_datafile", "cache file for compiled spec modules", default=DEFAULT_DATAFILE)


def pytest_configure(config):
    if config.getoption("no_specmon"):
        return
    config.addinivalue_line("markers", "specmon: a case collected from a describe/it spec module")
    config.pluginmanager.register(SpecmonCollect(config, configure.from_pytest_config(config)), "SpecmonCollect")


def pytest_unconfigure(config):
    plugin = config.pluginmanager.get_plugin("SpecmonCollect")
    if plugin is not None:
        plugin.close()


def parse_line_option(value, rootdir):
    path, separator, line = value.rpartition(":")
    if not separator or not line.isdigit():
        raise pytest.UsageError(f"--specmon-line expects FILE:LINE, got {value!r}")
    if not os.path.isabs(path):
        path = os.path.join(rootdir, path)
    return normalize_path(path), int(line)


def select_by_lines(line_options, rootdir):
    """``{path: {display names}}`` for every ``FILE:LINE`` option."""
    parser = StaticSpecParser()
    selected = {}
    for value in line_options:
        path, line = parse_line_option(value, rootdir)
        try:
            matches = find_specs_at_line(parser.parse_file(path), line)
        except NoSpecsAtLineError as error:
            raise pytest.UsageError(f"{value}: {error}") from error
        selected.setdefault(path, set()).update(
            " > ".join(context_path + (spec.description,)) for context_path, spec in matches
        )
    return selected


class SpecmonCollect:
    def __init__(self, config: Config, conf: SpecmonConf):
        self.config = config
        self.conf = conf
        self._discoverer = None
        self._db = None

    @property
    def discoverer(self) -> SpecDiscoverer:
        # created on first use, so runs without spec modules leave no data file behind
        if self._discoverer is None:
            if self.conf.datafile_path:
                self._db = DB(self.conf.datafile_path)
            self._discoverer = SpecDiscoverer(
                self.conf.rootdir,
                cache=CacheStore(self._db),
                spec_glob=self.conf.spec_glob,
                max_workers=self.conf.max_workers,
            )
        return self._discoverer

    def pytest_collect_file(self, file_path, parent):
        if fnmatch.fnmatch(file_path.name, self.conf.spec_glob):
            return SpecModule.from_parent(parent, path=file_path)
        return None

    @pytest.hookimpl(trylast=True)
    def pytest_collection_modifyitems(self, session, config, items):  # pylint: disable=unused-argument
        pattern = config.getoption("specmon_filter")
        line_options = config.getoption("specmon_lines")
        if pattern is None and not line_options:
            return
        regex = re.compile(pattern) if pattern is not None else None
        by_line = select_by_lines(line_options, self.conf.rootdir) if line_options else None

        selected = []
        deselected = []
        for item in items:
            if not isinstance(item, SpecItem):
                selected.append(item)
                continue
            keep = True
            if regex is not None and not regex.search(item.spec.display_name):
                keep = False
            if by_line is not None:
                names = by_line.get(normalize_path(item.spec.source_file), set())
                keep = keep and item.spec.display_name in names
            (selected if keep else deselected).append(item)

        if deselected:
            items[:] = selected
            config.hook.pytest_deselected(items=deselected)

    def pytest_report_header(self, config):  # pylint: disable=unused-argument
        cache = "off" if self.conf.no_cache else self.conf.datafile
        return f"specmon: spec modules {self.conf.spec_glob}, cache {cache}"

    def close(self):
        if self._discoverer is not None:
            self._discoverer.close()
        if self._db is not None:
            self._db.close()


class SpecModule(pytest.File):
    def collect(self):
        plugin = self.config.pluginmanager.get_plugin("SpecmonCollect")
        outcome = plugin.discoverer.discover_file(str(self.path))
        for warning in outcome.warnings:
            logger.warning("%s: %s", outcome.relative_path, warning)
        if isinstance(outcome, StaticFallback):
            logger.warning("%s could not be executed: %s", outcome.relative_path, outcome.diagnostic)
        focus_mode = any(spec.focused for spec in outcome.specs)
        seen = set()
        for spec in outcome.specs:
            if spec.identity in seen:
                logger.warning("Skipping duplicate spec %s", spec.id)
                continue
            seen.add(spec.identity)
            yield SpecItem.from_parent(self, name=spec.display_name, spec=spec, focus_mode=focus_mode)


class SpecItem(pytest.Item):
    def __init__(self, *, spec: DiscoveredSpec, focus_mode=False, **kwargs):
        super().__init__(**kwargs)
        self.spec = spec
        self.focus_mode = focus_mode
        self.add_marker("specmon")
        self.extra_keyword_matches.update(spec.tags)
        self.user_properties.append(("spec_id", spec.id))

    def setup(self):
        if self.spec.has_compilation_error:
            return
        if self.spec.pending:
            pytest.skip("pending: no implementation")
        if self.spec.skipped:
            pytest.skip("skipped")
        if self.focus_mode and not self.spec.focused:
            pytest.skip("not focused")

    def runtest(self):
        if self.spec.has_compilation_error:
            raise SpecCompilationError(self.spec.diagnostic)
        body = self.spec.definition.body
        if inspect.iscoroutinefunction(body):
            asyncio.run(body())
        else:
            body()

    def repr_failure(self, excinfo, style=None):
        if isinstance(excinfo.value, SpecCompilationError):
            return f"{self.spec.identity.relative_path} failed to compile: {excinfo.value}"
        return super().repr_failure(excinfo, style=style)

    def reportinfo(self):
        return self.path, (self.spec.line or 1) - 1, self.spec.display_name

import os
from dataclasses import dataclass, fields, replace
from typing import Optional

from dotenv import load_dotenv

from specmon.common import LOG_LEVEL_ENV, get_logger

logger = get_logger(__name__)

DEFAULT_SPEC_GLOB = "*_spec.py"
DEFAULT_DATAFILE = ".specmondata"
DATAFILE_ENV = "SPECMON_DATAFILE"

ENVIRONMENT_KEYS = {
    "spec_glob": "SPECMON_SPEC_GLOB",
    "datafile": DATAFILE_ENV,
    "no_cache": "SPECMON_NO_CACHE",
    "debounce_ms": "SPECMON_DEBOUNCE_MS",
    "max_workers": "SPECMON_MAX_WORKERS",
    "log_level": LOG_LEVEL_ENV,
}

TRUE_VALUES = ("1", "true", "yes", "on")


@dataclass(frozen=True)
class SpecmonConf:
    rootdir: str
    spec_glob: str = DEFAULT_SPEC_GLOB
    datafile: str = DEFAULT_DATAFILE
    no_cache: bool = False
    debounce_ms: int = 200
    max_workers: int = 4
    log_level: str = "INFO"

    @property
    def datafile_path(self) -> Optional[str]:
        """Absolute path of the sqlite cache, or None when persistence is off."""
        if self.no_cache:
            return None
        return os.path.join(self.rootdir, self.datafile)

    @property
    def debounce_interval(self) -> float:
        return self.debounce_ms / 1000.0


def _coerce(name, raw):
    if name == "no_cache":
        return raw.strip().lower() in TRUE_VALUES
    if name in ("debounce_ms", "max_workers"):
        try:
            value = int(raw)
        except ValueError:
            logger.warning("Ignoring %s=%r: not an integer", ENVIRONMENT_KEYS[name], raw)
            return None
        if value < (0 if name == "debounce_ms" else 1):
            logger.warning("Ignoring %s=%r: out of range", ENVIRONMENT_KEYS[name], raw)
            return None
        return value
    if name == "log_level":
        return raw.upper()
    return raw


def load_env_file(rootdir) -> bool:
    """Load ``rootdir/.env`` without overriding variables already set."""
    env_file = os.path.join(rootdir, ".env")
    if not os.path.isfile(env_file):
        return False
    return load_dotenv(env_file, override=False)


def from_environment(rootdir, environ=None, **overrides) -> SpecmonConf:
    """
    Resolve configuration: defaults, then ``.env``, then ``SPECMON_*``
    variables, then ``overrides`` (ini and command line values; ``None``
    means "not given").
    """
    rootdir = os.path.abspath(os.fspath(rootdir))
    if environ is None:
        load_env_file(rootdir)
        environ = os.environ

    values = {}
    for name, variable in ENVIRONMENT_KEYS.items():
        raw = environ.get(variable)
        if raw is None or raw == "":
            continue
        value = _coerce(name, raw)
        if value is not None:
            values[name] = value

    known = {f.name for f in fields(SpecmonConf)}
    for name, value in overrides.items():
        if name not in known:
            raise TypeError(f"unknown configuration key: {name}")
        if value is not None:
            values[name] = value

    return SpecmonConf(rootdir=rootdir, **values)


def from_pytest_config(config) -> SpecmonConf:
    overrides = {}
    spec_glob = config.getini("specmon_spec_glob")
    if spec_glob and spec_glob != DEFAULT_SPEC_GLOB:
        overrides["spec_glob"] = spec_glob
    datafile = config.getini("specmon_datafile")
    if datafile and datafile != DEFAULT_DATAFILE:
        overrides["datafile"] = datafile
    if config.getoption("specmon_no_cache"):
        overrides["no_cache"] = True
    return from_environment(str(config.rootpath), **overrides)


def with_overrides(conf: SpecmonConf, **overrides) -> SpecmonConf:
    return replace(conf, **{k: v for k, v in overrides.items() if v is not None})

import inspect
import stat
import sys
import types

import pytest

from dbmanager.core.config import Settings, get_settings
from dbmanager.core.exporter import Exporter
from dbmanager.core.job_registry import JobRegistry, reset_job_registry
from dbmanager.core.models import ArtifactKind, DbAuth, DumpRequest, OutputMode

# Stand-in for mysqldump. Mirrors its argument layout: flags, database, tables.
FAKE_DUMP = '''#!{python}
import os
import sys
import time

args = sys.argv[1:]
log = os.environ.get("FAKE_DUMP_ARGS_LOG")
if log:
    with open(log, "a") as f:
        f.write(" ".join(args) + "\\n")

pid_file = os.environ.get("FAKE_DUMP_PID_FILE")
if pid_file:
    with open(pid_file, "w") as f:
        f.write(str(os.getpid()))

mode = os.environ.get("FAKE_DUMP_MODE", "ok")
structure = "-d" in args
tables = args[11:]

if mode == "fail" or (mode == "fail-data" and not structure):
    sys.stderr.write("mysqldump: Got error: 1045: Access denied for user 'root'\\n")
    sys.exit(2)

if mode == "quiet-hang":
    time.sleep(60)

if mode == "hang":
    sys.stdout.write("-- MySQL dump 10.13\\n")
    sys.stdout.flush()
    time.sleep(60)

sys.stderr.write("mysqldump: [Warning] Using a password on the command line interface can be insecure.\\n")
for table in tables:
    if structure:
        sys.stdout.write(
            "CREATE TABLE `%s` (`id` int NOT NULL AUTO_INCREMENT, PRIMARY KEY (`id`))"
            " ENGINE=InnoDB AUTO_INCREMENT=17 DEFAULT CHARSET=utf8mb4;\\n" % table
        )
    else:
        sys.stdout.write("INSERT INTO `%s` VALUES (1),(2),(3);\\n" % table)
    if mode == "slow":
        sys.stdout.flush()
        time.sleep(0.3)
'''


@pytest.fixture
def fake_dump(tmp_path):
    """Executable fake dump utility; behaviour is selected with FAKE_DUMP_MODE."""
    path = tmp_path / "bin" / "mysqldump"
    path.parent.mkdir()
    path.write_text(FAKE_DUMP.format(python=sys.executable))
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def args_log(tmp_path, monkeypatch):
    """File the fake dump utility appends its argv to, one line per pass."""
    path = tmp_path / "dump-args.log"
    monkeypatch.setenv("FAKE_DUMP_ARGS_LOG", str(path))
    return path


@pytest.fixture
def settings(tmp_path, fake_dump):
    return Settings(
        temp_root=str(tmp_path / "tmp"),
        dump_command=str(fake_dump),
        metrics_enabled=False,
        disconnect_poll_seconds=0.05,
    )


@pytest.fixture
def registry():
    return JobRegistry()


@pytest.fixture
def exporter(settings, registry):
    return Exporter(settings=settings, registry=registry)


@pytest.fixture
def auth():
    return DbAuth(host="db.internal:3307", username="root", password="s3cret", database="shop")


@pytest.fixture
def make_request(auth):
    def _make(tables=("users", "orders"), kinds=(ArtifactKind.STRUCTURE, ArtifactKind.DATA),
              mode=OutputMode.BACKGROUND_FILE, reset_auto_increment=True):
        return DumpRequest(auth=auth, tables=list(tables), kinds=list(kinds),
                           mode=mode, reset_auto_increment=reset_auto_increment)
    return _make


@pytest.fixture(autouse=True)
def _isolate_globals():
    get_settings.cache_clear()
    reset_job_registry()
    yield
    get_settings.cache_clear()
    reset_job_registry()


# Core modules / symbols we forbid patching so the subprocess path stays real
_FORBIDDEN_PREFIXES = [
    "asyncio.subprocess.",
    "asyncio.create_subprocess_exec",
    "subprocess.",
]

@pytest.hookimpl(tryfirst=True, hookwrapper=True)
def pytest_runtest_call(item):
    # Capture monkeypatch fixture (if used) and inspect its setattr usage
    mp = item.funcargs.get("monkeypatch") if hasattr(item, "funcargs") else None
    if mp:
        original_setattr = mp.setattr

        def guarded_setattr(target, name, *a, **kw):
            fq = None
            if isinstance(target, str):
                fq = target
            elif isinstance(target, types.ModuleType):
                fq = f"{target.__name__}.{name}"
            elif inspect.isclass(target):
                fq = f"{target.__module__}.{target.__name__}.{name}"
            if fq and any(fq.startswith(p) for p in _FORBIDDEN_PREFIXES):
                raise RuntimeError(f"Forbidden monkeypatch of real subprocess machinery: {fq}")
            return original_setattr(target, name, *a, **kw)

        mp.setattr = guarded_setattr  # type: ignore
    yield

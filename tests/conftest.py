import json

import pytest

from matrixci.context import RunContext, TriggerInfo
from matrixci.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def quiet_console():
    console = Console(quiet=True)
    set_console(console)
    yield console
    set_console(Console())


@pytest.fixture
def context(tmp_path):
    return RunContext(trigger=TriggerInfo(event="push", ref="refs/heads/main"), repo_root=tmp_path)


def coverage_json(files):
    """files: {path: (executed_lines, missing_lines)} -> coverage.py style JSON"""
    return json.dumps({
        "files": {
            path: {"executed_lines": sorted(executed), "missing_lines": sorted(missing)}
            for path, (executed, missing) in files.items()
        }
    })


@pytest.fixture
def make_coverage():
    return coverage_json

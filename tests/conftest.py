import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

import mtzst  # noqa: E402


@pytest.fixture()
def make_options():
    def _make(**kw):
        kw.setdefault("threads", 1)
        kw.setdefault("verbosity", 1)
        return mtzst.BatchOptions(**kw)

    return _make


@pytest.fixture()
def cwd(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return tmp_path

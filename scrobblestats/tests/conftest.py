import os
import sys
import pytest


def _ensure_project_root_on_sys_path() -> None:
    here = os.path.dirname(__file__)
    project_root = os.path.abspath(os.path.join(here, "..", ".."))
    if project_root not in sys.path:
        sys.path.insert(0, project_root)


_ensure_project_root_on_sys_path()


@pytest.fixture(autouse=True)
def _clear_lastfm_env():
    """Ensure LAST_FM_* and SCROBBLESTATS_* variables do not leak across tests.
    A developer's .env may set these; clear before each test and restore afterwards
    so tests explicitly setting them remain deterministic.
    """
    keys = [k for k in os.environ if k.startswith('LAST_FM_') or k.startswith('SCROBBLESTATS_')]
    backup = {k: os.environ.get(k) for k in keys}
    for k in keys:
        os.environ.pop(k, None)
    try:
        yield
    finally:
        for k in [k for k in os.environ if k.startswith('LAST_FM_') or k.startswith('SCROBBLESTATS_')]:
            os.environ.pop(k, None)
        for k, v in backup.items():
            if v is not None:
                os.environ[k] = v

"""Tests for gunicorn configuration."""
from __future__ import annotations

import importlib.util
import os
from pathlib import Path
from unittest.mock import patch

CONF_PATH = Path(__file__).resolve().parents[1] / "gunicorn.conf.py"


def _load(**env: str):
    with patch.dict(os.environ, env):
        spec = importlib.util.spec_from_file_location("gunicorn_conf", CONF_PATH)
        mod = importlib.util.module_from_spec(spec)  # type: ignore[arg-type]
        spec.loader.exec_module(mod)  # type: ignore[union-attr]
    return mod


class TestGunicornConfig:
    def test_defaults(self) -> None:
        mod = _load()
        assert mod.bind == "0.0.0.0:8000"
        assert "uvicorn" in mod.worker_class
        assert mod.timeout == 30
        assert mod.preload_app is False
        assert mod.proc_name == "subsflow"

    def test_access_log_off_unless_requested(self) -> None:
        os.environ.pop("GUNICORN_ACCESSLOG", None)
        assert _load().accesslog is None
        assert _load(GUNICORN_ACCESSLOG="-").accesslog == "-"

    def test_env_overrides(self) -> None:
        mod = _load(GUNICORN_WORKERS="4", GUNICORN_TIMEOUT="15", GUNICORN_PRELOAD="true")
        assert mod.workers == 4
        assert mod.timeout == 15
        assert mod.preload_app is True

from pathlib import Path

from nullspace import config
from nullspace.config import KdfParams
from nullspace.utils.logging import setup_logging


def test_kdf_params_from_env(monkeypatch):
    monkeypatch.setenv("NULLSPACE_ARGON2_TIME_COST", "3")
    monkeypatch.setenv("NULLSPACE_ARGON2_MEMORY_COST", "1024")
    monkeypatch.setenv("NULLSPACE_ARGON2_PARALLELISM", "2")
    assert KdfParams.from_env() == KdfParams(time_cost=3, memory_cost=1024, parallelism=2)


def test_kdf_defaults_without_env(monkeypatch):
    for key in ("NULLSPACE_ARGON2_TIME_COST", "NULLSPACE_ARGON2_MEMORY_COST", "NULLSPACE_ARGON2_PARALLELISM"):
        monkeypatch.delenv(key, raising=False)
    params = KdfParams.from_env()
    assert (params.time_cost, params.memory_cost, params.parallelism) == (2, 19456, 1)
    assert params.problems() == []


def test_invalid_int_falls_back(monkeypatch):
    monkeypatch.setenv("NULLSPACE_SEARCH_LIMIT", "lots")
    assert config.default_search_limit() == 20


def test_kdf_problems():
    assert KdfParams(time_cost=0).problems()
    assert KdfParams(parallelism=4, memory_cost=16).problems()


def test_data_dir(monkeypatch, tmp_path):
    monkeypatch.setenv("NULLSPACE_DATA_DIR", str(tmp_path))
    assert config.data_dir() == tmp_path
    monkeypatch.delenv("NULLSPACE_DATA_DIR")
    assert config.data_dir() == Path.home() / ".nullspace"


def test_setup_logging_returns_package_logger(monkeypatch):
    monkeypatch.setenv("NULLSPACE_LOG_LEVEL", "debug")
    assert setup_logging().name == "nullspace"

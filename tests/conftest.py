import json
from pathlib import Path

import pytest

from runtimectl.config import EngineSettings
from runtimectl.store import validate
from tests.fakes import make_catalog


def make_settings(tmp_path: Path, **overrides) -> EngineSettings:
    settings = EngineSettings(
        config_dir=str(tmp_path / "config"),
        state_dir=str(tmp_path / "state"),
        dynamic_probe_defaults=False,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def catalog_data() -> dict:
    return make_catalog()


@pytest.fixture
def catalog(catalog_data):
    return validate(catalog_data)


@pytest.fixture
def settings(tmp_path: Path) -> EngineSettings:
    return make_settings(tmp_path)


@pytest.fixture
def write_catalog(settings):
    def _write(data: dict | None = None) -> Path:
        path = settings.runtimes_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data if data is not None else make_catalog()))
        return path

    return _write

from __future__ import annotations

from pathlib import Path

import pytest

from fakes import FakeLoader, FakeRecurrentModel, FakeStillModel, make_models_dir
from matting.config import MODNET_FILE, PP_LITESEG_FILE, RVM_FILE


@pytest.fixture
def still_model() -> FakeStillModel:
    return FakeStillModel()


@pytest.fixture
def recurrent_model() -> FakeRecurrentModel:
    return FakeRecurrentModel()


@pytest.fixture
def loader(still_model, recurrent_model) -> FakeLoader:
    return FakeLoader(
        {
            PP_LITESEG_FILE: still_model,
            MODNET_FILE: still_model,
            RVM_FILE: recurrent_model,
        }
    )


@pytest.fixture
def all_models_dir(tmp_path: Path) -> Path:
    return make_models_dir(tmp_path, PP_LITESEG_FILE, MODNET_FILE, RVM_FILE)

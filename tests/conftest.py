import pytest

from dxfstruct.core.config import get_default_config
from helpers import make_project, single_beam_drawing


@pytest.fixture
def config():
    return get_default_config()


@pytest.fixture
def beam_project(config):
    return make_project(single_beam_drawing(), name="single-beam", config=config)

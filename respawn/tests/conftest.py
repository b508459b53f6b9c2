from __future__ import annotations

import pytest

from respawn.settings import Settings
from respawn.tests.utils import make_settings


@pytest.fixture
def settings() -> Settings:
    return make_settings()

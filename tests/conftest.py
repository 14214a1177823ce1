"""
DATABASE_URL must point at sqlite before reconeasy.db is imported, so it is
set here at collection time.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"

import pytest

from factories import make_card, tiered_card


@pytest.fixture
def flat_card():
    return make_card()


@pytest.fixture
def slab_card():
    return tiered_card()

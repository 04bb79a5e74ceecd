import pytest

from segmerge.token_utils import heuristic_tokens


@pytest.fixture
def token_counter():
    return heuristic_tokens

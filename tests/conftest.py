import pytest

from helpers import make_pipeline


@pytest.fixture
def pipeline(tmp_path):
    p = make_pipeline(tmp_path)
    yield p
    p.orchestrator.shutdown(wait=True)

import pytest

from common.previews import PreviewStore
from worker.controller import UploadQueue
from fakes import GatedExtractor, ScriptedExtractor


@pytest.fixture
def previews(tmp_path):
    store = PreviewStore(tmp_path / "previews", size=32)
    yield store
    store.close()


@pytest.fixture
def gated():
    return GatedExtractor()


@pytest.fixture
def scripted():
    return ScriptedExtractor(default=["1 Main St, Springfield"])


@pytest.fixture
def make_queue(previews):
    """Factory for queues that are shut down after the test."""
    created = []

    def _make(extractor, **kwargs):
        kwargs.setdefault("job_timeout", None)
        queue = UploadQueue(extractor, previews, **kwargs)
        created.append(queue)
        return queue

    yield _make

    for queue in created:
        queue.shutdown(wait=False)

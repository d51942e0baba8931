from pathlib import Path

import pytest
from PIL import Image

from common.errors import UnreadablePayloadError
from common.job_schema import Payload
from common.previews import PreviewStore
from fakes import make_image


def test_allocate_writes_bounded_thumbnail(tmp_path):
    store = PreviewStore(tmp_path / "p", size=32)
    path = store.allocate("job1", Payload(data=make_image(size=(200, 100), fmt="JPEG")))

    assert Path(path) == tmp_path / "p" / "job1.png"
    with Image.open(path) as img:
        assert img.format == "PNG"
        assert max(img.size) <= 32
    assert "job1" in store
    assert len(store) == 1


def test_unreadable_payload_leaves_nothing_behind(tmp_path):
    store = PreviewStore(tmp_path / "p")
    with pytest.raises(UnreadablePayloadError):
        store.allocate("job1", Payload(data=b"definitely not an image"))

    assert "job1" not in store
    assert list((tmp_path / "p").iterdir()) == []


def test_truncated_image_is_unreadable(tmp_path):
    store = PreviewStore(tmp_path / "p")
    data = make_image(size=(300, 300), fmt="JPEG")
    with pytest.raises(UnreadablePayloadError):
        store.allocate("job1", Payload(data=data[: len(data) // 2]))


def test_release_happens_once(tmp_path):
    store = PreviewStore(tmp_path / "p")
    path = Path(store.allocate("job1", Payload(data=make_image())))

    assert store.release("job1") is True
    assert not path.exists()
    assert store.release("job1") is False
    assert store.release("never-allocated") is False


def test_release_tolerates_file_already_gone(tmp_path):
    store = PreviewStore(tmp_path / "p")
    path = Path(store.allocate("job1", Payload(data=make_image())))
    path.unlink()
    assert store.release("job1") is True


def test_double_allocation_is_rejected(tmp_path):
    store = PreviewStore(tmp_path / "p")
    store.allocate("job1", Payload(data=make_image()))
    with pytest.raises(ValueError):
        store.allocate("job1", Payload(data=make_image(1)))


def test_close_releases_everything(tmp_path):
    store = PreviewStore(tmp_path / "p")
    paths = [Path(store.allocate(f"job{i}", Payload(data=make_image(i)))) for i in range(3)]
    store.close()
    assert len(store) == 0
    assert not any(p.exists() for p in paths)

import pytest

from highlight_reel.config import Config
from highlight_reel.database import TrackingStore
from highlight_reel.push import DispatchReceipt
from highlight_reel.storage import LocalObjectStore
from highlight_reel.upload import UploadSubmitter


class RecordingDispatcher:
    """Stands in for the push gateway client and remembers every send."""

    def __init__(self, error=None):
        self.calls = []
        self.error = error

    def send(self, token, title, body, deep_link_target="UploadStatus"):
        self.calls.append({
            "token": token,
            "title": title,
            "body": body,
            "deep_link_target": deep_link_target,
        })
        if self.error:
            raise self.error
        ticket = {"status": "ok", "id": f"ticket-{len(self.calls)}"}
        return DispatchReceipt(status="ok", ticket_id=ticket["id"], raw={"data": ticket})


@pytest.fixture
def config(tmp_path):
    return Config.from_dict({
        "storage": {"backend": "local", "base_path": str(tmp_path / "objects"), "chunk_size_mb": 1},
        "database": {"url": "sqlite://"},
    })


@pytest.fixture
def tracking_store():
    store = TrackingStore("sqlite://")
    store.create_tables()
    yield store
    store.engine.dispose()


@pytest.fixture
def object_store(tmp_path):
    return LocalObjectStore(str(tmp_path / "objects"), bucket="raw-uploads", chunk_size_mb=1)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def submitter(object_store, tracking_store):
    return UploadSubmitter(
        object_store,
        tracking_store,
        push_token_provider=lambda: "ExponentPushToken[abc]",
    )


@pytest.fixture
def make_video(tmp_path):
    def _make(name="game1.mp4", size=1024):
        path = tmp_path / "videos" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as f:
            f.write(b"\0" * size)
        return path
    return _make

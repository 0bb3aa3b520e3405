import io
from unittest import mock

import pytest
from botocore.exceptions import EndpointConnectionError

from highlight_reel.database import TrackingStoreError, UploadStatus
from highlight_reel.storage import CancelToken, ObjectStore, ObjectStoreError, S3ObjectStore
from highlight_reel.upload import (
    FileTooLarge,
    FlowStateError,
    RecordCreationFailed,
    SourceUnavailable,
    SubmissionState,
    TransferInterrupted,
    UploadCancelled,
    UploadFlow,
    UploadSubmitter,
    extension_for,
)

MB = 1024 * 1024
FOUR_GIB = 4 * 1024 ** 3


class BrokenObjectStore(ObjectStore):
    """Fails every transfer like a dropped connection."""

    def __init__(self):
        super().__init__("raw-uploads")

    def exists(self, key):
        return False

    def put(self, key, source, size, content_type, progress=None, cancel=None):
        raise ObjectStoreError("Connection reset by peer")


def test_extension_for():
    assert extension_for("game1.mp4") == "mp4"
    assert extension_for("clip.final.MOV") == "MOV"
    assert extension_for("noext") == "mp4"
    assert extension_for("trailing.") == "mp4"
    assert extension_for(None, default="mov") == "mov"


def test_submit_inserts_queued_record(submitter, object_store, tracking_store, make_video):
    path = make_video("game1.mp4", 2 * MB)

    record = submitter.submit(path, 2 * MB, "video/mp4", "u1")

    assert record.status == UploadStatus.QUEUED
    assert record.user_id == "u1"
    assert record.original_filename == "game1.mp4"
    assert record.file_size_bytes == 2 * MB
    assert record.push_token == "ExponentPushToken[abc]"
    assert record.storage_path == f"raw-uploads/u1/{record.id}.mp4"
    assert object_store.exists(f"u1/{record.id}.mp4")
    assert [r.id for r in tracking_store.list_uploads("u1")] == [record.id]


def test_file_too_large_fails_before_any_side_effect():
    object_store = mock.Mock()
    tracking_store = mock.Mock()
    token_provider = mock.Mock(return_value="token")
    submitter = UploadSubmitter(object_store, tracking_store, push_token_provider=token_provider)

    with pytest.raises(FileTooLarge) as exc:
        submitter.submit("/does/not/matter.mp4", FOUR_GIB + 1, "video/mp4", "u1")

    assert exc.value.user_message == "File is too large. Max 4 GB."
    token_provider.assert_not_called()
    object_store.put.assert_not_called()
    tracking_store.insert_upload.assert_not_called()


def test_exactly_four_gib_is_accepted(object_store, tracking_store):
    submitter = UploadSubmitter(object_store, tracking_store)
    record = submitter.submit(io.BytesIO(b"x"), FOUR_GIB, "video/mp4", "u1", filename="big.mp4")
    assert record.file_size_bytes == FOUR_GIB


def test_unreadable_source(object_store, tracking_store, tmp_path):
    token_provider = mock.Mock(return_value="token")
    submitter = UploadSubmitter(object_store, tracking_store, push_token_provider=token_provider)

    with pytest.raises(SourceUnavailable):
        submitter.submit(tmp_path / "missing.mp4", 10, "video/mp4", "u1")
    with pytest.raises(SourceUnavailable):
        submitter.submit(object(), 10, "video/mp4", "u1")

    token_provider.assert_not_called()
    assert tracking_store.list_uploads("u1") == []


def test_denied_push_permission_is_not_an_error(object_store, tracking_store, make_video):
    path = make_video()

    def denied():
        raise PermissionError("notifications not granted")

    for provider in (lambda: None, denied):
        submitter = UploadSubmitter(object_store, tracking_store, push_token_provider=provider)
        record = submitter.submit(path, 1024, "video/mp4", "u1")
        assert record.push_token is None


def test_filename_fallbacks(object_store, tracking_store):
    submitter = UploadSubmitter(object_store, tracking_store)

    record = submitter.submit(io.BytesIO(b"data"), 4, "video/mp4", "u1")
    assert record.original_filename == "video.mp4"
    assert record.storage_path.endswith(".mp4")

    record = submitter.submit(io.BytesIO(b"data"), 4, "video/quicktime", "u1", filename="match")
    assert record.original_filename == "match"
    assert record.storage_path == f"raw-uploads/u1/{record.id}.mp4"


def test_progress_is_monotonic_and_completes_after_insert(object_store, tracking_store, make_video):
    path = make_video(size=4 * MB)
    seen = []

    class WatchingStore:
        def insert_upload(self, **kwargs):
            seen.append("insert")
            return tracking_store.insert_upload(**kwargs)

    submitter = UploadSubmitter(object_store, WatchingStore())
    submitter.submit(path, 4 * MB, "video/mp4", "u1", progress=seen.append)

    percents = [p for p in seen if p != "insert"]
    assert percents == sorted(percents)
    assert percents[-1] == 100
    assert seen.index("insert") == len(seen) - 2
    assert max(percents[:-1]) < 100


def test_cancel_during_transfer_leaves_no_record(object_store, tracking_store, make_video):
    path = make_video(size=3 * MB)
    submitter = UploadSubmitter(object_store, tracking_store, id_factory=lambda: "fixed-id")

    token = CancelToken()

    def progress(percent):
        if percent > 0:
            token.cancel()

    with pytest.raises(UploadCancelled):
        submitter.submit(path, 3 * MB, "video/mp4", "u1", cancel=token, progress=progress)

    assert tracking_store.get_upload("fixed-id") is None
    assert tracking_store.list_uploads("u1") == []
    assert not object_store.exists("u1/fixed-id.mp4")


def test_transfer_failure_is_retryable(tracking_store, make_video):
    submitter = UploadSubmitter(BrokenObjectStore(), tracking_store)

    with pytest.raises(TransferInterrupted) as exc:
        submitter.submit(make_video(), 1024, "video/mp4", "u1")

    assert exc.value.retryable
    assert exc.value.user_message == "Upload interrupted. Tap Retry."
    assert tracking_store.list_uploads("u1") == []


def test_insert_conflict_is_record_creation_failure(object_store, tracking_store, make_video):
    tracking_store.insert_upload(
        upload_id="dup", user_id="u1", storage_path="raw-uploads/u1/dup.mp4",
        original_filename="old.mp4", file_size_bytes=1,
    )
    submitter = UploadSubmitter(object_store, tracking_store, id_factory=lambda: "dup")

    with pytest.raises(RecordCreationFailed):
        submitter.submit(make_video(), 1024, "video/mp4", "u1")

    # The binary stays behind as an accepted orphan
    assert object_store.exists("u1/dup.mp4")


def test_store_error_is_record_creation_failure(object_store, make_video):
    tracking_store = mock.Mock()
    tracking_store.insert_upload.side_effect = TrackingStoreError("connection lost")
    submitter = UploadSubmitter(object_store, tracking_store)

    with pytest.raises(RecordCreationFailed) as exc:
        submitter.submit(make_video(), 1024, "video/mp4", "u1")
    assert exc.value.retryable


def test_each_attempt_mints_a_new_identifier(submitter, make_video):
    path = make_video()
    first = submitter.submit(path, 1024, "video/mp4", "u1")
    second = submitter.submit(path, 1024, "video/mp4", "u1")
    assert first.id != second.id
    assert first.storage_path != second.storage_path


# =============================================================================
# UploadFlow
# =============================================================================

def test_flow_happy_path(submitter, make_video):
    states = []
    flow = UploadFlow(submitter, "u1", on_change=lambda f: states.append(f.state))

    flow.begin_pick()
    assert flow.pick(make_video(size=2 * MB), size=2 * MB)
    assert flow.state == SubmissionState.READY_TO_SEND
    assert flow.selected.name == "game1.mp4"

    record = flow.send()

    assert record.status == "queued"
    assert flow.state == SubmissionState.DONE
    assert flow.progress == 100
    assert flow.selected is None
    assert SubmissionState.TRANSFERRING in states
    assert states.index(SubmissionState.TRANSFERRING) < states.index(SubmissionState.RECORDING)


def test_flow_rejects_oversize_pick(submitter):
    flow = UploadFlow(submitter, "u1")
    flow.begin_pick()

    assert not flow.pick("/videos/huge.mp4", size=FOUR_GIB + 1)
    assert flow.state == SubmissionState.IDLE
    assert flow.error == "File is too large. Max 4 GB."
    assert flow.selected is None


def test_flow_cancel_only_while_transferring(submitter, tracking_store, make_video):
    flow = UploadFlow(submitter, "u1")
    assert flow.cancel() is False

    def on_change(f):
        if f.state == SubmissionState.TRANSFERRING and f.progress > 0:
            f.cancel()

    flow.on_change = on_change
    flow.begin_pick()
    flow.pick(make_video(size=3 * MB), size=3 * MB)

    assert flow.send() is None
    assert flow.state == SubmissionState.IDLE
    assert flow.error is None
    assert flow.progress == 0
    assert tracking_store.list_uploads("u1") == []


def test_flow_failure_then_retry(object_store, tracking_store, make_video):
    broken = UploadSubmitter(BrokenObjectStore(), tracking_store)
    flow = UploadFlow(broken, "u1")
    flow.begin_pick()
    flow.pick(make_video(), size=1024)

    assert flow.send() is None
    assert flow.state == SubmissionState.IDLE
    assert flow.error == "Upload interrupted. Tap Retry."
    assert isinstance(flow.last_error, TransferInterrupted)
    assert flow.can_retry

    flow.submitter = UploadSubmitter(object_store, tracking_store)
    record = flow.retry()

    assert record is not None
    assert flow.state == SubmissionState.DONE
    assert flow.error is None
    assert len(tracking_store.list_uploads("u1")) == 1


def test_flow_guards_invalid_moves(submitter):
    flow = UploadFlow(submitter, "u1")

    with pytest.raises(FlowStateError):
        flow.send()
    with pytest.raises(FlowStateError):
        flow.pick("/videos/a.mp4", size=10)
    with pytest.raises(FlowStateError):
        flow.retry()

    flow.begin_pick()
    flow.cancel_pick()
    assert flow.state == SubmissionState.IDLE


def test_flow_clear_selection(submitter, make_video):
    flow = UploadFlow(submitter, "u1")
    flow.begin_pick()
    flow.pick(make_video(), size=1024)
    flow.clear()

    assert flow.state == SubmissionState.IDLE
    assert flow.selected is None


def test_flow_recovers_when_s3_is_unreachable(tracking_store):
    client = mock.Mock()
    client.head_object.side_effect = EndpointConnectionError(endpoint_url="http://localhost:9")
    submitter = UploadSubmitter(S3ObjectStore("raw-uploads", client=client), tracking_store)
    flow = UploadFlow(submitter, "u1")
    flow.begin_pick()
    flow.pick(io.BytesIO(b"0123456789"), name="game1.mp4", size=10)

    assert flow.send() is None
    assert flow.state == SubmissionState.IDLE
    assert isinstance(flow.last_error, TransferInterrupted)
    assert flow.error == "Upload interrupted. Tap Retry."
    assert flow.can_retry
    assert tracking_store.list_uploads("u1") == []


def test_flow_recovers_from_unexpected_store_error(object_store, make_video):
    tracking_store = mock.Mock()
    tracking_store.insert_upload.side_effect = RuntimeError("driver crashed")
    flow = UploadFlow(UploadSubmitter(object_store, tracking_store), "u1")
    flow.begin_pick()
    flow.pick(make_video(), size=1024)

    assert flow.send() is None
    assert flow.state == SubmissionState.IDLE
    assert flow.error == "Upload failed. Please try again."
    assert "driver crashed" in str(flow.last_error)
    assert flow.progress == 0
    assert flow.can_retry

import asyncio

import httpx
import pytest

from avatar_studio import crop
from avatar_studio.config import StudioConfig
from avatar_studio.errors import BudgetExceededError, FileTooLargeError, TransitionError, ValidationError
from avatar_studio.processing import load_source_image
from avatar_studio.studio import (
    AvatarStudio,
    BackToCrop,
    CaptureState,
    DragMoved,
    DragStarted,
    FileSelected,
    Reset,
    Stage,
    UploadProgressed,
    UploadStarted,
    ZoomChanged,
    reduce,
)
from avatar_studio.transport import UploadTransport

from conftest import TEST_TOKEN


class RecordingHandler:
    """MockTransport handler that counts requests and answers with a fixed status."""

    def __init__(self, status=200, body=None):
        self.status = status
        self.body = body if body is not None else {"ok": True, "tempUrl": "/uploads/1_avatar.jpg"}
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status, json=self.body)


def make_studio(handler, config=None, states=None):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    transport = UploadTransport("http://avatars.local", TEST_TOKEN, client=client)
    on_change = states.append if states is not None else None
    return AvatarStudio(transport, config=config, on_change=on_change)


@pytest.fixture
def photo(make_image):
    return make_image(900, 600, noisy=True)


def selected_state(make_image) -> CaptureState:
    source = load_source_image(make_image(800, 400), "image/jpeg")
    event = FileSelected(source=source, stage_size=420.0, min_zoom=1.0, max_zoom=3.0, default_quality=0.85)
    return reduce(CaptureState(), event)


# ---- reducer ----

def test_file_selected_enters_cropping_with_centered_transform(make_image):
    state = selected_state(make_image)
    assert state.stage is Stage.CROPPING
    assert state.transform.offset_x == pytest.approx(-210.0)
    assert crop.covers(state.geometry, state.transform)
    assert state.quality == 0.85


def test_drag_and_zoom_keep_stage_covered(make_image):
    state = selected_state(make_image)
    state = reduce(state, DragStarted(100, 100))
    assert state.dragging
    state = reduce(state, DragMoved(900, 900))
    assert state.transform.offset_x == 0.0
    state = reduce(state, ZoomChanged(2.0))
    state = reduce(state, DragMoved(-5000, -5000))
    assert crop.covers(state.geometry, state.transform)


def test_drag_move_without_start_is_ignored(make_image):
    state = selected_state(make_image)
    assert reduce(state, DragMoved(10, 10)) is state


@pytest.mark.parametrize("event", [DragStarted(0, 0), ZoomChanged(2.0), BackToCrop(), UploadStarted()])
def test_selecting_refuses_crop_and_preview_events(event):
    with pytest.raises(TransitionError):
        reduce(CaptureState(), event)


def test_cropping_refuses_preview_events(make_image):
    state = selected_state(make_image)
    for event in (BackToCrop(), UploadStarted()):
        with pytest.raises(TransitionError):
            reduce(state, event)


def test_progress_only_while_uploading(make_image):
    with pytest.raises(TransitionError):
        reduce(selected_state(make_image), UploadProgressed(0.5))


def test_reset_returns_to_selecting(make_image):
    state = selected_state(make_image)
    state = reduce(state, Reset())
    assert state.stage is Stage.SELECTING
    assert state.source is None


def test_unknown_event_is_a_type_error():
    with pytest.raises(TypeError):
        reduce(CaptureState(), object())


# ---- driver ----

def test_select_file_failure_keeps_current_crop(make_image, photo):
    studio = make_studio(RecordingHandler())
    studio.select_file(photo, "image/jpeg", "me.jpg")
    before = studio.state.transform

    png = make_image(50, 50, mimetype="image/png")
    with pytest.raises(ValidationError):
        studio.select_file(png, "image/jpeg", "fake.jpg")

    assert studio.state.stage is Stage.CROPPING
    assert studio.state.transform == before
    assert studio.state.error


def test_select_file_enforces_source_limit(photo):
    studio = make_studio(RecordingHandler(), config=StudioConfig(max_source_bytes=1024))
    with pytest.raises(FileTooLargeError):
        studio.select_file(photo, "image/jpeg")
    assert studio.state.stage is Stage.SELECTING


def test_new_file_replaces_source_in_preview(make_image, photo):
    studio = make_studio(RecordingHandler())
    studio.select_file(photo, "image/jpeg")
    studio.crop()
    assert studio.state.stage is Stage.PREVIEWING

    studio.select_file(make_image(300, 300), "image/jpeg")
    assert studio.state.stage is Stage.CROPPING
    assert studio.state.source.width == 300
    assert studio.state.artifact is None


def test_crop_produces_square_artifact(photo):
    states = []
    studio = make_studio(RecordingHandler(), states=states)
    studio.select_file(photo, "image/jpeg")
    studio.start_drag(200, 200)
    studio.drag_to(150, 220)
    studio.end_drag()
    studio.set_zoom(1.5)
    studio.crop()

    state = studio.state
    assert state.stage is Stage.PREVIEWING
    assert state.bitmap.shape == (512, 512, 3)
    assert (state.artifact.width, state.artifact.height) == (512, 512)
    assert state.artifact.quality == 0.85
    assert [s.stage for s in states][-1] is Stage.PREVIEWING


def test_quality_change_reencodes_and_back_discards(photo):
    studio = make_studio(RecordingHandler())
    studio.select_file(photo, "image/jpeg")
    studio.crop()
    high = studio.state.artifact.size

    studio.set_quality(0.3)
    assert studio.state.quality == 0.3
    assert studio.state.artifact.size < high

    studio.back_to_crop()
    assert studio.state.stage is Stage.CROPPING
    assert studio.state.artifact is None
    with pytest.raises(TransitionError):
        studio.set_quality(0.5)


@pytest.mark.asyncio
async def test_over_budget_artifact_never_reaches_network(photo):
    handler = RecordingHandler()
    studio = make_studio(handler, config=StudioConfig(byte_budget=1024))
    studio.select_file(photo, "image/jpeg")
    studio.crop()

    assert not studio.state.can_upload
    assert studio.state.warning
    with pytest.raises(BudgetExceededError):
        await studio.upload()
    assert handler.requests == []
    assert not studio.state.uploading


@pytest.mark.asyncio
async def test_auto_quality_picks_highest_fitting_quality(make_image):
    handler = RecordingHandler()
    studio = make_studio(handler)
    studio.select_file(make_image(800, 800), "image/jpeg")
    studio.crop()
    studio.set_quality(0.5)
    studio.auto_quality()

    # a smooth gradient fits the default budget at full quality
    assert studio.state.quality == pytest.approx(1.0)
    assert studio.state.can_upload
    result = await studio.upload()
    assert result.temp_url == "/uploads/1_avatar.jpg"
    assert len(handler.requests) == 1


def test_auto_quality_falls_back_to_minimum(photo):
    studio = make_studio(RecordingHandler(), config=StudioConfig(byte_budget=1024))
    studio.select_file(photo, "image/jpeg")
    studio.crop()
    studio.auto_quality()

    assert studio.state.quality == pytest.approx(0.4)
    assert not studio.state.can_upload
    assert studio.state.warning


@pytest.mark.asyncio
async def test_successful_upload_resets_flow(photo):
    handler = RecordingHandler()
    states = []
    studio = make_studio(handler, states=states)
    studio.select_file(photo, "image/jpeg")
    studio.crop()
    sent = studio.state.artifact.data

    result = await studio.upload()

    assert result.status_code == 200
    assert studio.state.stage is Stage.SELECTING
    assert studio.state.avatar_url == "/uploads/1_avatar.jpg"
    assert studio.state.artifact is None
    assert sent in handler.requests[0].content
    assert any(s.uploading and s.progress == pytest.approx(1.0) for s in states)


@pytest.mark.asyncio
async def test_failed_upload_keeps_artifact_for_retry(photo):
    handler = RecordingHandler(status=500, body={"code": "SERVER_ERROR", "message": "disk full"})
    studio = make_studio(handler)
    studio.select_file(photo, "image/jpeg")
    studio.crop()
    artifact = studio.state.artifact

    assert await studio.upload() is None
    state = studio.state
    assert state.stage is Stage.PREVIEWING
    assert state.error == "disk full"
    assert state.can_retry
    assert state.artifact is artifact
    assert not state.uploading

    handler.status = 200
    handler.body = {"ok": True, "tempUrl": "/uploads/2_avatar.jpg"}
    result = await studio.retry()

    assert result.temp_url == "/uploads/2_avatar.jpg"
    assert studio.state.avatar_url == "/uploads/2_avatar.jpg"
    # both attempts carried identical bytes
    assert artifact.data in handler.requests[0].content
    assert artifact.data in handler.requests[1].content


@pytest.mark.asyncio
async def test_rejected_upload_is_not_retryable(photo):
    handler = RecordingHandler(status=401, body={"code": "INVALID_SESSION", "message": "expired"})
    studio = make_studio(handler)
    studio.select_file(photo, "image/jpeg")
    studio.crop()

    assert await studio.upload() is None
    assert studio.state.error == "expired"
    assert not studio.state.can_retry


@pytest.mark.asyncio
async def test_cancel_upload_preserves_artifact(photo):
    release = asyncio.Event()

    async def slow_handler(request):
        await release.wait()
        return httpx.Response(200, json={})

    studio = make_studio(slow_handler)
    studio.select_file(photo, "image/jpeg")
    studio.crop()
    artifact = studio.state.artifact

    task = asyncio.create_task(studio.upload())
    while not studio.state.uploading:
        await asyncio.sleep(0)
    await asyncio.sleep(0.01)

    with pytest.raises(TransitionError):
        studio.set_zoom(2.0)

    assert studio.cancel_upload()
    assert await task is None

    state = studio.state
    assert state.stage is Stage.PREVIEWING
    assert state.error == "Upload cancelled"
    assert state.artifact is artifact
    assert not studio.cancel_upload()


def test_snapshot_is_plain_data(photo):
    studio = make_studio(RecordingHandler())
    studio.select_file(photo, "image/jpeg")
    snap = studio.snapshot()
    assert snap["stage"] == "cropping"
    assert snap["transform"]["scale"] == 1.0
    assert snap["can_upload"] is False


@pytest.mark.asyncio
async def test_corrupt_response_leaves_flow_retryable(photo):
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(200, headers={"content-encoding": "gzip"}, content=b"not gzip")
        return httpx.Response(200, json={"ok": True, "tempUrl": "/uploads/3_avatar.jpg"})

    studio = make_studio(handler)
    studio.select_file(photo, "image/jpeg")
    studio.crop()
    artifact = studio.state.artifact

    assert await studio.upload() is None
    assert not studio.state.uploading
    assert studio.state.can_retry
    assert studio.state.artifact is artifact

    result = await studio.retry()
    assert result.temp_url == "/uploads/3_avatar.jpg"
    assert studio.state.stage is Stage.SELECTING


class ExplodingTransport:

    async def send(self, data, mimetype="image/jpeg", on_progress=None):
        raise RuntimeError("progress listener broke")


@pytest.mark.asyncio
async def test_unexpected_send_error_does_not_wedge_upload(photo):
    studio = make_studio(RecordingHandler())
    studio.select_file(photo, "image/jpeg")
    studio.crop()
    artifact = studio.state.artifact
    studio.transport = ExplodingTransport()

    with pytest.raises(RuntimeError):
        await studio.upload()

    state = studio.state
    assert not state.uploading
    assert state.stage is Stage.PREVIEWING
    assert state.error == "progress listener broke"
    assert state.artifact is artifact

    studio.reset()
    assert studio.state.stage is Stage.SELECTING

import asyncio
import base64
from typing import Optional

import pytest

from messages import SessionInfo
from segment_capture import NullRecorder, Recorder, RecorderError, SegmentCaptureMachine
from segment_client import SegmentSubmitError


class CountingRecorder(Recorder):

    def __init__(self):
        self.begins = 0
        self.finishes = 0

    async def begin(self) -> None:
        self.begins += 1

    async def finish(self) -> Optional[bytes]:
        self.finishes += 1
        return f"audio-{self.finishes}".encode()


class ListSink:

    def __init__(self):
        self.records = []

    async def submit(self, record):
        self.records.append(record)
        return f"seg_{record.image_index}"


class FailingSink:

    def __init__(self):
        self.attempts = 0

    async def submit(self, record):
        self.attempts += 1
        raise SegmentSubmitError("segment upload failed with HTTP 500")


SESSION = SessionInfo("sess_1", evaluator_id="eva", client_id="cli")


def run_updates(updates, end=True, recorder=None, sink=None):
    recorder = recorder or CountingRecorder()
    sink = sink or ListSink()
    machine = SegmentCaptureMachine(recorder, sink, SESSION)

    async def scenario():
        for index in updates:
            await machine.on_image_update(index, f"https://images.test/{index}")
        if end:
            await machine.on_session_end()

    asyncio.run(scenario())
    return machine, recorder, sink


def test_duplicate_delivery_yields_one_segment_per_image():
    machine, recorder, sink = run_updates([0, 1, 1, 2])
    assert [record.image_index for record in sink.records] == [0, 1, 2]
    assert recorder.begins == 3


def test_repeat_causes_no_flush_and_no_restart():
    machine, recorder, sink = run_updates([5, 5, 5], end=False)
    assert sink.records == []
    assert recorder.begins == 1
    assert machine.capture_active


@pytest.mark.parametrize("updates, expected_flushes", [
    ([], 0),
    ([0], 1),
    ([0, 0, 0], 1),
    ([0, 1], 2),
    ([0, 0, 1, 1, 1, 2, 3, 3], 4),
    ([3, 2, 1], 3),
])
def test_flushes_match_runs_of_equal_indices(updates, expected_flushes):
    machine, recorder, sink = run_updates(updates)
    assert len(sink.records) == expected_flushes
    assert recorder.begins == expected_flushes


def test_flush_happens_only_when_a_different_image_arrives():
    machine, recorder, sink = run_updates([0, 0, 1], end=False)
    assert [record.image_index for record in sink.records] == [0]
    assert machine.previous.image_index == 1
    assert machine.flushed_indices == {0}


def test_reordered_revisit_does_not_flush_twice():
    machine, recorder, sink = run_updates([0, 1, 0])
    assert [record.image_index for record in sink.records] == [0, 1]
    # the second capture of image 0 is stopped and dropped
    assert recorder.begins == 3
    assert recorder.finishes == 3


def test_record_carries_session_and_audio():
    machine, recorder, sink = run_updates([7])
    record, = sink.records
    assert record.image_index == 7
    assert record.signed_url == "https://images.test/7"
    assert record.session_id == "sess_1"
    assert record.evaluator_id == "eva"
    assert record.client_id == "cli"
    assert base64.b64decode(record.audio_payload) == b"audio-1"


def test_session_end_clears_state():
    machine, recorder, sink = run_updates([0, 1])
    assert machine.previous is None
    assert not machine.capture_active
    assert machine.flushed_indices == frozenset()

    asyncio.run(machine.on_image_update(0, "https://images.test/0"))
    asyncio.run(machine.on_session_end())
    assert [record.image_index for record in sink.records] == [0, 1, 0]


def test_session_end_without_images_does_nothing():
    machine, recorder, sink = run_updates([])
    assert sink.records == []
    assert recorder.finishes == 0


def test_upload_failure_is_absorbed():
    sink = FailingSink()
    machine, recorder, _ = run_updates([0, 1, 1], sink=sink)
    assert sink.attempts == 2


def test_null_recorder_sends_reference_only():
    machine, recorder, sink = run_updates([0, 1], recorder=NullRecorder())
    assert [record.audio_payload for record in sink.records] == [None, None]
    assert [record.signed_url for record in sink.records] == ["https://images.test/0", "https://images.test/1"]


def test_segment_without_reference_or_audio_is_not_submitted():
    sink = ListSink()
    machine = SegmentCaptureMachine(NullRecorder(), sink, SESSION)

    async def scenario():
        await machine.on_image_update(0, None)
        await machine.on_session_end()

    asyncio.run(scenario())
    assert sink.records == []


def test_recorder_failure_still_submits_reference():
    class BrokenRecorder(Recorder):
        async def begin(self):
            raise RecorderError("no input device")

        async def finish(self):
            return None

    machine, recorder, sink = run_updates([0, 1], recorder=BrokenRecorder())
    assert [record.image_index for record in sink.records] == [0, 1]

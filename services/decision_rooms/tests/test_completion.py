from __future__ import annotations

import concurrent.futures
import threading

import pytest

from decision_rooms.artifacts import ArtifactBundle, RenderedDocument, summarize_tally
from decision_rooms.data import ROOM_COMPLETED
from decision_rooms.exceptions import DataIntegrityError, StateConflict

MEMBERS = ["p1", "p2", "p3"]


def _complete(harness) -> str:
    room_id = harness.started_room("q-test", MEMBERS)
    harness.play_round(room_id, 1, {"p1": "A", "p2": "A", "p3": "B"}, commit="A", justification="Round one reasoning")
    harness.play_round(room_id, 2, {"p1": "C", "p2": "C", "p3": "C"}, commit="C", justification="Round two reasoning")
    harness.play_round(room_id, 3, {"p1": "B", "p2": "A"}, commit="B", justification="Round three reasoning")
    return room_id


def test_acknowledgement_barrier_scenario(harness) -> None:
    room_id = _complete(harness)

    first = harness.completion.acknowledge_completion(room_id, "p1")
    second = harness.completion.acknowledge_completion(room_id, "p2")
    assert (first.all_completed, first.artifact_id) == (False, None)
    assert (second.all_completed, second.artifact_id) == (False, None)
    assert harness.store.find_artifact_for_room(room_id) is None

    third = harness.completion.acknowledge_completion(room_id, "p3")
    assert third.all_completed is True
    assert third.artifact_id is not None

    again = harness.completion.acknowledge_completion(room_id, "p1")
    assert again.all_completed is True
    assert again.artifact_id == third.artifact_id
    assert len(harness.store.artifacts) == 1


def test_repeated_acknowledgement_keeps_first_stamp(harness) -> None:
    room_id = _complete(harness)

    harness.completion.acknowledge_completion(room_id, "p1")
    stamp = next(m.acknowledged_at for m in harness.store.list_members(room_id) if m.participant_id == "p1")
    harness.completion.acknowledge_completion(room_id, "p1")

    after = next(m.acknowledged_at for m in harness.store.list_members(room_id) if m.participant_id == "p1")
    assert after == stamp


def test_acknowledge_requires_completed_room(harness) -> None:
    room_id = harness.started_room("q-test", MEMBERS)

    with pytest.raises(StateConflict, match="COMPLETED"):
        harness.completion.acknowledge_completion(room_id, "p1")


def test_concurrent_generation_creates_one_artifact(harness) -> None:
    room_id = _complete(harness)
    barrier = threading.Barrier(4)

    def generate(_: int) -> str:
        barrier.wait()
        return harness.generator.generate(room_id).id

    with concurrent.futures.ThreadPoolExecutor(max_workers=4) as pool:
        ids = list(pool.map(generate, range(4)))

    assert len(set(ids)) == 1
    assert len(harness.store.artifacts) == 1


def test_concurrent_final_acknowledgements_share_artifact(harness) -> None:
    room_id = _complete(harness)
    harness.completion.acknowledge_completion(room_id, "p1")

    with concurrent.futures.ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(lambda pid: harness.completion.acknowledge_completion(room_id, pid), ["p2", "p3"]))

    artifact_ids = {r.artifact_id for r in results if r.artifact_id}
    assert len(harness.store.artifacts) == 1
    assert artifact_ids == {next(iter(harness.store.artifacts))}
    assert any(r.all_completed for r in results)


def test_bundle_contains_tallies_and_justifications(harness) -> None:
    room_id = _complete(harness)

    bundle = harness.generator.build_bundle(room_id)

    assert bundle.quest_name == "Quest q-test"
    assert [m.name for m in bundle.team] == ["Name p1", "Name p2", "Name p3"]
    first = bundle.rounds[0]
    assert first.option == "A"
    assert first.option_title == "Option A1"
    assert first.tally == {"A": 2, "B": 1, "C": 0}
    assert first.summary == "2 chose A, 1 chose B"
    assert {j.name for j in first.justifications} == {"Name p1", "Name p2", "Name p3"}
    assert bundle.rounds[2].tally == {"A": 1, "B": 1, "C": 0}


def test_html_artifact_escapes_content(harness) -> None:
    harness.participant("p1")
    harness.store.upsert_participant(participant_id="p2", display_name="<script>x</script>")
    room_id = harness.started_room("q-duo", ["p1", "p2"])
    for number in (1, 2, 3):
        harness.play_round(room_id, number, {"p1": "A", "p2": "B"}, commit="A")

    artifact = harness.generator.generate(room_id)

    assert artifact.media_type == "text/html"
    assert "&lt;script&gt;" in artifact.content
    assert "<script>x" not in artifact.content
    assert "1 chose A, 1 chose B" in artifact.content


def test_missing_commit_is_data_integrity_error(harness) -> None:
    room_id = harness.started_room("q-test", MEMBERS)
    harness.session.commit(room_id, "p1", 1, "A")
    harness.store.rooms[room_id].status = ROOM_COMPLETED

    with pytest.raises(DataIntegrityError, match="quest not completed correctly"):
        harness.generator.generate(room_id)


def test_generation_failure_is_swallowed_and_retried(harness) -> None:
    room_id = _complete(harness)

    class FlakyFormatter:
        calls = 0

        def render(self, bundle: ArtifactBundle) -> RenderedDocument:
            FlakyFormatter.calls += 1
            if FlakyFormatter.calls == 1:
                raise RuntimeError("renderer down")
            return RenderedDocument(content=f"rooms:{bundle.room_code}", media_type="text/plain")

    harness.generator._formatter = FlakyFormatter()
    for pid in ("p1", "p2"):
        harness.completion.acknowledge_completion(room_id, pid)

    failed = harness.completion.acknowledge_completion(room_id, "p3")
    assert failed.all_completed is True
    assert failed.artifact_id is None
    assert harness.store.get_room(room_id).status == ROOM_COMPLETED

    retried = harness.completion.acknowledge_completion(room_id, "p1")
    assert retried.artifact_id is not None
    assert harness.store.get_artifact(retried.artifact_id).media_type == "text/plain"


def test_summarize_tally_orders_by_count() -> None:
    assert summarize_tally({"A": 1, "B": 0, "C": 2}) == "2 chose C, 1 chose A"
    assert summarize_tally({"A": 0, "B": 0, "C": 0}) == "No votes recorded"

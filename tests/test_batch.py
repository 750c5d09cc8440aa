import threading

import pytest

from batch import (
    ALL_FAILED_MESSAGE,
    BatchFailedError,
    OutputSpec,
    expand_tasks,
    generate_batch,
    group_results,
    total_images,
)
from client import QUOTA, REMOTE, GeneratedImage, ImageResult, NoImageError
from conftest import FakeClient
from presets import OUTPUT_SPECS


def test_presets_shape():
    assert [s.count for s in OUTPUT_SPECS] == [4, 1, 5, 3]
    assert total_images(OUTPUT_SPECS) == 13
    assert len({s.id for s in OUTPUT_SPECS}) == 4


def test_expand_tasks_follows_counts():
    tasks = expand_tasks(OUTPUT_SPECS)
    assert len(tasks) == 13
    assert [t.spec_id for t in tasks].count("model_images") == 5
    assert all(t.prompt == next(s.prompt for s in OUTPUT_SPECS if s.id == t.spec_id) for t in tasks)


def test_spec_validation():
    with pytest.raises(ValueError):
        OutputSpec(id="a", count=0, title="A", prompt="p")
    with pytest.raises(ValueError):
        OutputSpec(id="", count=1, title="A", prompt="p")
    dup = [OutputSpec("a", 1, "A", "p"), OutputSpec("a", 2, "B", "q")]
    with pytest.raises(ValueError):
        generate_batch(FakeClient(), None, dup)


def test_all_succeed(uploaded, fake_client):
    batch = generate_batch(fake_client, uploaded, OUTPUT_SPECS)

    assert {k: len(v) for k, v in batch.items()} == {
        "aesthetic_images": 4,
        "text_ad_image": 1,
        "model_images": 5,
        "creative_ad_images": 3,
    }
    assert len(fake_client.calls) == 13


def test_one_spec_failing_is_left_out(uploaded):
    client = FakeClient(outcome=lambda spec_id: REMOTE if spec_id == "model_images" else None)
    batch = generate_batch(client, uploaded, OUTPUT_SPECS)

    assert set(batch) == {"aesthetic_images", "text_ad_image", "creative_ad_images"}
    assert len(batch["aesthetic_images"]) == 4
    assert len(batch["text_ad_image"]) == 1
    assert len(batch["creative_ad_images"]) == 3
    assert "model_images" not in batch


def test_groups_never_exceed_counts(uploaded):
    flip = iter(range(100))
    client = FakeClient(outcome=lambda spec_id: REMOTE if next(flip) % 3 == 0 else None)
    batch = generate_batch(client, uploaded, OUTPUT_SPECS)

    counts = {s.id: s.count for s in OUTPUT_SPECS}
    assert set(batch) <= set(counts)
    for spec_id, images in batch.items():
        assert 1 <= len(images) <= counts[spec_id]
        assert all(img.spec_id == spec_id for img in images)
    assert sum(len(v) for v in batch.values()) == 13 - 5


def test_all_failed_raises_first_error(uploaded):
    client = FakeClient(outcome=lambda spec_id: REMOTE)
    with pytest.raises(BatchFailedError) as info:
        generate_batch(client, uploaded, OUTPUT_SPECS)

    assert info.value.message == "Failed to generate image. Please try again later."
    assert len(info.value.failures) == 13


def test_all_quota_failures_surface_guidance(uploaded):
    client = FakeClient(outcome=lambda spec_id: QUOTA)
    with pytest.raises(BatchFailedError) as info:
        generate_batch(client, uploaded, OUTPUT_SPECS)

    assert "quota" in info.value.message
    assert "https://ai.google.dev/gemini-api/docs/rate-limits" in info.value.message


def test_failure_without_message_falls_back(uploaded):
    class Silent:
        def generate_one(self, source, prompt, spec_id=""):
            return ImageResult(spec_id=spec_id, error=NoImageError(""))

    with pytest.raises(BatchFailedError) as info:
        generate_batch(Silent(), uploaded, [OutputSpec("a", 2, "A", "p")])
    assert info.value.message == ALL_FAILED_MESSAGE


def test_crashing_call_does_not_abort_siblings(uploaded):
    client = FakeClient(raise_for={"text_ad_image"})
    batch = generate_batch(client, uploaded, OUTPUT_SPECS)

    assert "text_ad_image" not in batch
    assert len(client.calls) == 13
    assert sum(len(v) for v in batch.values()) == 12


def test_tasks_run_concurrently(uploaded):
    specs = [OutputSpec("a", 3, "A", "p"), OutputSpec("b", 2, "B", "q")]
    barrier = threading.Barrier(5, timeout=10)

    class Gate(FakeClient):
        def generate_one(self, source, prompt, spec_id=""):
            # only passes once all five calls are in flight together
            barrier.wait()
            return super().generate_one(source, prompt, spec_id)

    batch = generate_batch(Gate(), uploaded, specs)
    assert {k: len(v) for k, v in batch.items()} == {"a": 3, "b": 2}


def test_on_settled_reports_every_task(uploaded, fake_client):
    seen = []
    generate_batch(fake_client, uploaded, OUTPUT_SPECS, on_settled=lambda done, total, r: seen.append((done, total)))

    assert [d for d, _ in seen] == list(range(1, 14))
    assert {t for _, t in seen} == {13}


def test_logger_failures_are_ignored(uploaded, fake_client):
    def bad_logger(msg):
        raise RuntimeError("log sink down")

    batch = generate_batch(fake_client, uploaded, OUTPUT_SPECS, logger=bad_logger)
    assert len(batch) == 4


def test_group_results_is_pure_and_ordered():
    images = [
        GeneratedImage("b", "data:image/png;base64,MQ=="),
        GeneratedImage("a", "data:image/png;base64,Mg=="),
        GeneratedImage("b", "data:image/png;base64,Mw=="),
    ]
    first = group_results(images)
    second = group_results(images)

    assert first == second
    assert [i.data_uri for i in first["b"]] == ["data:image/png;base64,MQ==", "data:image/png;base64,Mw=="]
    assert list(first["a"]) == [images[1]]

import io
import re
import zipfile

import pytest

from conftest import png_bytes, zip_bytes
from portraitbook.errors import NoImagesFoundError, NotFoundError, StatusFetchError, ValidationError
from portraitbook.training import (
    UploadedFile,
    check_archive,
    generate_trigger_word,
    package_images,
    sanitize_model_name,
)

SLUG = re.compile(r"^[a-z0-9._-]*$")


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("My Story", "my-story"),
        ("storybook-flux", "storybook-flux"),
        ("  --Hello__World..  ", "hello__world"),
        ("!!!", "storybook"),
        ("", "storybook"),
        ("Émile's Book", "mile-s-book"),
        ("a" * 80, "a" * 60),
    ],
)
def test_sanitize_model_name(raw, expected):
    assert sanitize_model_name(raw) == expected


@pytest.mark.parametrize(
    "raw",
    ["My Story", "___", "x" * 59 + "-tail", "a" * 59 + ".b", "UPPER.case_Name-", "-.-a-.-", "ünïcödé 🚀 name", "a" * 60 + "---"],
)
def test_sanitized_names_are_always_valid_slugs(raw):
    slug = sanitize_model_name(raw)
    assert slug
    assert slug == slug.lower()
    assert SLUG.match(slug)
    assert len(slug) <= 60
    assert slug[0] not in "._-"
    assert slug[-1] not in "._-"


def test_trigger_word_pattern():
    for _ in range(50):
        assert re.fullmatch(r"^[A-Z0-9_]+_[A-Z0-9]{6}$", generate_trigger_word("STORYCHAR"))


def test_package_images_skips_non_images():
    files = [
        UploadedFile("a.png", "image/png", png_bytes()),
        UploadedFile("notes.txt", "text/plain", b"hello"),
        UploadedFile("b.jpg", "image/jpeg", b"jpegdata"),
    ]
    data = package_images(files)
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        assert sorted(zf.namelist()) == ["a.png", "b.jpg"]


def test_package_images_without_images_fails():
    with pytest.raises(NoImagesFoundError, match="No image files found in upload"):
        package_images([UploadedFile("notes.txt", "text/plain", b"hello")])


def test_package_images_without_files_is_a_validation_error():
    with pytest.raises(ValidationError):
        package_images([])


def test_check_archive():
    assert check_archive(zip_bytes({"one.png": b"1", "two.JPG": b"2", "readme.md": b"x"})) == 2
    with pytest.raises(NoImagesFoundError):
        check_archive(zip_bytes({"readme.md": b"x"}))
    with pytest.raises(ValidationError):
        check_archive(b"not a zip")


@pytest.mark.anyio
async def test_ensure_destination_model_is_idempotent(manager, fake_replicate):
    await manager.ensure_destination_model("My Story")
    await manager.ensure_destination_model("My Story")
    assert fake_replicate.create_model_calls == 1
    assert "tester/my-story" in fake_replicate.models
    assert fake_replicate.models["tester/my-story"]["visibility"] == "private"


@pytest.mark.anyio
async def test_submit_training_with_images(manager, fake_replicate, record_store):
    images = [UploadedFile(f"p{i}.png", "image/png", png_bytes()) for i in range(3)]
    record = await manager.submit_training(model_name="My Story", images=images)

    assert record.destination == "tester/my-story"
    assert record.model_name == "my-story"
    assert record.status == "starting"
    assert re.fullmatch(r"^[A-Z0-9_]+_[A-Z0-9]{6}$", record.trigger_word)
    assert record.input_url.startswith("https://api.replicate.com/v1/files/")
    assert record.updated_at == record.created_at
    assert record_store.get(record.training_id) == record

    training = fake_replicate.trainings[record.training_id]
    assert training["destination"] == "tester/my-story"
    assert training["input"] == {"input_images": record.input_url, "trigger_word": record.trigger_word}


@pytest.mark.anyio
async def test_submit_training_passes_options_and_archive(manager, fake_replicate):
    archive = zip_bytes({"face.png": png_bytes()})
    record = await manager.submit_training(model_name="kid", archive=archive, trigger_word="KIDDO_ABC123",
                                           steps=1000, rank=16, learning_rate=0.0004)
    assert record.trigger_word == "KIDDO_ABC123"
    assert fake_replicate.trainings[record.training_id]["input"] == {
        "input_images": record.input_url,
        "trigger_word": "KIDDO_ABC123",
        "num_train_steps": 1000,
        "lora_rank": 16,
        "learning_rate": 0.0004,
    }


@pytest.mark.anyio
async def test_submit_training_rejects_reused_trigger_word(manager, fake_replicate):
    archive = zip_bytes({"face.png": png_bytes()})
    await manager.submit_training(model_name="kid", archive=archive, trigger_word="KIDDO_ABC123")
    with pytest.raises(ValidationError):
        await manager.submit_training(model_name="kid", archive=archive, trigger_word="KIDDO_ABC123")
    assert len(fake_replicate.files) == 1
    assert len(fake_replicate.trainings) == 1


def test_generated_trigger_words_avoid_existing_ones(manager, monkeypatch):
    words = iter(["STORYCHAR_AAAAAA", "STORYCHAR_AAAAAA", "STORYCHAR_BBBBBB"])
    monkeypatch.setattr("portraitbook.training.generate_trigger_word", lambda prefix: next(words))
    monkeypatch.setattr(manager.store, "trigger_word_taken", lambda word: word == "STORYCHAR_AAAAAA")
    assert manager.new_trigger_word() == "STORYCHAR_BBBBBB"


@pytest.mark.anyio
async def test_get_status_merges_remote_fields(manager, fake_replicate):
    record = await manager.submit_training(model_name="kid", archive=zip_bytes({"a.png": b"1"}))
    fake_replicate.trainings[record.training_id].update(
        status="succeeded",
        output={"version": "tester/kid:v1", "weights": "https://replicate.delivery/pbxt/w.tar"},
    )

    merged, remote = await manager.get_status(record.training_id)

    assert remote["status"] == "succeeded"
    assert merged.status == "succeeded"
    assert merged.version == "tester/kid:v1"
    assert merged.weights_url == "https://replicate.delivery/pbxt/w.tar"
    assert merged.updated_at >= record.updated_at
    for name in ("training_id", "owner", "created_at", "trigger_word", "destination", "model_name"):
        assert getattr(merged, name) == getattr(record, name)


@pytest.mark.anyio
async def test_polling_a_succeeded_job_keeps_identity(manager, fake_replicate):
    record = await manager.submit_training(model_name="kid", archive=zip_bytes({"a.png": b"1"}))
    fake_replicate.trainings[record.training_id].update(status="succeeded", output={"version": "tester/kid:v1"})
    first, _ = await manager.get_status(record.training_id)
    fake_replicate.trainings[record.training_id].update(output=None)
    second, _ = await manager.get_status(record.training_id)

    assert second.version == "tester/kid:v1"
    assert second.training_id == first.training_id
    assert second.created_at == first.created_at
    assert second.trigger_word == first.trigger_word
    assert second.owner == first.owner


@pytest.mark.anyio
async def test_get_status_unknown_id(manager):
    with pytest.raises(NotFoundError, match="Training not found"):
        await manager.get_status("nope")


@pytest.mark.anyio
async def test_get_status_failure_carries_last_known_record(manager, fake_replicate):
    record = await manager.submit_training(model_name="kid", archive=zip_bytes({"a.png": b"1"}))
    fake_replicate.fail_training_status = True
    with pytest.raises(StatusFetchError) as info:
        await manager.get_status(record.training_id)
    assert info.value.record == record
    assert info.value.status_code_upstream == 503


@pytest.mark.anyio
async def test_list_records_newest_first_and_completed(manager, fake_replicate):
    first = await manager.submit_training(model_name="one", archive=zip_bytes({"a.png": b"1"}))
    second = await manager.submit_training(model_name="two", archive=zip_bytes({"a.png": b"1"}))
    assert [r.training_id for r in manager.list_records()] == [second.training_id, first.training_id]

    fake_replicate.trainings[first.training_id].update(status="succeeded", output={"version": "tester/one:v1"})
    await manager.get_status(first.training_id)
    assert [r.training_id for r in manager.list_completed()] == [first.training_id]

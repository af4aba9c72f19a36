# portraitbook/training.py
"""
Training job manager.

submit_training: portraits -> zip -> gateway file -> destination model
(created once) -> training job on the fixed trainer -> stored record.
get_status: live status merged over the stored record.
"""
import io
import logging
import mimetypes
import re
import secrets
import string
import time
import zipfile
from typing import Any, Dict, List, NamedTuple, Optional, Sequence, Tuple

from portraitbook.config import Settings, require
from portraitbook.errors import NoImagesFoundError, NotFoundError, StatusFetchError, UpstreamGatewayError, ValidationError
from portraitbook.gateway import ReplicateGateway
from portraitbook.records import TrainingJobRecord, TrainingRecordStore, utc_now

logger = logging.getLogger(__name__)

DEFAULT_MODEL_NAME = "storybook-flux"
FALLBACK_MODEL_NAME = "storybook"
MAX_MODEL_NAME_LENGTH = 60
DEFAULT_MODEL_DESCRIPTION = "Personalized storybook likeness model"
DEFAULT_MODEL_VISIBILITY = "private"
DEFAULT_MODEL_HARDWARE = "cpu"

TRIGGER_ALPHABET = string.digits + string.ascii_uppercase
TRIGGER_SUFFIX_LENGTH = 6
TRIGGER_WORD_ATTEMPTS = 10

_INVALID_CHARS = re.compile(r"[^a-z0-9._-]+")
_EDGE_PUNCT_START = re.compile(r"^[._-]+")
_EDGE_PUNCT_END = re.compile(r"[._-]+$")


class UploadedFile(NamedTuple):
    filename: str
    content_type: str
    data: bytes


def sanitize_model_name(name: str) -> str:
    """Lowercase slug of [a-z0-9._-], at most 60 chars, no punctuation at either end."""
    slug = _INVALID_CHARS.sub("-", (name or "").lower())
    slug = _EDGE_PUNCT_START.sub("", slug)
    slug = _EDGE_PUNCT_END.sub("", slug[:MAX_MODEL_NAME_LENGTH])
    return slug or FALLBACK_MODEL_NAME


def generate_trigger_word(prefix: str) -> str:
    suffix = "".join(secrets.choice(TRIGGER_ALPHABET) for _ in range(TRIGGER_SUFFIX_LENGTH))
    return f"{prefix}_{suffix}"


def _is_image_name(name: str) -> bool:
    guessed, _ = mimetypes.guess_type(name)
    return bool(guessed and guessed.startswith("image/"))


def package_images(files: Sequence[UploadedFile]) -> bytes:
    """Zip the image-typed uploads; other files are skipped."""
    if not files:
        raise ValidationError("No files provided")

    buf = io.BytesIO()
    count = 0
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for f in files:
            if not (f.content_type or "").startswith("image/"):
                logger.info("Skipping non-image upload %s (%s)", f.filename, f.content_type)
                continue
            count += 1
            name = f.filename or f"image-{int(time.time() * 1000)}-{count}.png"
            zf.writestr(name, f.data)
    if count == 0:
        raise NoImagesFoundError()
    logger.info("Packaged %d training images (%d bytes)", count, buf.tell())
    return buf.getvalue()


def check_archive(data: bytes) -> int:
    """Number of image entries in a pre-built archive."""
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            names = [i.filename for i in zf.infolist() if not i.is_dir()]
    except zipfile.BadZipFile as e:
        raise ValidationError("Uploaded archive is not a valid zip file") from e
    count = sum(1 for n in names if _is_image_name(n))
    if count == 0:
        raise NoImagesFoundError()
    return count


class TrainingJobManager:
    def __init__(
        self,
        gateway: ReplicateGateway,
        store: TrainingRecordStore,
        owner: str,
        trainer_model: str,
        trainer_version: str,
        trigger_word_prefix: str = "STORYCHAR",
        max_records: int = 0,
    ):
        self.gateway = gateway
        self.store = store
        self.owner = owner
        self.trainer_model = trainer_model
        self.trainer_version = trainer_version
        self.trigger_word_prefix = trigger_word_prefix
        self.max_records = max_records

    @classmethod
    def from_settings(cls, settings: Settings, gateway: ReplicateGateway, store: TrainingRecordStore) -> "TrainingJobManager":
        return cls(
            gateway=gateway,
            store=store,
            owner=require(settings.replicate_owner, "REPLICATE_OWNER"),
            trainer_model=settings.trainer_model,
            trainer_version=settings.trainer_version,
            trigger_word_prefix=settings.trigger_word_prefix,
            max_records=settings.training_records_max,
        )

    def new_trigger_word(self) -> str:
        for _ in range(TRIGGER_WORD_ATTEMPTS):
            word = generate_trigger_word(self.trigger_word_prefix)
            if not self.store.trigger_word_taken(word):
                return word
            logger.warning("Trigger word %s already in use, regenerating", word)
        raise ValidationError("Could not generate a unique trigger word")

    async def ensure_destination_model(self, name: str) -> Dict[str, Any]:
        sanitized = sanitize_model_name(name)
        existing = await self.gateway.get_model(self.owner, sanitized)
        if existing:
            return existing
        return await self.gateway.create_model(
            self.owner,
            sanitized,
            description=DEFAULT_MODEL_DESCRIPTION,
            visibility=DEFAULT_MODEL_VISIBILITY,
            hardware=DEFAULT_MODEL_HARDWARE,
        )

    async def submit_training(
        self,
        model_name: Optional[str] = None,
        images: Sequence[UploadedFile] = (),
        archive: Optional[bytes] = None,
        trigger_word: Optional[str] = None,
        steps: Optional[int] = None,
        rank: Optional[int] = None,
        learning_rate: Optional[float] = None,
    ) -> TrainingJobRecord:
        sanitized = sanitize_model_name(model_name or DEFAULT_MODEL_NAME)
        destination = f"{self.owner}/{sanitized}"

        if archive is not None:
            check_archive(archive)
            payload = archive
        else:
            payload = package_images(images)

        if trigger_word:
            if self.store.trigger_word_taken(trigger_word):
                raise ValidationError(f"Trigger word {trigger_word} is already used by another training")
        else:
            trigger_word = self.new_trigger_word()

        input_url = await self.gateway.upload_file(payload, filename="data.zip", content_type="application/zip")
        await self.ensure_destination_model(sanitized)

        training_input: Dict[str, Any] = {"input_images": input_url, "trigger_word": trigger_word}
        if steps:
            training_input["num_train_steps"] = steps
        if rank:
            training_input["lora_rank"] = rank
        if learning_rate:
            training_input["learning_rate"] = learning_rate

        training = await self.gateway.start_training(self.trainer_model, self.trainer_version, destination, training_input)
        training_id = training.get("id")
        if not training_id:
            raise UpstreamGatewayError("Replicate did not return a training id")
        logger.info("[%s] training started for %s (trigger %s)", training_id, destination, trigger_word)

        output = training.get("output") or {}
        record = self.store.create(
            TrainingJobRecord(
                training_id=training_id,
                destination=destination,
                trigger_word=trigger_word,
                owner=self.owner,
                model_name=sanitized,
                input_url=input_url,
                status=training.get("status") or "starting",
                created_at=utc_now(),
                updated_at=utc_now(),
                version=output.get("version"),
                weights_url=output.get("weights"),
                error=training.get("error"),
            )
        )
        self.store.prune(self.max_records)
        return record

    def get_record(self, training_id: str) -> TrainingJobRecord:
        record = self.store.get(training_id)
        if record is None:
            raise NotFoundError("Training not found")
        return record

    async def get_status(self, training_id: str) -> Tuple[TrainingJobRecord, Dict[str, Any]]:
        """Merged record plus the raw remote payload."""
        existing = self.get_record(training_id)
        try:
            remote = await self.gateway.get_training(training_id)
        except UpstreamGatewayError as e:
            logger.warning("[%s] status fetch failed: %s", training_id, e)
            raise StatusFetchError(e.message, existing, e.status_code_upstream, e.body) from e

        output = remote.get("output") or {}
        updated = self.store.update(
            training_id,
            status=remote.get("status") or existing.status,
            error=remote.get("error"),
            version=output.get("version") or existing.version,
            weights_url=output.get("weights") or existing.weights_url,
        )
        return updated or existing, remote

    def list_records(self) -> List[TrainingJobRecord]:
        return self.store.list()

    def list_completed(self) -> List[TrainingJobRecord]:
        return [r for r in self.store.list() if r.is_succeeded and r.version]

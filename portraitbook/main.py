# portraitbook/main.py
"""
Portraitbook API

Training:
  POST /api/fine-tune            form: modelName, zip | images[]  -> start training
  GET  /api/fine-tune            ?trainingId                      -> stored record
  GET  /api/fine-tune/status     ?trainingId                      -> live status merged into record
  GET  /api/fine-tune/records                                     -> all records, newest first

Generation:
  POST /api/story-inference      one slide through the generation pipeline
  POST /api/face-swap            quick face swap of a portrait onto a slide

Storybook session (server-side slide state):
  POST /api/story                upload + rasterize a PDF
  GET  /api/story                current slides
  POST /api/story/select, /api/story/portrait
  POST /api/story/generate       generate-all in the background, one slide at a time
  POST /api/story/slides/{id}/generate
  POST /api/story/export         PDF of the results
  DELETE /api/story
"""
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from functools import cached_property
from typing import Dict, List, Optional

from fastapi import BackgroundTasks, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pdf2image.exceptions import PDFInfoNotInstalledError, PDFPageCountError, PDFSyntaxError
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from portraitbook.config import Settings, get_settings
from portraitbook.errors import NotFoundError, PortraitbookError, StatusFetchError, ValidationError
from portraitbook.gateway import ReplicateGateway
from portraitbook.pdfio import assemble_pdf, encode_data_url, rasterize_pdf
from portraitbook.pipeline import GenerationStrategy, SlideRequest, build_strategy, face_swap
from portraitbook.polling import TrainingPoller
from portraitbook.prompts import PromptSynthesizer
from portraitbook.records import TrainingJobRecord, TrainingRecordStore, build_record_store
from portraitbook.slides import DEFAULT_GENERATE_COUNT, DEFAULT_PAGE_COUNT, SlideStore, StoryGenerator, StoryManifest, collect_page_images
from portraitbook.storage import ExportStorage
from portraitbook.training import TrainingJobManager, UploadedFile

# ---------- logging ----------
logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger("portraitbook")


# ---------- services ----------
class Services:
    """
    Lazily built collaborators. A dependency whose configuration is missing
    raises ConfigurationError the first time a route needs it.
    """

    def __init__(
        self,
        settings: Settings,
        gateway: Optional[ReplicateGateway] = None,
        records: Optional[TrainingRecordStore] = None,
        synthesizer: Optional[PromptSynthesizer] = None,
        export_storage: Optional[ExportStorage] = None,
        auto_poll: bool = True,
    ):
        self.settings = settings
        self.auto_poll = auto_poll
        self.slides = SlideStore()
        self.pollers: Dict[str, TrainingPoller] = {}
        self.records = records if records is not None else build_record_store(settings.training_records_path)
        if gateway is not None:
            self.gateway = gateway
        if synthesizer is not None:
            self.synthesizer = synthesizer
        if export_storage is not None:
            self.export_storage = export_storage

    @cached_property
    def gateway(self) -> ReplicateGateway:
        return ReplicateGateway.from_settings(self.settings)

    @cached_property
    def synthesizer(self) -> PromptSynthesizer:
        return PromptSynthesizer.from_settings(self.settings)

    @cached_property
    def manager(self) -> TrainingJobManager:
        return TrainingJobManager.from_settings(self.settings, self.gateway, self.records)

    @cached_property
    def strategy(self) -> GenerationStrategy:
        return build_strategy(self.settings.use_inpainting, self.gateway, self.synthesizer)

    @cached_property
    def generator(self) -> StoryGenerator:
        return StoryGenerator(self.slides, self.strategy, self.gateway.fetch_bytes)

    @cached_property
    def export_storage(self) -> Optional[ExportStorage]:
        return ExportStorage.from_settings(self.settings)

    def watch_training(self, training_id: str) -> Optional[TrainingPoller]:
        """Background polling for one training; at most one loop per training id."""
        if not self.auto_poll:
            return None
        poller = self.pollers.get(training_id)
        if poller is not None and poller.active:
            return poller
        # finished loops are dropped as new ones start
        self.pollers = {tid: p for tid, p in self.pollers.items() if p.active}
        poller = TrainingPoller(self.manager, interval=self.settings.poll_interval_seconds)
        self.pollers[training_id] = poller
        poller.start(training_id)
        return poller

    def stop_polling(self) -> None:
        for poller in self.pollers.values():
            poller.stop()
        self.pollers = {}


# ---------- request models ----------
class StoryInferenceRequest(BaseModel):
    slideId: Optional[str] = None
    slideTitle: Optional[str] = None
    slideDescription: Optional[str] = None
    backgroundImage: Optional[str] = None
    modelVersion: Optional[str] = None
    triggerWord: Optional[str] = None
    storyContext: Optional[str] = None
    guidance: Optional[str] = None


class FaceSwapRequest(BaseModel):
    slideImage: Optional[str] = None
    userImage: Optional[str] = None


class SelectSlideRequest(BaseModel):
    slideId: str


class PortraitRequest(BaseModel):
    slideId: str
    image: str


class GenerateStoryRequest(BaseModel):
    trainingId: Optional[str] = None
    slideCount: Optional[int] = None
    storyContext: Optional[str] = None


# ---------- app ----------
def create_app(services: Optional[Services] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        app.state.services.stop_polling()

    app = FastAPI(title="Portraitbook", lifespan=lifespan)
    app.state.services = services or Services(get_settings())

    @app.exception_handler(PortraitbookError)
    async def portraitbook_error_handler(request: Request, exc: PortraitbookError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        problems = []
        for err in exc.errors():
            field = ".".join(str(part) for part in err.get("loc", ())[1:]) or "body"
            problems.append(f"{field}: {err.get('msg', 'invalid')}")
        message = "Invalid request: " + "; ".join(problems)
        logger.warning("%s %s rejected: %s", request.method, request.url.path, message)
        return JSONResponse(status_code=400, content={"error": message})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("%s %s crashed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=500, content={"error": str(exc) or "Internal server error"})

    def svc(request: Request) -> Services:
        return request.app.state.services

    def _selected_model(services: Services, training_id: Optional[str]) -> TrainingJobRecord:
        if training_id:
            record = services.manager.get_record(training_id)
            if not (record.is_succeeded and record.version):
                raise ValidationError(f"Training {training_id} has no completed model yet")
            return record
        completed = services.manager.list_completed()
        if not completed:
            raise ValidationError("No completed model available")
        return completed[0]

    # ---------- training ----------
    @app.post("/api/fine-tune")
    async def start_fine_tune(
        request: Request,
        model_name: Optional[str] = Form(None, alias="modelName"),
        zip_file: Optional[UploadFile] = File(None, alias="zip"),
        images: Optional[List[UploadFile]] = File(None),
        trigger_word: Optional[str] = Form(None, alias="triggerWord"),
        steps: Optional[int] = Form(None),
        rank: Optional[int] = Form(None),
        learning_rate: Optional[float] = Form(None, alias="learningRate"),
    ):
        services = svc(request)
        archive = await zip_file.read() if zip_file is not None else None
        uploaded = []
        for f in images or []:
            uploaded.append(UploadedFile(f.filename or "", f.content_type or "", await f.read()))
        if archive is None and not uploaded:
            raise ValidationError("No files provided")

        record = await services.manager.submit_training(
            model_name=model_name,
            images=uploaded,
            archive=archive,
            trigger_word=trigger_word,
            steps=steps,
            rank=rank,
            learning_rate=learning_rate,
        )
        services.watch_training(record.training_id)
        return {
            "success": True,
            "trainingId": record.training_id,
            "triggerWord": record.trigger_word,
            "record": record.to_public(),
        }

    @app.get("/api/fine-tune")
    async def get_fine_tune(request: Request, training_id: Optional[str] = Query(None, alias="trainingId")):
        if not training_id:
            raise ValidationError("trainingId is required")
        record = svc(request).records.get(training_id)
        if record is None:
            raise NotFoundError("Training not found")
        return {"record": record.to_public()}

    @app.get("/api/fine-tune/status")
    async def fine_tune_status(request: Request, training_id: Optional[str] = Query(None, alias="trainingId")):
        if not training_id:
            raise ValidationError("trainingId is required")
        services = svc(request)
        try:
            record, remote = await services.manager.get_status(training_id)
        except StatusFetchError as e:
            logger.error("[%s] training status error: %s", training_id, e.message)
            return JSONResponse(status_code=500, content={"error": e.message, "record": e.record.to_public()})
        if not record.is_terminal:
            services.watch_training(training_id)
        return {"record": record.to_public(), "remote": remote}

    @app.get("/api/fine-tune/records")
    async def fine_tune_records(request: Request):
        records = [r.to_public() for r in svc(request).records.list()]
        return JSONResponse({"records": records}, headers={"Cache-Control": "no-store, max-age=0"})

    # ---------- generation ----------
    @app.post("/api/story-inference")
    async def story_inference(request: Request, body: StoryInferenceRequest):
        if not (body.slideId and body.backgroundImage and body.modelVersion and body.triggerWord):
            raise ValidationError("Missing required inference parameters")
        slide = SlideRequest(slide_id=body.slideId, title=body.slideTitle or body.slideId, description=body.slideDescription)
        result = await svc(request).strategy.generate(
            slide,
            body.backgroundImage,
            body.modelVersion,
            body.triggerWord,
            body.storyContext,
            guidance=body.guidance,
        )
        return result.to_response()

    @app.post("/api/face-swap")
    async def face_swap_route(request: Request, body: FaceSwapRequest):
        if not body.slideImage or not body.userImage:
            raise ValidationError("Missing slideImage or userImage")
        image_url = await face_swap(svc(request).gateway, body.slideImage, body.userImage)
        return {"success": True, "imageUrl": image_url}

    # ---------- storybook session ----------
    @app.post("/api/story")
    async def load_story(request: Request, file: UploadFile = File(...), pages: int = Form(DEFAULT_PAGE_COUNT)):
        if pages < 1:
            raise ValidationError("pages must be at least 1")
        services = svc(request)
        content = await file.read()
        manifest = StoryManifest.from_file(file.filename or "story.pdf", pages)
        try:
            rendered = await run_in_threadpool(rasterize_pdf, content, [s.pdf_page for s in manifest.slides])
        except (PDFPageCountError, PDFSyntaxError, PDFInfoNotInstalledError) as e:
            logger.exception("[%s] failed rasterizing PDF: %s", manifest.id, e)
            raise ValidationError("Failed to load PDF. Please ensure it's a valid PDF file.") from e
        base_images = {s.id: encode_data_url(rendered[s.pdf_page]) for s in manifest.slides if s.pdf_page in rendered}
        services.slides.load_story(manifest, base_images)
        return services.slides.snapshot()

    @app.get("/api/story")
    async def get_story(request: Request):
        return svc(request).slides.snapshot()

    @app.delete("/api/story")
    async def clear_story(request: Request):
        svc(request).slides.clear()
        return {"ok": True}

    @app.post("/api/story/select")
    async def select_slide(request: Request, body: SelectSlideRequest):
        store = svc(request).slides
        store.select_slide(body.slideId)
        return {"currentSlideId": store.current_slide_id}

    @app.post("/api/story/portrait")
    async def set_portrait(request: Request, body: PortraitRequest):
        record = svc(request).slides.set_user_portrait(body.slideId, body.image)
        return {"slide": record.to_public()}

    @app.post("/api/story/generate")
    async def generate_story(request: Request, background_tasks: BackgroundTasks, body: GenerateStoryRequest):
        services = svc(request)
        if services.slides.story is None:
            raise ValidationError("No story loaded")
        model = _selected_model(services, body.trainingId)
        count = body.slideCount or DEFAULT_GENERATE_COUNT
        background_tasks.add_task(services.generator.generate_all, model.version, model.trigger_word, count, body.storyContext)
        logger.info("Generating %d slides with %s", count, model.version)
        return {"status": "processing", "trainingId": model.training_id, "slideCount": count}

    @app.post("/api/story/slides/{slide_id}/generate")
    async def generate_slide(request: Request, slide_id: str, body: GenerateStoryRequest):
        services = svc(request)
        services.slides.get(slide_id)
        model = _selected_model(services, body.trainingId)
        await services.generator.generate_slide(slide_id, model.version, model.trigger_word, body.storyContext)
        return {"slide": services.slides.get(slide_id).to_public()}

    @app.post("/api/story/export")
    async def export_story(request: Request):
        services = svc(request)
        story = services.slides.story
        if story is None:
            raise ValidationError("No story loaded")
        pages = await collect_page_images(services.slides, lambda url: services.gateway.fetch_bytes(url))
        pdf_bytes = await run_in_threadpool(assemble_pdf, pages)
        storage = services.export_storage
        if storage is not None:
            stored = await run_in_threadpool(storage.store_pdf, story.id, pdf_bytes)
            return stored
        return Response(
            content=pdf_bytes,
            media_type="application/pdf",
            headers={"Content-Disposition": f'attachment; filename="{story.id}.pdf"'},
        )

    @app.get("/health")
    async def health():
        return {"ok": True, "time": datetime.now(timezone.utc).isoformat()}

    return app


app = create_app()

# ---------- runner ----------
if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run("portraitbook.main:app", host="0.0.0.0", port=port)

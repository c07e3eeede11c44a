"""FastAPI application for the AI tutor chat service."""

import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, List, Optional

from fastapi import FastAPI, File, Header, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field

from .config import settings
from .models.schemas import (
    Attachment,
    AttachmentRecord,
    AttachmentRejection,
    CandidateFile,
    Persona,
    TranscriptEntry,
    UserIdentity,
)
from .services.attachments import AttachmentPipeline
from .services.blob_store import LocalBlobStore
from .services.error_handling import ErrorRecovery, TurnRejected, UploadFailed
from .services.llm_client import get_image_client, get_llm_client
from .services.session import SessionController
from .services.storage import RecordNotFound, Storage, StorageError
from .services.text_extraction import DocumentTextExtractor
from .services.visual_aid import VisualAidAdvisor

# Configure logging
_log_fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
logging.basicConfig(level=logging.INFO, format=_log_fmt)

# Optionally mirror all logs to a file.
if settings.log_file:
    try:
        Path(settings.log_file).parent.mkdir(parents=True, exist_ok=True)
        _fh = logging.FileHandler(settings.log_file, encoding="utf-8")
        _fh.setFormatter(logging.Formatter(_log_fmt))
        _fh.setLevel(logging.DEBUG)
        logging.getLogger().addHandler(_fh)
    except OSError as _log_err:
        print(f"[tutorchat] WARNING: could not open log file {settings.log_file!r}: {_log_err}", flush=True)

logger = logging.getLogger(__name__)

storage = Storage(base_dir=settings.data_dir)
blob_store = LocalBlobStore(settings.blob_dir, settings.public_base_url)

# One controller per persona conversation
session_controllers: Dict[str, SessionController] = {}


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.personas_file:
        try:
            storage.seed_personas(settings.personas_file)
        except (OSError, ValueError, StorageError) as e:
            logger.error(f"Failed to seed personas from {settings.personas_file}: {e}")
    yield


# Create FastAPI app
app = FastAPI(
    title="AI Tutor Chat",
    description="Conversations with configurable AI tutor personas, with attachments and visual aids",
    version="0.1.0",
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify exact origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount("/blobs", StaticFiles(directory=str(blob_store.root_dir)), name="blobs")


def _build_controller(persona_id: str, user_id: str) -> SessionController:
    pipeline = AttachmentPipeline(
        blob_store=blob_store,
        extractor=DocumentTextExtractor(blob_store=blob_store),
    )
    return SessionController(
        persona_id=persona_id,
        storage=storage,
        pipeline=pipeline,
        advisor=VisualAidAdvisor(get_image_client()),
        chat_client=get_llm_client(),
        user_id=user_id,
    )


def _get_controller(persona_id: str, user: UserIdentity) -> SessionController:
    """Return the open controller for a persona, opening it on first use."""
    controller = session_controllers.get(persona_id)
    if controller is None:
        controller = _build_controller(persona_id=persona_id, user_id=user.user_id)
        try:
            controller.open()
        except RecordNotFound:
            raise HTTPException(status_code=404, detail="Persona not found")
        session_controllers[persona_id] = controller
    return controller


def _current_user(user_id: Optional[str], email: Optional[str]) -> UserIdentity:
    return UserIdentity(
        user_id=user_id or settings.default_user_id,
        email=email or settings.default_user_email,
    )


def _sse(event: Dict) -> str:
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


# Request / response models


class SendMessageRequest(BaseModel):
    """Request to submit a turn."""

    message: str = Field(default="", max_length=settings.max_input_length)


class TranscriptResponse(BaseModel):
    persona_id: str
    phase: str
    messages: List[TranscriptEntry]
    staged_attachments: List[Attachment]


class UploadAttachmentsResponse(BaseModel):
    accepted: List[Attachment]
    rejected: List[AttachmentRejection]
    staged: List[Attachment]
    message: str


class StagedAttachmentsResponse(BaseModel):
    staged: List[Attachment]


class AttachmentRecordsResponse(BaseModel):
    message_id: str
    attachments: List[AttachmentRecord]


# API Endpoints


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/api/personas/{persona_id}", response_model=Persona)
async def get_persona(persona_id: str):
    try:
        return storage.load_persona(persona_id)
    except RecordNotFound:
        raise HTTPException(status_code=404, detail="Persona not found")
    except StorageError as e:
        logger.error(f"Failed to load persona {persona_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to load persona")


@app.get("/api/personas/{persona_id}/messages", response_model=TranscriptResponse)
async def get_messages(
    persona_id: str,
    x_user_id: Optional[str] = Header(default=None),
    x_user_email: Optional[str] = Header(default=None),
):
    """
    Current transcript of the conversation.

    Loads it in full on first access, and again after the view was cleared.
    """
    try:
        controller = _get_controller(persona_id, _current_user(x_user_id, x_user_email))
        if controller.view_cleared and not controller.is_busy:
            controller.open()
        return TranscriptResponse(
            persona_id=persona_id,
            phase=controller.phase.value,
            messages=list(controller.snapshot()),
            staged_attachments=list(controller.composer.attachments),
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to load messages for persona {persona_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to load messages")


@app.post("/api/personas/{persona_id}/attachments", response_model=UploadAttachmentsResponse)
async def upload_attachments(
    persona_id: str,
    files: List[UploadFile] = File(...),
    x_user_id: Optional[str] = Header(default=None),
    x_user_email: Optional[str] = Header(default=None),
):
    """
    Upload files and stage the accepted ones for the next turn.

    Oversized or unsupported files are reported in ``rejected`` and do not
    stop the rest of the batch.
    """
    try:
        controller = _get_controller(persona_id, _current_user(x_user_id, x_user_email))

        if len(files) > settings.max_files_per_batch:
            raise HTTPException(
                status_code=400,
                detail=f"At most {settings.max_files_per_batch} files per upload",
            )

        candidates = []
        for file in files:
            content = await file.read()
            candidates.append(
                CandidateFile(
                    filename=file.filename or "file",
                    data=content,
                    content_type=file.content_type or "",
                )
            )

        result = await controller.add_files(candidates)
        return UploadAttachmentsResponse(
            accepted=result.accepted,
            rejected=result.rejected,
            staged=list(controller.composer.attachments),
            message=f"{len(result.accepted)} file(s) uploaded successfully.",
        )

    except HTTPException:
        raise
    except UploadFailed as e:
        logger.error(f"Upload failed for persona {persona_id}: {e}")
        raise HTTPException(status_code=502, detail=ErrorRecovery.notification_for(e))
    except Exception as e:
        logger.error(f"Failed to upload files: {e}")
        raise HTTPException(status_code=500, detail="Failed to upload files")


@app.delete(
    "/api/personas/{persona_id}/attachments/staged/{index}",
    response_model=StagedAttachmentsResponse,
)
async def remove_staged_attachment(
    persona_id: str,
    index: int,
    x_user_id: Optional[str] = Header(default=None),
    x_user_email: Optional[str] = Header(default=None),
):
    controller = _get_controller(persona_id, _current_user(x_user_id, x_user_email))
    try:
        controller.remove_attachment(index)
    except IndexError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return StagedAttachmentsResponse(staged=list(controller.composer.attachments))


@app.get("/api/messages/{message_id}/attachments", response_model=AttachmentRecordsResponse)
async def get_message_attachments(message_id: str):
    """Attachment records of a message, independent of the message body."""
    try:
        return AttachmentRecordsResponse(
            message_id=message_id,
            attachments=storage.list_attachment_records(message_id),
        )
    except StorageError as e:
        logger.error(f"Failed to list attachments of {message_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to list attachments")


@app.post("/api/personas/{persona_id}/messages/stream")
async def send_message_stream(
    persona_id: str,
    request: SendMessageRequest,
    x_user_id: Optional[str] = Header(default=None),
    x_user_email: Optional[str] = Header(default=None),
):
    """
    Submit a turn with a streaming response.

    Returns Server-Sent Events with the user entry, the accumulated assistant
    text after every chunk, an optional visual aid and the settled entry.
    """
    user = _current_user(x_user_id, x_user_email)
    controller = _get_controller(persona_id, user)

    if controller.is_busy:
        raise HTTPException(status_code=409, detail="A turn is already in progress")
    if not request.message.strip() and not controller.composer.attachments:
        raise HTTPException(status_code=400, detail="Message is empty")

    async def event_generator():
        try:
            yield _sse({"type": "start"})

            async for event in controller.submit_stream(request.message, user_id=user.user_id):
                yield _sse(event)

            yield _sse({"type": "complete", "phase": controller.phase.value})

        except Exception as e:
            logger.error(f"Streaming error: {e}")
            yield _sse({"type": "error", "message": ErrorRecovery.notification_for(e)})

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


@app.post("/api/personas/{persona_id}/clear", response_model=TranscriptResponse)
async def clear_conversation_view(
    persona_id: str,
    x_user_id: Optional[str] = Header(default=None),
    x_user_email: Optional[str] = Header(default=None),
):
    """Clear the visible transcript. Stored messages are untouched and reload on the next GET of the transcript."""
    controller = _get_controller(persona_id, _current_user(x_user_id, x_user_email))
    try:
        controller.clear_view()
    except TurnRejected:
        raise HTTPException(status_code=409, detail="A turn is already in progress")
    return TranscriptResponse(
        persona_id=persona_id,
        phase=controller.phase.value,
        messages=list(controller.snapshot()),
        staged_attachments=list(controller.composer.attachments),
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port)

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile

from vidproxy.errors import ImageTooLargeError, InvalidArgumentError
from vidproxy.models.domain import GenerationKind, GenerationRequest, ImagePayload
from vidproxy.models.schemas import ErrorResponse, JobResultResponse, JobSubmittedResponse, TextToVideoRequest
from vidproxy.services.normalizer import coerce_blob
from vidproxy.services.video_service import VideoService, get_video_service

logger = logging.getLogger(__name__)

router = APIRouter(
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        413: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    }
)

_READ_CHUNK = 1024 * 1024


async def _read_capped(upload: UploadFile, limit: int) -> bytes:
    data = bytearray()
    while True:
        chunk = await upload.read(_READ_CHUNK)
        if not chunk:
            return bytes(data)
        data.extend(chunk)
        if len(data) > limit:
            raise ImageTooLargeError(f"Image too large. Please use a smaller image (<{limit / 1_000_000:.1f}MB).")


@router.post("/video/generate_text", response_model=JobSubmittedResponse, response_model_exclude_none=True)
async def generate_text(payload: TextToVideoRequest, service: VideoService = Depends(get_video_service)):
    request = GenerationRequest(
        kind=GenerationKind.TEXT_TO_VIDEO,
        prompt=payload.prompt,
        model_key=payload.model or service.default_model_key(GenerationKind.TEXT_TO_VIDEO),
        parameters=payload.tuning_parameters(),
    )
    return await service.submit(request)


@router.post("/video/generate_image", response_model=JobSubmittedResponse, response_model_exclude_none=True)
async def generate_image(
    image: Optional[UploadFile] = File(None),
    prompt: str = Form(""),
    model: Optional[str] = Form(None),
    duration: Optional[str] = Form(None),
    resolution: Optional[str] = Form(None),
    aspect_ratio: Optional[str] = Form(None),
    fps: Optional[int] = Form(None),
    watermark: Optional[bool] = Form(None),
    generate_audio: Optional[bool] = Form(None),
    service: VideoService = Depends(get_video_service),
):
    if image is None:
        raise InvalidArgumentError("image file required (multipart field: image)")

    model_key = model or service.default_model_key(GenerationKind.IMAGE_TO_VIDEO)
    profile = service.registry.get(model_key)
    mime_type = image.content_type or "application/octet-stream"
    data = await _read_capped(image, profile.max_image_bytes(mime_type))
    if not data:
        raise InvalidArgumentError("image file is empty")

    parameters = {
        "duration": duration,
        "resolution": resolution,
        "aspect_ratio": aspect_ratio,
        "fps": fps,
        "watermark": watermark,
        "generate_audio": generate_audio,
    }
    request = GenerationRequest(
        kind=GenerationKind.IMAGE_TO_VIDEO,
        prompt=prompt,
        model_key=model_key,
        image=ImagePayload(data=data, mime_type=mime_type, filename=image.filename or "image"),
        parameters={key: value for key, value in parameters.items() if value is not None},
    )
    return await service.submit(request)


@router.get("/video/result", response_model=JobResultResponse, response_model_exclude_none=True)
async def get_result_by_status_url(
    status_url: Optional[str] = Query(None),
    service: VideoService = Depends(get_video_service),
):
    if not status_url:
        raise InvalidArgumentError("status_url required")
    return await service.get_result(status_url=status_url)


@router.get("/video/result/{job_id}", response_model=JobResultResponse, response_model_exclude_none=True)
async def get_result(
    job_id: str,
    model: Optional[str] = Query(None),
    type: Optional[str] = Query(None),
    service: VideoService = Depends(get_video_service),
):
    model_key = model
    if model_key is None and type is not None:
        kind = GenerationKind.TEXT_TO_VIDEO if type == "text" else GenerationKind.IMAGE_TO_VIDEO
        model_key = service.default_model_key(kind)
    return await service.get_result(job_id=job_id, model_key=model_key)


@router.post("/fal/webhook")
async def fal_webhook(request: Request, service: VideoService = Depends(get_video_service)):
    body = coerce_blob(await request.body())
    logger.info("Fal webhook received for %s", body.get("request_id") if isinstance(body, dict) else None)
    return await service.handle_webhook(body)


@router.get("/healthz")
async def health_check(service: VideoService = Depends(get_video_service)):
    return service.health()

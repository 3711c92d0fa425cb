import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class GenerationKind(str, Enum):
    TEXT_TO_VIDEO = "text_to_video"
    IMAGE_TO_VIDEO = "image_to_video"


class NormalizedStatus(str, Enum):
    IN_QUEUE = "IN_QUEUE"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class ImagePayload:
    data: bytes
    mime_type: str = "application/octet-stream"
    filename: str = "image"

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class GenerationRequest:
    kind: GenerationKind
    prompt: str
    model_key: str
    image: Optional[ImagePayload] = None
    parameters: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        has_image = self.image is not None
        if has_image != (self.kind is GenerationKind.IMAGE_TO_VIDEO):
            raise ValueError("image must be present exactly when kind is image_to_video")


@dataclass(frozen=True)
class Job:
    job_id: str
    model_key: str
    poll_url: str
    response_url: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    cached_url: Optional[str] = None


@dataclass(frozen=True)
class NormalizedResult:
    status: NormalizedStatus
    video_url: Optional[str] = None
    raw: Any = None

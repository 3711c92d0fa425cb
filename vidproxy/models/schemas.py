from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

TUNING_FIELDS = ("duration", "resolution", "aspect_ratio", "fps", "watermark", "generate_audio")


class TextToVideoRequest(BaseModel):
    model_config = ConfigDict(extra="allow", protected_namespaces=())

    prompt: str = Field("", description="Text prompt for the video model")
    model: Optional[str] = Field(None, description="Model profile key; defaults to TEXT_MODEL_KEY")
    duration: Optional[Union[int, float, str]] = None
    resolution: Optional[str] = None
    aspect_ratio: Optional[str] = None
    fps: Optional[int] = None
    watermark: Optional[bool] = None
    generate_audio: Optional[bool] = None

    def tuning_parameters(self) -> Dict[str, Any]:
        params = {name: getattr(self, name) for name in TUNING_FIELDS}
        params.update(self.model_extra or {})
        return {key: value for key, value in params.items() if value is not None}


class JobSubmittedResponse(BaseModel):
    status: str
    request_id: str
    job_id: str
    status_url: str
    response_url: str
    video_url: Optional[str] = None
    raw: Optional[Any] = None
    overridden: Optional[Dict[str, Any]] = None


class JobResultResponse(BaseModel):
    status: str
    request_id: Optional[str] = None
    video_url: Optional[str] = None
    raw: Optional[Any] = None


class ErrorResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    error: str

import json
import logging
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from vidproxy.config import Settings
from vidproxy.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Largest request body Fal accepts, measured after base64 expansion.
FAL_PAYLOAD_LIMIT = 5_200_000
REPLICATE_PAYLOAD_LIMIT = 10_000_000


class Provider(str, Enum):
    FAL = "fal"
    REPLICATE = "replicate"


class SubmissionShape(str, Enum):
    FLAT = "flat"
    NESTED_UNDER_INPUT = "nested_under_input"


class ImageTransport(str, Enum):
    DATA_URI = "data_uri"
    MULTIPART = "multipart"


def data_uri_prefix(mime_type: str) -> str:
    return f"data:{mime_type};base64,"


def max_raw_bytes_for(payload_limit: int, transport: ImageTransport, mime_type: str = "image/jpeg") -> int:
    """Largest raw image that still fits ``payload_limit`` once encoded for ``transport``."""
    if transport is ImageTransport.MULTIPART:
        return payload_limit
    budget = payload_limit - len(data_uri_prefix(mime_type))
    if budget <= 0:
        return 0
    # base64 emits 4 bytes for every 3 input bytes
    return (budget // 4) * 3


@dataclass(frozen=True)
class ModelProfile:
    key: str
    provider: Provider
    model_id: str
    submission_shape: SubmissionShape = SubmissionShape.FLAT
    image_transport: ImageTransport = ImageTransport.DATA_URI
    supports_text: bool = True
    supports_image: bool = False
    image_field: str = "image_url"
    alternate_image_fields: Tuple[str, ...] = ()
    required_fixed_fields: Mapping[str, Any] = field(default_factory=dict)
    default_parameters: Mapping[str, Any] = field(default_factory=dict)
    parameter_aliases: Mapping[str, str] = field(default_factory=dict)
    allowed_parameters: Optional[Tuple[str, ...]] = None
    allow_empty_prompt: bool = False
    max_payload_bytes: int = FAL_PAYLOAD_LIMIT
    fallback_model_id: Optional[str] = None
    version_id: Optional[str] = None

    def __post_init__(self):
        if self.image_transport is ImageTransport.MULTIPART and self.submission_shape is not SubmissionShape.FLAT:
            raise ConfigurationError(f"profile {self.key}: multipart image transport needs a flat submission shape")
        if not (self.supports_text or self.supports_image):
            raise ConfigurationError(f"profile {self.key}: supports neither text nor image input")
        for name in ("required_fixed_fields", "default_parameters", "parameter_aliases"):
            object.__setattr__(self, name, MappingProxyType(dict(getattr(self, name))))

    def max_image_bytes(self, mime_type: str = "image/jpeg") -> int:
        return max_raw_bytes_for(self.max_payload_bytes, self.image_transport, mime_type)

    def describe(self) -> Dict[str, Any]:
        return {
            "provider": self.provider.value,
            "model_id": self.model_id,
            "supports_text": self.supports_text,
            "supports_image": self.supports_image,
            "submission_shape": self.submission_shape.value,
        }

    @classmethod
    def from_dict(cls, key: str, data: Mapping[str, Any]) -> "ModelProfile":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"profile {key}: unknown fields {sorted(unknown)}")
        values = dict(data)
        values["key"] = key
        try:
            values["provider"] = Provider(values["provider"])
            if "submission_shape" in values:
                values["submission_shape"] = SubmissionShape(values["submission_shape"])
            if "image_transport" in values:
                values["image_transport"] = ImageTransport(values["image_transport"])
        except (KeyError, ValueError) as exc:
            raise ConfigurationError(f"profile {key}: {exc}") from exc
        if "alternate_image_fields" in values:
            values["alternate_image_fields"] = tuple(values["alternate_image_fields"])
        if values.get("allowed_parameters") is not None:
            values["allowed_parameters"] = tuple(values["allowed_parameters"])
        if "model_id" not in values:
            raise ConfigurationError(f"profile {key}: model_id is required")
        return cls(**values)


BUILTIN_PROFILES: Tuple[ModelProfile, ...] = (
    ModelProfile(
        key="fal-text",
        provider=Provider.FAL,
        model_id="fal-ai/wan/v2.2-a14b/text-to-video",
        submission_shape=SubmissionShape.NESTED_UNDER_INPUT,
    ),
    ModelProfile(
        key="fal-image",
        provider=Provider.FAL,
        model_id="fal-ai/veo2/image-to-video",
        submission_shape=SubmissionShape.NESTED_UNDER_INPUT,
        supports_text=False,
        supports_image=True,
        default_parameters={"aspect_ratio": "auto", "duration": "5s"},
    ),
    ModelProfile(
        key="fal-ltx-image",
        provider=Provider.FAL,
        model_id="fal-ai/ltx-video/image-to-video",
        supports_image=True,
        required_fixed_fields={"fps": 24},
        parameter_aliases={"resolution": "video_size"},
    ),
    ModelProfile(
        key="replicate-text",
        provider=Provider.REPLICATE,
        model_id="google/veo-3",
        fallback_model_id="google/veo-3-fast",
        submission_shape=SubmissionShape.NESTED_UNDER_INPUT,
        max_payload_bytes=REPLICATE_PAYLOAD_LIMIT,
    ),
    ModelProfile(
        key="replicate-image",
        provider=Provider.REPLICATE,
        model_id="pixverse/pixverse-v5",
        fallback_model_id="pixverse/pixverse-v4.5",
        submission_shape=SubmissionShape.NESTED_UNDER_INPUT,
        supports_text=False,
        supports_image=True,
        image_field="input_image",
        alternate_image_fields=("image",),
        allow_empty_prompt=True,
        max_payload_bytes=REPLICATE_PAYLOAD_LIMIT,
    ),
)


class ProfileRegistry:
    """Read-only table of model profiles, built once at startup."""

    def __init__(self, profiles: Iterable[ModelProfile]):
        table: Dict[str, ModelProfile] = {}
        for profile in profiles:
            table[profile.key] = profile
        self._profiles = MappingProxyType(table)

    def get(self, key: str) -> ModelProfile:
        try:
            return self._profiles[key]
        except KeyError:
            raise ConfigurationError(f"unknown model: {key}") from None

    def keys(self) -> Tuple[str, ...]:
        return tuple(self._profiles)

    def __contains__(self, key: str) -> bool:
        return key in self._profiles

    def __iter__(self):
        return iter(self._profiles.values())

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProfileRegistry":
        profiles = {profile.key: profile for profile in BUILTIN_PROFILES}

        if settings.fal_model_text2video:
            profiles["fal-text"] = replace(profiles["fal-text"], model_id=settings.fal_model_text2video)
        if settings.fal_model_image2video:
            profiles["fal-image"] = replace(profiles["fal-image"], model_id=settings.fal_model_image2video)

        if settings.model_profiles_path:
            for profile in load_profiles_file(Path(settings.model_profiles_path)):
                if profile.key in profiles:
                    logger.info("Profile %s overridden from %s", profile.key, settings.model_profiles_path)
                profiles[profile.key] = profile

        registry = cls(profiles.values())
        for kind, key in (("text", settings.text_model_key), ("image", settings.image_model_key)):
            if key not in registry:
                raise ConfigurationError(f"default {kind} model {key!r} is not a known profile")
        logger.info("Loaded %d model profiles: %s", len(registry.keys()), ", ".join(registry.keys()))
        return registry


def load_profiles_file(path: Path) -> Tuple[ModelProfile, ...]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ConfigurationError(f"cannot read model profiles from {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path}: expected an object mapping profile keys to profiles")
    return tuple(ModelProfile.from_dict(key, value) for key, value in data.items())

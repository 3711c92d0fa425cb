import base64
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from vidproxy.errors import ImageTooLargeError, InvalidArgumentError
from vidproxy.logging_config import redact_payload
from vidproxy.models.domain import GenerationKind, GenerationRequest, ImagePayload
from vidproxy.services.profiles import ImageTransport, ModelProfile, SubmissionShape, data_uri_prefix

logger = logging.getLogger(__name__)


@dataclass
class ShapedPayload:
    """Body to send upstream: either ``json_body`` or multipart ``form_fields`` + ``files``."""

    json_body: Optional[Dict[str, Any]] = None
    form_fields: Dict[str, str] = field(default_factory=dict)
    files: Dict[str, Tuple[str, bytes, str]] = field(default_factory=dict)
    image_field: Optional[str] = None
    overridden: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_multipart(self) -> bool:
        return bool(self.files)

    def loggable(self) -> Dict[str, Any]:
        if self.is_multipart:
            return {"form": dict(self.form_fields), "files": {name: "<redacted>" for name in self.files}}
        return redact_payload(self.json_body or {})


def to_data_uri(image: ImagePayload) -> str:
    return data_uri_prefix(image.mime_type) + base64.b64encode(image.data).decode("ascii")


def _form_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _merge_parameters(request: GenerationRequest, profile: ModelProfile, reserved: Tuple[str, ...]):
    params: Dict[str, Any] = dict(profile.default_parameters)
    supplied = set()
    for name, value in request.parameters.items():
        if value is None:
            continue
        target = profile.parameter_aliases.get(name, name)
        if target in reserved:
            continue
        allowed = profile.allowed_parameters
        if allowed is not None and name not in allowed and target not in allowed:
            logger.debug("Dropping parameter %s not accepted by %s", name, profile.key)
            continue
        params[target] = value
        supplied.add(target)

    overridden = {}
    for name, forced in profile.required_fixed_fields.items():
        if name in supplied and params[name] != forced:
            logger.warning(
                "Overriding %s=%r with %r required by model %s", name, params[name], forced, profile.key
            )
            overridden[name] = {"requested": params[name], "applied": forced}
        params[name] = forced
    return params, overridden


def shape_request(
    request: GenerationRequest, profile: ModelProfile, image_field: Optional[str] = None
) -> ShapedPayload:
    prompt = (request.prompt or "").strip()
    is_image = request.kind is GenerationKind.IMAGE_TO_VIDEO

    if not prompt and not (is_image and profile.allow_empty_prompt):
        raise InvalidArgumentError("prompt required")
    if is_image and not profile.supports_image:
        raise InvalidArgumentError(f"model {profile.key} does not accept images")
    if not is_image and not profile.supports_text:
        raise InvalidArgumentError(f"model {profile.key} requires an image")

    image_field = image_field or profile.image_field
    image = request.image
    if image is not None:
        ceiling = profile.max_image_bytes(image.mime_type)
        if image.size > ceiling:
            raise ImageTooLargeError(
                f"Image too large. Please use a smaller image (<{ceiling / 1_000_000:.1f}MB)."
            )

    fields: Dict[str, Any] = {}
    if prompt:
        fields["prompt"] = prompt
    params, overridden = _merge_parameters(request, profile, reserved=("prompt", image_field))
    fields.update(params)

    shaped = ShapedPayload(image_field=image_field if image is not None else None, overridden=overridden)
    if image is not None and profile.image_transport is ImageTransport.MULTIPART:
        shaped.form_fields = {name: _form_value(value) for name, value in fields.items()}
        shaped.files = {image_field: (image.filename, image.data, image.mime_type)}
    else:
        if image is not None:
            fields[image_field] = to_data_uri(image)
        if profile.submission_shape is SubmissionShape.NESTED_UNDER_INPUT:
            shaped.json_body = {"input": fields}
        else:
            shaped.json_body = fields

    logger.info("Shaped %s payload for %s: %s", request.kind.value, profile.key, shaped.loggable())
    return shaped

"""
Plan model and validation.

A Plan is the fully populated action directive emitted per message. It is a
tagged union over the action (message, react, ignore, image); each variant
has its own normalizer, and illegal combinations (a reaction without emoji,
an image without a prompt, an image that also asks for speech or web search)
cannot be constructed through ``validate_plan``.

Raw planner output uses the wire shape of the function-call schema
(camelCase keys); ``Plan.to_dict()`` emits the same shape, so validating a
validated plan is a no-op.
"""

import copy
import logging
import math
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Union

logger = logging.getLogger("arete.plan")

ACTIONS = ("message", "react", "ignore", "image")
MODALITIES = ("text", "tts")
RISK_TIERS = ("Low", "Medium", "High")
REASONING_EFFORTS = ("minimal", "low", "medium", "high")
VERBOSITIES = ("low", "medium", "high")
TOOL_CHOICES = ("auto", "none", "web_search")
SEARCH_CONTEXT_SIZES = ("low", "medium", "high")
ASPECT_RATIOS = ("auto", "square", "portrait", "landscape")
BACKGROUNDS = ("auto", "transparent", "opaque")
IMAGE_QUALITIES = ("low", "medium", "high", "auto")
OUTPUT_FORMATS = ("png", "webp", "jpeg")
PRESENCE_STATUSES = ("online", "idle", "dnd", "invisible")
ACTIVITY_TYPES = (0, 1, 2, 3, 4, 5)
TTS_LEVELS = ("low", "normal", "high")
TTS_SPEEDS = ("slow", "normal", "fast")
TTS_STYLES = ("casual", "narrative", "cheerful", "sad", "angry")

DEFAULT_RISK_TIER = "Low"
DEFAULT_REACTION = "👍"
DEFAULT_IMAGE_OUTPUT_COMPRESSION = 80

DEFAULT_TTS_OPTIONS: Dict[str, str] = {
    "speed": "normal",
    "pitch": "normal",
    "emphasis": "normal",
    "style": "casual",
    "styleDegree": "normal",
    "styleNote": "",
}

DEFAULT_WIRE_PLAN: Dict[str, Any] = {
    "action": "ignore",
    "modality": "text",
    "openaiOptions": {
        "reasoningEffort": "low",
        "verbosity": "low",
        "tool_choice": "auto",
        "webSearch": {
            "query": "",
            "allowedDomains": [],
            "searchContextSize": "low",
            "userLocation": {"type": "approximate"},
        },
        "ttsOptions": DEFAULT_TTS_OPTIONS,
    },
    "riskTier": DEFAULT_RISK_TIER,
}


def _choice(value: Any, allowed: tuple, default: Any, label: str = "") -> Any:
    if isinstance(value, str):
        candidate = value.strip()
        if candidate in allowed:
            return candidate
        if candidate.lower() in allowed:
            return candidate.lower()
    elif value in allowed and not isinstance(value, bool):
        return value
    if value is not None and label:
        logger.warning("Planner returned unsupported %s %r; using %r.", label, value, default)
    return default


def _deep_merge(base: Dict[str, Any], overlay: Mapping[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in overlay.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


@dataclass(frozen=True)
class WebSearchOptions:
    query: str = ""
    allowed_domains: tuple = ()
    search_context_size: str = "low"
    user_location: Dict[str, Any] = field(default_factory=lambda: {"type": "approximate"})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query": self.query,
            "allowedDomains": list(self.allowed_domains),
            "searchContextSize": self.search_context_size,
            "userLocation": dict(self.user_location),
        }


@dataclass(frozen=True)
class TTSOptions:
    speed: str = "normal"
    pitch: str = "normal"
    emphasis: str = "normal"
    style: str = "casual"
    style_degree: str = "normal"
    style_note: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            "speed": self.speed,
            "pitch": self.pitch,
            "emphasis": self.emphasis,
            "style": self.style,
            "styleDegree": self.style_degree,
            "styleNote": self.style_note,
        }


@dataclass(frozen=True)
class OpenAIOptions:
    reasoning_effort: str = "low"
    verbosity: str = "low"
    tool_choice: str = "auto"
    web_search: Optional[WebSearchOptions] = field(default_factory=WebSearchOptions)
    tts_options: TTSOptions = field(default_factory=TTSOptions)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "reasoningEffort": self.reasoning_effort,
            "verbosity": self.verbosity,
            "tool_choice": self.tool_choice,
            "ttsOptions": self.tts_options.to_dict(),
        }
        if self.web_search is not None:
            data["webSearch"] = self.web_search.to_dict()
        return data


@dataclass(frozen=True)
class PresenceActivity:
    type: int
    name: str
    state: str = ""
    url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type, "name": self.name, "state": self.state}
        if self.url:
            data["url"] = self.url
        return data


@dataclass(frozen=True)
class Presence:
    status: str = "online"
    activities: tuple = ()
    afk: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "activities": [activity.to_dict() for activity in self.activities],
            "afk": self.afk,
        }


@dataclass(frozen=True)
class ImageRequest:
    prompt: str
    aspect_ratio: Optional[str] = None
    background: Optional[str] = None
    quality: Optional[str] = None
    style: Optional[str] = None
    allow_prompt_adjustment: bool = False
    follow_up_response_id: Optional[str] = None
    output_format: Optional[str] = None
    output_compression: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"prompt": self.prompt, "allowPromptAdjustment": self.allow_prompt_adjustment}
        optional = {
            "aspectRatio": self.aspect_ratio,
            "background": self.background,
            "quality": self.quality,
            "style": self.style,
            "followUpResponseId": self.follow_up_response_id,
            "outputFormat": self.output_format,
            "outputCompression": self.output_compression,
        }
        data.update({key: value for key, value in optional.items() if value is not None})
        return data


@dataclass(frozen=True)
class Plan:
    action: ClassVar[str] = "ignore"

    modality: str = "text"
    openai_options: OpenAIOptions = field(default_factory=OpenAIOptions)
    presence: Optional[Presence] = None
    risk_tier: str = DEFAULT_RISK_TIER

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "action": self.action,
            "modality": self.modality,
            "openaiOptions": self.openai_options.to_dict(),
            "riskTier": self.risk_tier,
        }
        if self.presence is not None:
            data["presence"] = self.presence.to_dict()
        return data


@dataclass(frozen=True)
class MessagePlan(Plan):
    action: ClassVar[str] = "message"


@dataclass(frozen=True)
class IgnorePlan(Plan):
    action: ClassVar[str] = "ignore"


@dataclass(frozen=True)
class ReactPlan(Plan):
    action: ClassVar[str] = "react"

    reaction: str = DEFAULT_REACTION

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["reaction"] = self.reaction
        return data


@dataclass(frozen=True)
class ImagePlan(Plan):
    action: ClassVar[str] = "image"

    image_request: ImageRequest = field(default_factory=lambda: ImageRequest(prompt=""))

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["imageRequest"] = self.image_request.to_dict()
        return data


AnyPlan = Union[MessagePlan, ReactPlan, IgnorePlan, ImagePlan]


def default_plan(action: str = "ignore") -> Plan:
    """Canonical fallback; only 'ignore' and 'react' are valid policies."""
    if action == "react":
        return ReactPlan()
    return IgnorePlan()


# Field normalizers -----------------------------------------------------------


def _normalize_tool_choice(value: Any) -> str:
    if isinstance(value, Mapping):
        value = value.get("type")
    return _choice(value, TOOL_CHOICES, "auto", "tool_choice")


def _normalize_web_search(raw: Any) -> WebSearchOptions:
    raw = raw if isinstance(raw, Mapping) else {}
    domains = raw.get("allowedDomains") or []
    location = raw.get("userLocation")
    return WebSearchOptions(
        query=str(raw.get("query") or "").strip(),
        allowed_domains=tuple(str(d) for d in domains if isinstance(d, str) and d.strip())
        if isinstance(domains, (list, tuple))
        else (),
        search_context_size=_choice(raw.get("searchContextSize"), SEARCH_CONTEXT_SIZES, "low", "searchContextSize"),
        user_location=dict(location) if isinstance(location, Mapping) else {"type": "approximate"},
    )


def _normalize_tts(raw: Any) -> TTSOptions:
    raw = raw if isinstance(raw, Mapping) else {}
    return TTSOptions(
        speed=_choice(raw.get("speed"), TTS_SPEEDS, "normal", "tts speed"),
        pitch=_choice(raw.get("pitch"), TTS_LEVELS, "normal", "tts pitch"),
        emphasis=_choice(raw.get("emphasis"), TTS_LEVELS, "normal", "tts emphasis"),
        style=_choice(raw.get("style"), TTS_STYLES, "casual", "tts style"),
        style_degree=_choice(raw.get("styleDegree"), TTS_LEVELS, "normal", "tts styleDegree"),
        style_note=str(raw.get("styleNote") or ""),
    )


def _normalize_openai_options(raw: Any) -> OpenAIOptions:
    raw = raw if isinstance(raw, Mapping) else {}
    tool_choice = _normalize_tool_choice(raw.get("tool_choice"))
    web_search = _normalize_web_search(raw.get("webSearch"))
    if tool_choice == "web_search" and not web_search.query:
        # A search without a query is wasted spend.
        logger.warning("Planner chose web_search without a query; disabling tool use.")
        tool_choice = "none"
    return OpenAIOptions(
        reasoning_effort=_choice(raw.get("reasoningEffort"), REASONING_EFFORTS, "low", "reasoningEffort"),
        verbosity=_choice(raw.get("verbosity"), VERBOSITIES, "low", "verbosity"),
        tool_choice=tool_choice,
        web_search=web_search,
        tts_options=_normalize_tts(raw.get("ttsOptions")),
    )


def _normalize_presence(raw: Any) -> Optional[Presence]:
    if not isinstance(raw, Mapping):
        return None
    status = _choice(raw.get("status"), PRESENCE_STATUSES, None, "presence status")
    if status is None:
        return None
    activities: List[PresenceActivity] = []
    for item in raw.get("activities") or []:
        if not isinstance(item, Mapping):
            continue
        activity_type = _choice(item.get("type"), ACTIVITY_TYPES, None)
        name = str(item.get("name") or "").strip()[:24].strip()
        if activity_type is None or not name:
            continue
        url = item.get("url") if isinstance(item.get("url"), str) else None
        if activity_type == 1 and not url:
            continue
        state = str(item.get("state") or "").strip()[:30].strip()
        activities.append(PresenceActivity(type=activity_type, name=name, state=state, url=url))
    return Presence(status=status, activities=tuple(activities), afk=raw.get("afk") is True)


def normalize_risk_tier(candidate: Any) -> str:
    if candidate in RISK_TIERS:
        return candidate
    if candidate is not None:
        logger.warning("Planner returned unexpected risk tier %r, defaulting to %s.", candidate, DEFAULT_RISK_TIER)
    return DEFAULT_RISK_TIER


def clamp_output_compression(candidate: Any) -> int:
    try:
        value = float(candidate)
    except (TypeError, ValueError):
        return DEFAULT_IMAGE_OUTPUT_COMPRESSION
    if not math.isfinite(value):
        return DEFAULT_IMAGE_OUTPUT_COMPRESSION
    return int(min(100, max(1, round(value))))


def normalize_image_request(raw: Mapping[str, Any]) -> ImageRequest:
    def pick(*keys: str) -> Any:
        for key in keys:
            if raw.get(key) is not None:
                return raw.get(key)
        return None

    compression = pick("outputCompression", "output_compression")
    follow_up = pick("followUpResponseId", "follow_up_response_id")
    background = pick("background")
    style = pick("style")
    return ImageRequest(
        prompt=str(raw.get("prompt") or "").strip(),
        aspect_ratio=_choice(pick("aspectRatio", "aspect_ratio"), ASPECT_RATIOS, None, "aspect ratio"),
        background=_choice(background, BACKGROUNDS, None, "background"),
        quality=_choice(pick("quality"), IMAGE_QUALITIES, None, "image quality"),
        style=style.strip() if isinstance(style, str) and style.strip() else None,
        # Automated turns must not rewrite the user's wording unless explicitly asked.
        allow_prompt_adjustment=pick("allowPromptAdjustment", "allow_prompt_adjustment") is True,
        follow_up_response_id=follow_up.strip() if isinstance(follow_up, str) and follow_up.strip() else None,
        output_format=_choice(pick("outputFormat", "output_format"), OUTPUT_FORMATS, None, "output format"),
        output_compression=clamp_output_compression(compression)
        if isinstance(compression, (int, float, str)) and not isinstance(compression, bool)
        else None,
    )


# Variant normalizers ---------------------------------------------------------


def _common(merged: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "modality": _choice(merged.get("modality"), MODALITIES, "text", "modality"),
        "openai_options": _normalize_openai_options(merged.get("openaiOptions")),
        "presence": _normalize_presence(merged.get("presence")),
        "risk_tier": normalize_risk_tier(merged.get("riskTier")),
    }


def _normalize_message(merged: Mapping[str, Any]) -> Plan:
    return MessagePlan(**_common(merged))


def _normalize_ignore(merged: Mapping[str, Any]) -> Plan:
    return IgnorePlan(**_common(merged))


def _normalize_react(merged: Mapping[str, Any]) -> Plan:
    reaction = merged.get("reaction")
    reaction = reaction.strip() if isinstance(reaction, str) else ""
    if not reaction:
        logger.warning("Planner chose react without an emoji; using %s.", DEFAULT_REACTION)
        reaction = DEFAULT_REACTION
    return ReactPlan(reaction=reaction, **_common(merged))


def _normalize_image(merged: Mapping[str, Any]) -> Plan:
    common = _common(merged)
    options: OpenAIOptions = common["openai_options"]
    raw_request = merged.get("imageRequest")
    request = normalize_image_request(raw_request) if isinstance(raw_request, Mapping) else None
    usable = request is not None and bool(request.prompt)
    # Image turns never pay for speech synthesis or web search, even when they fall back to ignore.
    common["modality"] = "text"
    common["openai_options"] = OpenAIOptions(
        reasoning_effort=options.reasoning_effort,
        verbosity=options.verbosity,
        tool_choice="none",
        web_search=None if usable else WebSearchOptions(),
        tts_options=options.tts_options,
    )
    if not usable:
        logger.warning("Planner chose image without a prompt; ignoring instead.")
        return IgnorePlan(**common)
    return ImagePlan(image_request=request, **common)


_NORMALIZERS = {
    "message": _normalize_message,
    "react": _normalize_react,
    "ignore": _normalize_ignore,
    "image": _normalize_image,
}


def validate_plan(raw: Union[Plan, Mapping[str, Any], None], default_action: str = "ignore") -> Plan:
    """
    Coerce raw planner output (or an existing Plan) into a fully populated Plan.
    Never raises; anything unusable degrades to the default for that field.
    """
    if isinstance(raw, Plan):
        raw = raw.to_dict()
    if not isinstance(raw, Mapping):
        return default_plan(default_action)
    base = default_plan(default_action).to_dict()
    merged = _deep_merge(base, raw)
    action = _choice(merged.get("action"), ACTIONS, base["action"], "action")
    return _NORMALIZERS[action](merged)

import re
from typing import ClassVar, Dict, Tuple, Type

from .errors import UnknownModelError

# Routing prefixes some clients put in front of the model id.
MODEL_PREFIXES: Tuple[str, ...] = ("claude-code-cli/", "anthropic/")

_DATE_SUFFIX = re.compile(r"-\d{8}$")


class ModelProfile:
    key: ClassVar[str]
    cli_alias: ClassVar[str]
    family: ClassVar[str]
    context_window: ClassVar[int]
    max_output: ClassVar[int]
    owned_by: ClassVar[str] = "anthropic"

    # Extra spellings that resolve to this profile once prefix and date suffix are stripped.
    aliases: ClassVar[Tuple[str, ...]] = ()

    _registry: ClassVar[Dict[str, Type["ModelProfile"]]] = {}
    _spellings: ClassVar[Dict[str, Type["ModelProfile"]]] = {}

    def __init_subclass__(cls, **kwargs):  # type: ignore[override]
        super().__init_subclass__(**kwargs)

        key = getattr(cls, "key", None)
        if not isinstance(key, str) or not key.strip():
            raise ValueError(f"{cls.__name__} must define a non-empty string `key`")

        if key in cls._registry:
            raise ValueError(f"Duplicate model key: {key}")

        spellings = {key, cls.cli_alias, *cls.aliases}
        for spelling in spellings:
            owner = cls._spellings.get(spelling.lower())
            if owner is not None:
                raise ValueError(f"Spelling {spelling!r} already belongs to {owner.key}")

        cls._registry[key] = cls
        for spelling in spellings:
            cls._spellings[spelling.lower()] = cls

    @classmethod
    def get(cls, key: str) -> Type["ModelProfile"]:
        try:
            return cls._registry[key]
        except KeyError:
            raise UnknownModelError(model=key) from None

    @classmethod
    def all(cls) -> Tuple[Type["ModelProfile"], ...]:
        return tuple(cls._registry.values())

    @classmethod
    def to_dict(cls) -> dict:
        return {
            "id": cls.key,
            "object": "model",
            "owned_by": cls.owned_by,
            "context_window": cls.context_window,
            "max_tokens": cls.max_output,
        }


class ClaudeOpus4(ModelProfile):
    key = "claude-opus-4"
    cli_alias = "opus"
    family = "opus"
    context_window = 1_000_000
    max_output = 128_000
    aliases = ("claude-opus-4-0", "claude-opus-4-1", "claude-opus-4-5", "claude-4-opus")


class ClaudeSonnet4(ModelProfile):
    key = "claude-sonnet-4"
    cli_alias = "sonnet"
    family = "sonnet"
    context_window = 200_000
    max_output = 64_000
    aliases = ("claude-sonnet-4-0", "claude-sonnet-4-5", "claude-4-sonnet")


class ClaudeHaiku4(ModelProfile):
    key = "claude-haiku-4"
    cli_alias = "haiku"
    family = "haiku"
    context_window = 200_000
    max_output = 64_000
    aliases = ("claude-haiku-4-5", "claude-4-haiku")


def normalize_model_name(raw: str) -> str:
    """Case-fold and strip the routing prefix and trailing date suffix."""
    name = raw.strip().lower()
    for prefix in MODEL_PREFIXES:
        if name.startswith(prefix):
            name = name[len(prefix):]
            break
    return _DATE_SUFFIX.sub("", name)


def resolve_model(raw: str) -> Type[ModelProfile]:
    """
    Resolve a caller-supplied model string to its canonical profile.

    Accepts the bare id (``claude-opus-4``), the short alias (``opus``), the
    date-suffixed id (``claude-opus-4-20250514``) and the prefixed id
    (``claude-code-cli/claude-opus-4``). Anything else raises UnknownModelError.
    """
    if not isinstance(raw, str) or not raw.strip():
        raise UnknownModelError(model=str(raw))
    profile = ModelProfile._spellings.get(normalize_model_name(raw))
    if profile is None:
        raise UnknownModelError(model=raw)
    return profile


def canonical_for_backend_model(name: str | None, fallback: Type[ModelProfile]) -> Type[ModelProfile]:
    """Map a backend-reported model name (e.g. ``claude-sonnet-4-5-20250929``) to a profile."""
    if not name:
        return fallback
    lowered = name.lower()
    for profile in ModelProfile.all():
        if profile.family in lowered:
            return profile
    return fallback


def list_models() -> list[dict]:
    return [profile.to_dict() for profile in ModelProfile.all()]


__all__ = [
    "ModelProfile",
    "ClaudeOpus4",
    "ClaudeSonnet4",
    "ClaudeHaiku4",
    "MODEL_PREFIXES",
    "normalize_model_name",
    "resolve_model",
    "canonical_for_backend_model",
    "list_models",
]

"""
Typed configuration for the built-in node types.

Editor documents carry camelCase keys; each class maps them onto snake_case
fields and ignores anything it does not know about.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Union


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _as_float(value: Any, name: str) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid {name}: {value!r}")


@dataclass(frozen=True)
class TextInputConfig:
    input_text: str = ""

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "TextInputConfig":
        return cls(input_text=_as_text(raw.get("inputText", raw.get("text"))))


@dataclass(frozen=True)
class ImageInputConfig:
    image_data: Union[str, bytes, None] = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "ImageInputConfig":
        for key in ("imageData", "runtimeImage", "image"):
            if raw.get(key):
                return cls(image_data=raw[key])
        return cls()


@dataclass(frozen=True)
class StaticTextConfig:
    text: str = ""

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "StaticTextConfig":
        return cls(text=_as_text(raw.get("text", raw.get("staticText"))))


@dataclass(frozen=True)
class TextCombinerConfig:
    template: str = ""
    additional_text: str = ""
    separator: str = "\n"

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "TextCombinerConfig":
        separator = raw.get("separator")
        return cls(
            template=_as_text(raw.get("template")),
            additional_text=_as_text(raw.get("additionalText")),
            separator="\n" if separator is None else _as_text(separator),
        )


@dataclass(frozen=True)
class LlmPromptConfig:
    model: str = ""
    prompt: str = ""
    system_prompt: str = ""
    temperature: Optional[float] = None
    base_url: Optional[str] = None
    stream: bool = True
    options: Dict[str, Any] = field(default_factory=dict)
    format: Union[str, Dict[str, Any], None] = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "LlmPromptConfig":
        options = raw.get("options") or {}
        if not isinstance(options, Mapping):
            raise ValueError("options must be an object")
        response_format = raw.get("format") or None
        if response_format is not None and not isinstance(response_format, (str, Mapping)):
            raise ValueError("format must be \"json\" or a JSON schema object")
        return cls(
            model=_as_text(raw.get("model")),
            prompt=_as_text(raw.get("prompt")),
            system_prompt=_as_text(raw.get("systemPrompt")),
            temperature=_as_float(raw.get("temperature"), "temperature"),
            base_url=raw.get("ollamaUrl") or raw.get("baseUrl") or None,
            stream=bool(raw.get("stream", True)),
            options=dict(options),
            format=dict(response_format) if isinstance(response_format, Mapping) else response_format,
        )

    def request_options(self) -> Dict[str, Any]:
        options = dict(self.options)
        if self.temperature is not None:
            options["temperature"] = self.temperature
        return options


@dataclass(frozen=True)
class ImageLlmPromptConfig:
    model: str = ""
    prompt: str = ""
    temperature: Optional[float] = None
    base_url: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "ImageLlmPromptConfig":
        return cls(
            model=_as_text(raw.get("model")),
            prompt=_as_text(raw.get("prompt")),
            temperature=_as_float(raw.get("temperature"), "temperature"),
            base_url=raw.get("ollamaUrl") or raw.get("baseUrl") or None,
        )


@dataclass(frozen=True)
class OutputConfig:
    label: str = ""

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "OutputConfig":
        return cls(label=_as_text(raw.get("label")))

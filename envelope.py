"""Note content envelope.

A note's ``content`` column holds a JSON string of the form::

    {"version": 2, "html": "<p>...</p>", "attachments": [{...}, ...]}

Older notes hold raw text or raw HTML. Decoding never fails: anything that is
not a well-formed envelope comes back as legacy content with no attachments.
"""
import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Union

CURRENT_VERSION = 2

_HTML_TAG = re.compile(r"<\s*/?\s*[a-zA-Z][^>]*>")


@dataclass(frozen=True)
class RichContent:
    html: str
    attachments: List[Dict[str, Any]] = field(default_factory=list)
    version: int = CURRENT_VERSION

    def as_envelope(self) -> "RichContent":
        return self


@dataclass(frozen=True)
class LegacyHtml:
    html: str

    def as_envelope(self) -> RichContent:
        return RichContent(html=self.html, attachments=[])


@dataclass(frozen=True)
class LegacyPlain:
    text: str

    def as_envelope(self) -> RichContent:
        return RichContent(html=self.text, attachments=[])


DecodedContent = Union[RichContent, LegacyHtml, LegacyPlain]


def _envelope_from_mapping(data: Mapping) -> Union[RichContent, None]:
    version = data.get("version")
    html = data.get("html")
    attachments = data.get("attachments")
    if not isinstance(version, int) or isinstance(version, bool):
        return None
    if not isinstance(html, str) or not isinstance(attachments, list):
        return None
    if not all(isinstance(a, Mapping) for a in attachments):
        return None
    return RichContent(html=html, attachments=[dict(a) for a in attachments], version=version)


def _legacy(raw: str) -> DecodedContent:
    if _HTML_TAG.search(raw):
        return LegacyHtml(raw)
    return LegacyPlain(raw)


def decode_content(content) -> DecodedContent:
    if content is None:
        return LegacyPlain("")
    if isinstance(content, Mapping):
        rich = _envelope_from_mapping(content)
        return rich if rich is not None else LegacyPlain(json.dumps(content))
    raw = str(content)
    if not raw.lstrip().startswith("{"):
        return _legacy(raw)
    try:
        data = json.loads(raw)
    except ValueError:
        return _legacy(raw)
    if isinstance(data, Mapping):
        rich = _envelope_from_mapping(data)
        if rich is not None:
            return rich
    return _legacy(raw)


def encode_envelope(html: str, attachments: List[Mapping]) -> str:
    return json.dumps(
        {
            "version": CURRENT_VERSION,
            "html": html or "",
            "attachments": [dict(a) for a in attachments],
        },
        ensure_ascii=False,
    )

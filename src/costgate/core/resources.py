"""
Resource normalizer -- attached content to a bounded prompt digest.

Attached content arrives in one of a small set of recognized shapes,
tried in this order:

1. named-resource list: ``payload.resources = [{name|uri, text|content}, ...]``
2. typed-content list:  ``payload.content = [{type: "text", text}, {type: "resource", resource: {...}}]``
3. flat text:           ``payload.text`` (only when nothing above yielded content)

A bare string is treated as flat text and a bare list as a named-resource
list. Payloads may be mappings or plain objects with attributes.

Each item is wrapped in a labeled header/footer, pretty-printed when it
parses as JSON, has long base64-looking runs collapsed to a placeholder,
and is truncated to the per-resource token cap. Two ceilings apply at the
same time: a resource count and a cumulative token budget. Items are kept
first-come, first-served.
"""

import json
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Iterator

import structlog

from ..config.schema import ResourcesConfig
from ..costs.budget import CODE_CHARS_PER_TOKEN, chars_per_token, estimate_token_count

logger = structlog.get_logger()

RESOURCE_HEADER = "--- Resource: {name} ---\n"
RESOURCE_FOOTER = "\n--- End Resource ---"
REFERENCE_LINE = "--- File Reference: {uri} ---"
TRUNCATION_MARKER = "\n\n[... content truncated: resource exceeds its token allowance ...]"
OMITTED_MARKER = "[... {count} additional resources omitted: resource limit reached ...]"
BUDGET_MARKER = "[... additional resources truncated due to token limits ...]"

# Minimum body room (tokens) worth opening a new resource for
_MIN_ROOM = 100


@dataclass
class ResourceItem:
    """One recognized piece of attached content."""

    name: str
    content: Any = None
    reference_only: bool = False


@dataclass
class ResourceDigest:
    """Normalized, bounded text of all attached content."""

    text: str = ""
    included: int = 0
    omitted: int = 0
    truncated: bool = False
    failed: int = 0

    @property
    def estimated_tokens(self) -> int:
        return estimate_token_count(self.text)

    def __bool__(self) -> bool:
        return bool(self.text)


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(name)
    return getattr(obj, name, None)


def _label(entry: Any, default: str = "file") -> str:
    return str(_field(entry, "name") or _field(entry, "uri") or default)


def _body(entry: Any) -> Any:
    """text wins over content when both are present."""
    text = _field(entry, "text")
    if text is not None and text != "":
        return text
    content = _field(entry, "content")
    if content is not None and content != "":
        return content
    return None


def _named_resource(entry: Any) -> ResourceItem | None:
    body = _body(entry)
    if body is not None:
        return ResourceItem(name=_label(entry), content=body)
    uri = _field(entry, "uri")
    if uri:
        return ResourceItem(name=str(uri), reference_only=True)
    return None


def _typed_content(entry: Any) -> ResourceItem | None:
    kind = _field(entry, "type")
    if kind == "text":
        text = _field(entry, "text")
        return ResourceItem(name="attached content", content=text) if text else None
    if kind == "resource":
        resource = _field(entry, "resource")
        if resource is None:
            return None
        body = _body(resource)
        return ResourceItem(name=_label(resource), content=body) if body is not None else None
    return None


def _iter_entries(payload: Any) -> Iterator[tuple[Any, Any]]:
    """Yield (converter, raw entry) pairs in shape priority order."""
    if payload is None:
        return
    if isinstance(payload, str):
        if payload:
            yield (lambda text: ResourceItem(name="attached content", content=text)), payload
        return
    if isinstance(payload, (list, tuple)):
        for entry in payload:
            yield _named_resource, entry
        return

    yielded = False
    resources = _field(payload, "resources")
    if isinstance(resources, (list, tuple)):
        for entry in resources:
            yielded = True
            yield _named_resource, entry

    content = _field(payload, "content")
    if isinstance(content, (list, tuple)):
        for entry in content:
            yielded = True
            yield _typed_content, entry

    if not yielded:
        text = _field(payload, "text")
        if isinstance(text, str) and text:
            yield (lambda t: ResourceItem(name="attached content", content=t)), text


class ResourceNormalizer:
    """Turns attached-content payloads into a ResourceDigest."""

    def __init__(self, config: ResourcesConfig | None = None) -> None:
        self.config = config or ResourcesConfig()
        self._base64_re = re.compile(
            r"[A-Za-z0-9+/]{%d,}={0,2}" % self.config.base64_min_length
        )
        self.log = logger.bind(component="resource_normalizer")

    def normalize(self, payload: Any, max_total_tokens: int | None = None) -> ResourceDigest:
        """Build the digest for a payload.

        Args:
            payload: Attached content in any recognized shape (or None)
            max_total_tokens: Per-call ceiling; the configured ceiling applies
                when it is lower

        Returns:
            ResourceDigest (empty when there is nothing to include)
        """
        cap = self.config.max_total_tokens
        if max_total_tokens is not None:
            cap = min(cap, max_total_tokens)

        digest = ResourceDigest()
        entries = list(_iter_entries(payload))
        parts: list[str] = []

        for index, (convert, entry) in enumerate(entries):
            if digest.included >= self.config.max_resources:
                digest.omitted = len(entries) - index
                parts.append(OMITTED_MARKER.format(count=digest.omitted))
                break

            try:
                item = convert(entry)
                if item is None:
                    continue
                current = "\n".join(parts)
                piece = self._render_item(item, current, cap)
            except Exception as e:
                digest.failed += 1
                self.log.warning(
                    "resources.item_failed",
                    index=index,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue

            if piece is None:
                digest.truncated = True
                digest.omitted = len(entries) - index
                parts.append(BUDGET_MARKER)
                break

            parts.append(piece)
            digest.included += 1

        digest.text = "\n".join(parts)
        if entries:
            self.log.debug(
                "resources.normalized",
                included=digest.included,
                omitted=digest.omitted,
                failed=digest.failed,
                tokens=digest.estimated_tokens,
                cap=cap,
            )
        return digest

    def _render_item(self, item: ResourceItem, current: str, cap: int) -> str | None:
        """Render one item within what is left of the cap, or None if it does not fit."""
        used = estimate_token_count(current)

        if item.reference_only:
            line = REFERENCE_LINE.format(uri=item.name)
            if used + estimate_token_count(line) > cap:
                return None
            return line

        header = RESOURCE_HEADER.format(name=item.name)
        overhead = estimate_token_count(header + RESOURCE_FOOTER)
        available = cap - used - overhead
        if available < _MIN_ROOM:
            return None

        body = self.render_content(item.content)
        limit = min(self.config.max_tokens_per_resource, available)
        piece = header + truncate_to_tokens(body, limit) + RESOURCE_FOOTER

        # Mixed prose/code can estimate higher as a whole than as parts
        separator = "\n" if current else ""
        while limit > 0 and estimate_token_count(current + separator + piece) > cap:
            limit = int(limit * 0.9)
            piece = header + truncate_to_tokens(body, limit) + RESOURCE_FOOTER
        return piece

    def render_content(self, content: Any) -> str:
        """Readable text for one item's content."""
        if isinstance(content, (bytes, bytearray)):
            return f"[binary content omitted: {len(content)} bytes]"
        if isinstance(content, (dict, list)):
            text = json.dumps(content, indent=2, ensure_ascii=False, default=str)
        else:
            text = str(content)
            stripped = text.strip()
            if stripped[:1] in ("{", "["):
                try:
                    text = json.dumps(json.loads(stripped), indent=2, ensure_ascii=False)
                except ValueError:
                    pass
        return self._collapse_base64(text)

    def _collapse_base64(self, text: str) -> str:
        return self._base64_re.sub(
            lambda m: f"[base64 data omitted: {len(m.group(0))} characters]",
            text,
        )


def truncate_to_tokens(text: str, max_tokens: int) -> str:
    """Cut text so its estimate stays within max_tokens, appending a marker when cut."""
    if estimate_token_count(text) <= max_tokens:
        return text
    marker_tokens = math.ceil(len(TRUNCATION_MARKER) / CODE_CHARS_PER_TOKEN)
    keep_tokens = max(0, max_tokens - marker_tokens)
    return text[: keep_tokens * chars_per_token(text)] + TRUNCATION_MARKER

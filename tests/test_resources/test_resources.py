"""
Tests para el normalizador de recursos adjuntos.

Cubre:
- Formas reconocidas (lista de recursos, contenido tipado, texto plano)
- Truncado por recurso y marcador explícito
- Techos de número de recursos y de tokens acumulados
- Recursos malformados (se omiten, no abortan)
- Render (JSON, base64, binario)
"""

import math

import pytest

from costgate.config.schema import ResourcesConfig
from costgate.core.resources import (
    BUDGET_MARKER,
    RESOURCE_FOOTER,
    TRUNCATION_MARKER,
    ResourceNormalizer,
    truncate_to_tokens,
)
from costgate.costs import estimate_token_count

# Trailing budget marker plus its separator, at the densest (code) ratio
MARKER_ALLOWANCE = math.ceil((len(BUDGET_MARKER) + 1) / 3)


def prose(tokens: int) -> str:
    """Texto en prosa de aproximadamente `tokens` tokens (4 chars/token)."""
    return ("lorem ipsum " * (tokens // 3 + 1))[: tokens * 4]


class ExplodingResource:
    """Recurso cuyo acceso al texto falla."""

    name = "broken.txt"

    @property
    def text(self) -> str:
        raise RuntimeError("unreadable")


# ── Fixtures ──────────────────────────────────────────────────────────────


@pytest.fixture
def normalizer() -> ResourceNormalizer:
    return ResourceNormalizer(ResourcesConfig())


# ── Tests: shapes ─────────────────────────────────────────────────────────


class TestShapes:
    """Tests para las formas de payload reconocidas."""

    def test_none_is_empty(self, normalizer: ResourceNormalizer) -> None:
        digest = normalizer.normalize(None)
        assert not digest
        assert digest.text == ""
        assert digest.included == 0

    def test_named_resources(self, normalizer: ResourceNormalizer) -> None:
        digest = normalizer.normalize(
            {"resources": [{"name": "a.txt", "text": "alpha"}, {"uri": "file:///b.md", "content": "beta"}]}
        )
        assert digest.included == 2
        assert "--- Resource: a.txt ---\nalpha" in digest.text
        assert "--- Resource: file:///b.md ---\nbeta" in digest.text
        assert digest.text.count(RESOURCE_FOOTER) == 2

    def test_text_wins_over_content(self, normalizer: ResourceNormalizer) -> None:
        digest = normalizer.normalize([{"name": "x", "text": "from text", "content": "from content"}])
        assert "from text" in digest.text
        assert "from content" not in digest.text

    def test_uri_only_is_reference(self, normalizer: ResourceNormalizer) -> None:
        digest = normalizer.normalize({"resources": [{"uri": "file:///big.bin"}]})
        assert digest.text == "--- File Reference: file:///big.bin ---"

    def test_typed_content(self, normalizer: ResourceNormalizer) -> None:
        digest = normalizer.normalize(
            {
                "content": [
                    {"type": "text", "text": "inline note"},
                    {"type": "resource", "resource": {"uri": "mem://doc", "text": "doc body"}},
                    {"type": "image", "data": "..."},
                ]
            }
        )
        assert digest.included == 2
        assert "inline note" in digest.text
        assert "--- Resource: mem://doc ---\ndoc body" in digest.text

    def test_flat_text_only_when_nothing_else(self, normalizer: ResourceNormalizer) -> None:
        only_text = normalizer.normalize({"text": "plain"})
        assert "plain" in only_text.text

        both = normalizer.normalize({"resources": [{"name": "r", "text": "listed"}], "text": "plain"})
        assert "listed" in both.text
        assert "plain" not in both.text

    def test_bare_string(self, normalizer: ResourceNormalizer) -> None:
        digest = normalizer.normalize("just some text")
        assert digest.included == 1
        assert "just some text" in digest.text

    def test_object_payload(self, normalizer: ResourceNormalizer) -> None:
        class Payload:
            resources = [{"name": "obj.txt", "text": "from attribute"}]

        assert "from attribute" in normalizer.normalize(Payload()).text


# ── Tests: truncation and ceilings ────────────────────────────────────────


class TestCeilings:
    """Tests para truncado y techos."""

    def test_large_resource_truncated_to_cap(self, normalizer: ResourceNormalizer) -> None:
        """Un recurso de 10.000 tokens con tope de 1.500 se trunca con marcador."""
        digest = normalizer.normalize([{"name": "big.txt", "text": prose(10_000)}])

        assert TRUNCATION_MARKER in digest.text
        body = digest.text.split("--- Resource: big.txt ---\n", 1)[1].rsplit(RESOURCE_FOOTER, 1)[0]
        assert estimate_token_count(body) <= 1500
        assert estimate_token_count(body) > 1400

    def test_small_resource_untouched(self, normalizer: ResourceNormalizer) -> None:
        digest = normalizer.normalize([{"name": "s.txt", "text": "short"}])
        assert TRUNCATION_MARKER not in digest.text

    def test_resource_count_ceiling(self) -> None:
        normalizer = ResourceNormalizer(ResourcesConfig(max_resources=3))
        digest = normalizer.normalize([{"name": f"r{i}", "text": f"body {i}"} for i in range(5)])

        assert digest.included == 3
        assert digest.omitted == 2
        assert "2 additional resources omitted" in digest.text
        assert "body 3" not in digest.text

    def test_cumulative_budget(self) -> None:
        normalizer = ResourceNormalizer(ResourcesConfig(max_total_tokens=2500))
        digest = normalizer.normalize([{"name": f"r{i}", "text": prose(1000)} for i in range(5)])

        assert digest.truncated is True
        assert BUDGET_MARKER in digest.text
        assert digest.included < 5
        assert digest.estimated_tokens <= 2500 + MARKER_ALLOWANCE

    def test_per_call_ceiling_lower_than_config(self, normalizer: ResourceNormalizer) -> None:
        digest = normalizer.normalize(
            [{"name": f"r{i}", "text": prose(800)} for i in range(4)], max_total_tokens=1000
        )
        assert digest.included <= 2
        assert digest.estimated_tokens <= 1000 + MARKER_ALLOWANCE

    @pytest.mark.parametrize("cap", [300, 1200, 4000])
    def test_cap_invariant(self, cap: int) -> None:
        normalizer = ResourceNormalizer(ResourcesConfig(max_total_tokens=cap, max_resources=4))
        payload = [
            {"name": "code.py", "text": "def f():\n    return 1\n" * 200},
            {"name": "notes.md", "text": prose(900)},
            {"name": "data.json", "text": '{"k": [1, 2, 3]}'},
            {"name": "more.txt", "text": prose(3000)},
            {"name": "extra.txt", "text": "ignored"},
        ]
        digest = normalizer.normalize(payload)
        assert digest.included <= 4
        assert digest.estimated_tokens <= cap + MARKER_ALLOWANCE


# ── Tests: failures ───────────────────────────────────────────────────────


class TestMalformed:
    """Tests para recursos que fallan al procesarse."""

    def test_failing_item_skipped(self, normalizer: ResourceNormalizer) -> None:
        digest = normalizer.normalize(
            [{"name": "ok1", "text": "first"}, ExplodingResource(), {"name": "ok2", "text": "second"}]
        )
        assert digest.failed == 1
        assert digest.included == 2
        assert "first" in digest.text
        assert "second" in digest.text

    def test_entries_without_body_skipped(self, normalizer: ResourceNormalizer) -> None:
        digest = normalizer.normalize([{"name": "empty"}, {"name": "ok", "text": "kept"}])
        assert digest.included == 1


# ── Tests: rendering ──────────────────────────────────────────────────────


class TestRender:
    """Tests para render_content."""

    def test_json_string_pretty_printed(self, normalizer: ResourceNormalizer) -> None:
        assert normalizer.render_content('{"a":1,"b":[2]}') == '{\n  "a": 1,\n  "b": [\n    2\n  ]\n}'

    def test_invalid_json_left_alone(self, normalizer: ResourceNormalizer) -> None:
        assert normalizer.render_content("{not json") == "{not json"

    def test_dict_content(self, normalizer: ResourceNormalizer) -> None:
        assert normalizer.render_content({"x": 1}) == '{\n  "x": 1\n}'

    def test_base64_collapsed(self, normalizer: ResourceNormalizer) -> None:
        blob = "QUJD" * 200
        rendered = normalizer.render_content(f"image: {blob} end")
        assert rendered == "image: [base64 data omitted: 800 characters] end"

    def test_bytes_placeholder(self, normalizer: ResourceNormalizer) -> None:
        assert normalizer.render_content(b"\x00\x01\x02") == "[binary content omitted: 3 bytes]"


class TestTruncateToTokens:
    """Tests para truncate_to_tokens."""

    def test_short_text_unchanged(self) -> None:
        assert truncate_to_tokens("hello", 10) == "hello"

    def test_long_text_cut_with_marker(self) -> None:
        result = truncate_to_tokens(prose(500), 100)
        assert result.endswith(TRUNCATION_MARKER)
        assert estimate_token_count(result) <= 100

"""Unit tests for execution/template_renderer.py."""

from execution.template_renderer import expand_sections, fill, render_message, truncate


class TestFill:
    def test_scalars(self):
        assert fill("Designed {{count}} {{kind}}", {"count": 3, "kind": "phases"}) == "Designed 3 phases"

    def test_missing_kept_by_default(self):
        assert fill("{{here}} {{missing}}", {"here": "x"}) == "x {{missing}}"

    def test_missing_dropped(self):
        assert fill("{{here}}{{missing}}", {"here": "x"}, keep_missing=False) == "x"

    def test_non_scalars_not_substituted(self):
        assert fill("{{items}}", {"items": ["a", "b"]}) == "{{items}}"

    def test_values_are_not_rescanned(self):
        assert fill("{{a}}", {"a": "{{b}}", "b": "nope"}) == "{{b}}"


class TestExpandSections:
    def test_rows_with_position(self):
        result = expand_sections("{{#items}}{{position}}. {{name}}\n{{/items}}", {"items": [{"name": "A"}, {"name": "B"}]})
        assert result == "1. A\n2. B\n"

    def test_surrounding_text_kept(self):
        result = expand_sections("Before\n{{#items}}- {{name}}\n{{/items}}After", {"items": [{"name": "A"}]})
        assert result == "Before\n- A\nAfter"

    def test_empty_rows(self):
        assert expand_sections("{{#items}}- {{name}}{{/items}}", {"items": []}) == ""

    def test_unknown_section_untouched(self):
        template = "{{#other}}x{{/other}}"
        assert expand_sections(template, {"items": []}) == template

    def test_row_placeholders_fall_through_to_context(self):
        result = expand_sections("{{#items}}{{name}} for {{audience}};{{/items}}", {"items": [{"name": "A"}]})
        assert result == "A for {{audience}};"


class TestRenderMessage:
    def test_unresolved_placeholders_removed(self):
        assert render_message("Hello {{name}}{{missing}}!", {"name": "Ana"}) == "Hello Ana!"

    def test_items_block(self):
        result = render_message(
            "{{heading}}\n{{#items}}{{position}}. {{name}}\n{{/items}}{{footer}}",
            {"heading": "Phases:", "footer": "Accept?"},
            [{"name": "Research"}, {"name": "Build"}],
        )
        assert result == "Phases:\n1. Research\n2. Build\nAccept?"

    def test_stray_tags_removed(self):
        assert render_message("{{#other}}kept{{/other}}", {}) == "kept"

    def test_stripped(self):
        assert render_message("  {{x}}  \n", {"x": "hi"}) == "hi"


class TestTruncate:
    def test_short_text_unchanged(self):
        assert truncate("short text", 80) == "short text"

    def test_collapses_whitespace(self):
        assert truncate("a   b\n c", 80) == "a b c"

    def test_cuts_on_word_boundary(self):
        result = truncate("alpha beta gamma delta", 12)
        assert result == "alpha beta…"
        assert len(result) <= 12

    def test_none_is_empty(self):
        assert truncate(None) == ""

"""Tests for the template renderer: syntax, helper functions and errors."""

from __future__ import annotations

import pytest

from kanopy.core.errors import TemplateError
from kanopy.templates.context import TemplateContext
from kanopy.templates.renderer import Template, is_true, render, render_args, to_text


@pytest.fixture
def ctx() -> TemplateContext:
    return TemplateContext(
        {
            "Object": {"Name": "db-0", "Namespace": "prod"},
            "Options": {"mode": "full", "empty": "", "count": "3"},
            "Phases": {"snapshot": {"Output": {"snapshotId": "s-1", "size": "10"}}},
            "Secrets": {"creds": {"Data": {"password": "hunter2"}}},
            "Tags": ["a", "b", "c"],
            "Map": {"z": "26", "a": "1"},
            "EmptyMap": {},
        }
    )


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


class TestLookups:
    def test_plain_text_is_unchanged(self, ctx):
        assert render("no actions here", ctx) == "no actions here"

    def test_dotted_path(self, ctx):
        assert render("{{ .Object.Name }}", ctx) == "db-0"

    def test_case_insensitive_segments(self, ctx):
        assert render("{{ .phases.snapshot.output.snapshotId }}", ctx) == "s-1"

    def test_mixed_text(self, ctx):
        assert render("backup-{{ .Object.Namespace }}-{{ .Object.Name }}.tar", ctx) == "backup-prod-db-0.tar"

    def test_undefined_path_fails(self, ctx):
        with pytest.raises(TemplateError, match=r"undefined path \.Phases\.upload"):
            render("{{ .Phases.upload.Output.x }}", ctx)

    def test_root_variable(self, ctx):
        assert render("{{ $.Object.Name }}", ctx) == "db-0"

    def test_mapping_prints_sorted_json(self, ctx):
        assert render("{{ .Map }}", ctx) == '{"a":"1","z":"26"}'

    def test_plain_dict_context(self):
        assert render("{{ .a }}", {"a": 1}) == "1"


# ---------------------------------------------------------------------------
# Control flow
# ---------------------------------------------------------------------------


class TestControlFlow:
    def test_if_else(self, ctx):
        src = "{{ if eq .Options.mode \"full\" }}F{{ else }}I{{ end }}"
        assert render(src, ctx) == "F"

    def test_else_if(self, ctx):
        src = '{{ if eq .Options.mode "x" }}X{{ else if .Options.count }}C{{ else }}N{{ end }}'
        assert render(src, ctx) == "C"

    def test_empty_string_is_false(self, ctx):
        assert render("{{ if .Options.empty }}yes{{ else }}no{{ end }}", ctx) == "no"

    def test_range_sequence(self, ctx):
        assert render("{{ range .Tags }}[{{ . }}]{{ end }}", ctx) == "[a][b][c]"

    def test_range_mapping_sorted_with_vars(self, ctx):
        assert render("{{ range $k, $v := .Map }}{{ $k }}={{ $v }};{{ end }}", ctx) == "a=1;z=26;"

    def test_range_else(self, ctx):
        assert render("{{ range .EmptyMap }}x{{ else }}none{{ end }}", ctx) == "none"

    def test_range_keeps_root_reachable(self, ctx):
        assert render("{{ range .Tags }}{{ $.Object.Name }}{{ end }}", ctx) == "db-0db-0db-0"

    def test_variable_declaration(self, ctx):
        assert render("{{ $n := .Object.Name }}{{ $n | upper }}", ctx) == "DB-0"

    def test_trim_markers(self, ctx):
        assert render("a  {{- .Object.Name -}}  b", ctx) == "adb-0b"

    def test_comment(self, ctx):
        assert render("x{{/* ignored */}}y", ctx) == "xy"


# ---------------------------------------------------------------------------
# Functions
# ---------------------------------------------------------------------------


class TestFunctions:
    @pytest.mark.parametrize(
        ("source", "expected"),
        [
            ('{{ default "inc" .Options.empty }}', "inc"),
            ('{{ .Options.empty | default "inc" }}', "inc"),
            ('{{ default "inc" .Options.mode }}', "full"),
            ("{{ .Object.Name | quote }}", '"db-0"'),
            ("{{ upper .Object.Name }}", "DB-0"),
            ('{{ lower "ABC" }}', "abc"),
            ('{{ trim "  x  " }}', "x"),
            ("{{ .Secrets.creds.Data.password | b64enc }}", "aHVudGVyMg=="),
            ('{{ b64dec "aHVudGVyMg==" }}', "hunter2"),
            ('{{ join "," .Tags }}', "a,b,c"),
            ('{{ index .Map "z" }}', "26"),
            ('{{ index .Map "missing" | default "none" }}', "none"),
            ("{{ index .Tags 1 }}", "b"),
            ("{{ len .Tags }}", "3"),
            ("{{ toJson .Tags }}", '["a","b","c"]'),
            ('{{ ne .Object.Name "db-1" }}', "true"),
            ("{{ not .Options.empty }}", "true"),
            ('{{ and .Options.mode .Options.empty }}', ""),
            ('{{ or .Options.empty "fallback" }}', "fallback"),
            ('{{ eq .Options.count 3 }}', "true"),
            ('{{ eq .Options.mode "a" "full" }}', "true"),
            ("{{ (upper .Object.Name) | lower }}", "db-0"),
        ],
    )
    def test_builtin(self, ctx, source, expected):
        assert render(source, ctx) == expected

    def test_b64dec_invalid(self, ctx):
        with pytest.raises(TemplateError, match="b64dec"):
            render('{{ b64dec "not base64!" }}', ctx)

    def test_wrong_arity(self, ctx):
        with pytest.raises(TemplateError, match="wrong number of args for upper"):
            render("{{ upper .Object.Name .Object.Namespace }}", ctx)

    def test_unknown_function_rejected_at_parse(self):
        with pytest.raises(TemplateError, match='function "env" not defined'):
            Template('{{ env "HOME" }}')


# ---------------------------------------------------------------------------
# Parse errors
# ---------------------------------------------------------------------------


class TestParseErrors:
    @pytest.mark.parametrize(
        "source",
        [
            "{{ .Object.Name",
            "{{ if .Object.Name }}x",
            "{{ end }}",
            "{{ with .Object }}{{ end }}",
            '{{ template "x" }}',
            "{{ }}",
            "{{ .a | }}",
            "{{ /* open",
        ],
    )
    def test_invalid_source(self, ctx, source):
        with pytest.raises(TemplateError):
            render(source, ctx)

    def test_error_names_template_and_line(self, ctx):
        with pytest.raises(TemplateError, match=r"template: upload\.args\.0:2:"):
            render("line one\n{{ .Nope }}", ctx, name="upload.args.0")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_to_text(self):
        assert to_text(True) == "true"
        assert to_text(None) == ""
        assert to_text(1.5) == "1.5"
        assert to_text(("a",)) == '["a"]'

    def test_is_true(self):
        assert not is_true("")
        assert not is_true(0)
        assert not is_true(())
        assert is_true("false")

    def test_render_args_keeps_order_and_is_deterministic(self, ctx):
        args = {"1": "{{ .Object.Name }}", "0": "{{ .Options.mode }}"}
        first = render_args(args, ctx)
        assert list(first) == ["1", "0"]
        assert first == {"1": "db-0", "0": "full"}
        assert render_args(args, ctx) == first

"""Tests for template rendering."""
from __future__ import annotations

from pathlib import Path

import pytest
import yaml

import sys
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from homestack.errors import TemplateEvaluationError, TemplateNotFound, TemplateSyntaxError
from homestack.rendering import TemplateRenderer

from conftest import write_template


@pytest.fixture
def renderer(project_root: Path) -> TemplateRenderer:
    return TemplateRenderer(project_root / "templates" / "services")


class TestTemplates:
    def test_available(self, renderer: TemplateRenderer):
        """available should list the template directories."""
        assert renderer.available() == ["jellyfin", "romm", "uptime-kuma"]
        assert renderer.has_template("jellyfin")
        assert not renderer.has_template("plex")

    def test_requirements_from_metadata(self, renderer: TemplateRenderer):
        """Requirements should come from template.yml."""
        assert renderer.requirements("romm") == ("port", "image", "db.password", "auth_secret_key")

    def test_no_metadata_means_no_requirements(self, project_root: Path, renderer: TemplateRenderer):
        """A template without template.yml should require nothing."""
        write_template(project_root, "bare", "services: {}\n")
        assert renderer.requirements("bare") == ()

    def test_bad_metadata(self, project_root: Path, renderer: TemplateRenderer):
        """A malformed requires entry should raise TemplateSyntaxError."""
        folder = project_root / "templates" / "services" / "jellyfin"
        (folder / "template.yml").write_text("requires: port\n")
        with pytest.raises(TemplateSyntaxError, match="requires"):
            renderer.requirements("jellyfin")

    def test_template_not_found(self, renderer: TemplateRenderer):
        """Rendering an unknown template should raise TemplateNotFound."""
        with pytest.raises(TemplateNotFound):
            renderer.render("plex", {})

    @pytest.mark.parametrize("template_id", ["../etc", ".hidden", "a/b", ""])
    def test_template_ids_cannot_escape(self, renderer: TemplateRenderer, template_id: str):
        """Template ids must not leave the template directory."""
        with pytest.raises(TemplateNotFound):
            renderer.check(template_id)

    def test_syntax_error(self, project_root: Path, renderer: TemplateRenderer):
        """A Jinja syntax error should raise TemplateSyntaxError."""
        write_template(project_root, "broken", "services:\n  {% for %}\n")
        with pytest.raises(TemplateSyntaxError):
            renderer.check("broken")

    def test_undecodable_template(self, project_root: Path, renderer: TemplateRenderer):
        """A template that is not UTF-8 is a syntax error, not a crash."""
        write_template(project_root, "binary", "")
        (project_root / "templates" / "services" / "binary" / "docker-compose.yml.j2").write_bytes(b"\xff\xfe")
        with pytest.raises(TemplateSyntaxError, match="UTF-8"):
            renderer.check("binary")


class TestRender:
    def test_render_produces_fingerprinted_artifact(self, renderer: TemplateRenderer):
        """Rendering should produce an artifact with a sha256 fingerprint."""
        context = {
            "image": "jellyfin/jellyfin:10.9.11",
            "restart_policy": "unless-stopped",
            "timezone": "UTC",
            "user_id": 1000,
            "config_root": "/srv/appdata",
            "data_root": "/srv/media",
            "port": 8096,
        }

        artifact = renderer.render("jellyfin", context, service="jellyfin")

        assert artifact.service == "jellyfin"
        assert artifact.fingerprint.startswith("sha256:")
        document = yaml.safe_load(artifact.content)
        assert document["services"]["jellyfin"]["ports"] == ["8096:8096"]

    def test_render_is_deterministic(self, renderer: TemplateRenderer):
        """Rendering the same context twice should give the same fingerprint."""
        context = {"port": 3001}
        first = renderer.render("uptime-kuma", context)
        second = renderer.render("uptime-kuma", dict(context))
        assert first == second

    def test_undefined_variable(self, renderer: TemplateRenderer):
        """An undefined variable should raise TemplateEvaluationError."""
        with pytest.raises(TemplateEvaluationError, match="port"):
            renderer.render("uptime-kuma", {}, service="uptime-kuma")

    def test_fail_helper(self, project_root: Path, renderer: TemplateRenderer):
        """fail() in a template should raise TemplateEvaluationError with its message."""
        write_template(
            project_root,
            "guarded",
            "{% if port < 1024 %}{{ fail('port must be unprivileged') }}{% endif %}ok\n",
        )
        with pytest.raises(TemplateEvaluationError, match="unprivileged"):
            renderer.render("guarded", {"port": 80})

    def test_filters(self, project_root: Path, renderer: TemplateRenderer):
        """The to_yaml, quote and bool_str filters should render as expected."""
        write_template(
            project_root,
            "filters",
            "a: {{ text | quote }}\nb: {{ flag | bool_str }}\nc:\n  {{ extra | to_yaml | indent(2) }}\n",
        )
        artifact = renderer.render(
            "filters", {"text": 'say "hi": now', "flag": 1, "extra": {"k": "v", "a": [1, 2]}}
        )
        document = yaml.safe_load(artifact.content)
        assert document == {"a": 'say "hi": now', "b": True, "c": {"a": [1, 2], "k": "v"}}

"""Tests for render-context assembly and globals loading."""
from __future__ import annotations

from pathlib import Path

import pytest

import sys
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from homestack.context import ConfigResolver, deep_merge, load_globals, lookup_path
from homestack.errors import ConfigError, RegistryError
from homestack.models import GlobalContext
from homestack.registry import ServiceRegistry
from homestack.secrets import SecretStore

from conftest import SECRETS


@pytest.fixture
def registry() -> ServiceRegistry:
    return ServiceRegistry.from_mapping(
        {
            "jellyfin": {"port": 8096, "timezone": "America/New_York"},
            "romm": {
                "port": 8080,
                "db": {"user": "romm", "password": {"secret": "romm_db_password"}},
            },
        }
    )


@pytest.fixture
def resolver() -> ConfigResolver:
    return ConfigResolver(GlobalContext(config_root="/srv/appdata", timezone="Europe/Berlin"))


class TestMergeOrder:
    def test_defaults_then_globals_then_service(self, registry, resolver):
        """Service params should override globals, which override defaults."""
        context = resolver.build(registry.get("jellyfin"), SecretStore({}))

        assert context["network_name"] == "media"  # built-in default
        assert context["config_root"] == "/srv/appdata"  # globals
        assert context["timezone"] == "America/New_York"  # service overrides globals
        assert context["service"] == "jellyfin"

    def test_globals_extra_variables(self):
        """Extra keys in globals.yaml should reach the context."""
        resolver = ConfigResolver(GlobalContext.model_validate({"backup_host": "nas.lan"}))
        assert resolver.base_vars()["backup_host"] == "nas.lan"

    def test_nested_params_merge(self):
        """Nested params should merge into nested defaults."""
        merged = deep_merge({"db": {"host": "db", "port": 5432}}, {"db": {"port": 5433}})
        assert merged == {"db": {"host": "db", "port": 5433}}

    def test_deep_merge_does_not_mutate_inputs(self):
        """deep_merge should leave both inputs untouched."""
        base = {"db": {"host": "db"}}
        deep_merge(base, {"db": {"host": "other"}})
        assert base == {"db": {"host": "db"}}

    def test_lookup_path(self):
        """lookup_path should follow dotted paths and return None when missing."""
        values = {"db": {"password": "x"}}
        assert lookup_path(values, "db.password") == "x"
        assert lookup_path(values, "db.user") is None
        assert lookup_path(values, "db.password.deeper") is None


class TestSecrets:
    def test_secret_references_are_resolved(self, registry, resolver):
        """Secret references should be replaced by vault values."""
        context = resolver.build(registry.get("romm"), SecretStore(SECRETS))

        assert context["db"]["password"] == SECRETS["romm_db_password"]
        assert context["secrets"] == {"romm_db_password": SECRETS["romm_db_password"]}

    def test_only_referenced_secrets_are_exposed(self, registry, resolver):
        """The secrets variable should hold only the keys the service references."""
        context = resolver.build(registry.get("romm"), SecretStore(SECRETS))

        assert "romm_auth_secret_key" not in context["secrets"]

    def test_missing_secret(self, registry, resolver):
        """A reference to an absent key should raise a missing_secret ConfigError."""
        with pytest.raises(ConfigError) as exc_info:
            resolver.build(registry.get("romm"), SecretStore({}))

        assert exc_info.value.code == "missing_secret"
        assert exc_info.value.names == ["romm_db_password"]
        assert "romm_db_password" in str(exc_info.value)

    def test_repr_never_shows_values(self, registry, resolver):
        """The render context repr should not show secret values."""
        context = resolver.build(registry.get("romm"), SecretStore(SECRETS))

        assert SECRETS["romm_db_password"] not in repr(context)
        assert SECRETS["romm_db_password"] not in str(context)


class TestRequired:
    def test_missing_required_fields_are_all_reported(self, registry, resolver):
        """Every missing required field should be named at once."""
        with pytest.raises(ConfigError) as exc_info:
            resolver.build(registry.get("jellyfin"), SecretStore({}), ["port", "image", "data_root"])

        assert exc_info.value.code == "missing_field"
        assert exc_info.value.names == ["image", "data_root"]

    def test_dotted_required_field(self, registry, resolver):
        """Dotted required names should be checked inside nested params."""
        context = resolver.build(registry.get("romm"), SecretStore(SECRETS), ["db.user", "db.password"])
        assert context["db"]["user"] == "romm"

    def test_missing_secret_reported_before_missing_field(self, registry, resolver):
        """Missing secrets should be reported before missing fields."""
        with pytest.raises(ConfigError) as exc_info:
            resolver.build(registry.get("romm"), SecretStore({}), ["image"])
        assert exc_info.value.code == "missing_secret"

    def test_check_required_counts_secret_references(self, registry, resolver):
        """A secret reference should satisfy a required field."""
        assert resolver.check_required(registry.get("romm"), ["db.password", "image"]) == ["image"]


class TestGlobals:
    def test_missing_file_means_defaults(self, tmp_path: Path):
        """A missing globals.yaml should give the built-in defaults."""
        assert load_globals(tmp_path / "globals.yaml") == GlobalContext()

    def test_relative_paths_rejected(self, tmp_path: Path):
        """Relative root paths in globals should be rejected."""
        path = tmp_path / "globals.yaml"
        path.write_text("config_root: appdata\n")
        with pytest.raises(RegistryError, match="Invalid globals"):
            load_globals(path)

    def test_non_mapping(self, tmp_path: Path):
        """A globals.yaml that is not a mapping should be rejected."""
        path = tmp_path / "globals.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(RegistryError, match="must be a mapping"):
            load_globals(path)

    def test_loads_known_and_extra_keys(self, project_root: Path):
        """Known and extra keys in globals.yaml should both load."""
        globals_ = load_globals(project_root / "globals.yaml")

        assert globals_.timezone == "Europe/Berlin"
        assert globals_.as_vars()["data_root"] == "/srv/media"
        assert "network_name" not in globals_.as_vars()

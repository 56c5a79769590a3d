from datetime import datetime, timedelta, timezone

import pytest

from pgvault.core.errors import ConfigurationError, TemplateError
from pgvault.core.helpers.path_template import (
    TemplateFields,
    join_key,
    render_destination,
    render_prefix,
    render_template,
)


@pytest.fixture
def fields(now):
    return TemplateFields.from_moment(now, "prod", "app", "run-42")


class TestTemplateFields:
    def test_fields_from_moment(self, fields):
        assert fields.year == "2026"
        assert fields.month == "01"
        assert fields.day == "20"
        assert fields.timestamp == "20260120-120000"
        assert fields.run_id == "run-42"

    def test_moment_is_converted_to_utc(self):
        local = datetime(2026, 1, 20, 1, 30, 0, tzinfo=timezone(timedelta(hours=3)))
        fields = TemplateFields.from_moment(local, "prod", "app", "r")
        assert fields.day == "19"
        assert fields.timestamp == "20260119-223000"


class TestRenderDestination:
    def test_default_templates(self, fields):
        key = render_destination("{cluster}/{database}", "{timestamp}.sql.gz", fields)
        assert key == "prod/app/20260120-120000.sql.gz"

    def test_date_partitioned_path(self, fields):
        key = render_destination("{cluster}/{year}/{month}/{day}", "{database}-{run_id}.sql.gz", fields)
        assert key == "prod/2026/01/20/app-run-42.sql.gz"

    def test_trailing_slash_is_not_doubled(self, fields):
        key = render_destination("{cluster}/{database}/", "{timestamp}.sql.gz", fields)
        assert key == "prod/app/20260120-120000.sql.gz"

    def test_unknown_field_raises(self, fields):
        with pytest.raises(TemplateError, match="unknown template field") as exc:
            render_destination("{cluster}/{namespace}", "{timestamp}.sql.gz", fields)
        assert "available" in str(exc.value)

    def test_template_error_is_configuration_error(self, fields):
        with pytest.raises(ConfigurationError):
            render_destination("{bogus}", "x", fields)

    def test_literal_braces(self, fields):
        assert render_template("{{raw}}-{cluster}", fields.as_dict()) == "{raw}-prod"

    def test_unbalanced_brace_raises(self, fields):
        with pytest.raises(TemplateError, match="malformed"):
            render_template("{cluster", fields.as_dict())

    def test_format_spec_rejected(self, fields):
        with pytest.raises(TemplateError, match="format specs"):
            render_template("{timestamp:>20}", fields.as_dict())

    def test_empty_placeholder_rejected(self, fields):
        with pytest.raises(TemplateError, match="empty placeholder"):
            render_template("{}", fields.as_dict())


class TestJoinKey:
    def test_joins_with_single_slash(self):
        assert join_key("a/b", "c.gz") == "a/b/c.gz"

    def test_empty_path_yields_filename(self):
        assert join_key("", "c.gz") == "c.gz"


class TestRenderPrefix:
    def test_prefix_ends_with_slash(self):
        assert render_prefix("{cluster}/{database}", "prod", "app") == "prod/app/"

    def test_date_fields_not_available(self):
        with pytest.raises(TemplateError):
            render_prefix("{cluster}/{year}", "prod", "app")

    def test_empty_template_lists_everything(self):
        assert render_prefix("", "prod", "app") == ""

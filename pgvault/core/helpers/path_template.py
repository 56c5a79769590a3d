"""Destination key rendering.

Templates use ``{field}`` placeholders drawn from a fixed set; ``{{`` and
``}}`` produce literal braces. Anything else is rejected up front so a bad
template fails before pg_dump runs.
"""

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from string import Formatter
from typing import Dict, Mapping

from pgvault.core.errors import TemplateError

TEMPLATE_FIELDS = ("cluster", "database", "year", "month", "day", "timestamp", "run_id")
TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"


@dataclass(frozen=True)
class TemplateFields:
    cluster: str
    database: str
    year: str
    month: str
    day: str
    timestamp: str
    run_id: str

    @classmethod
    def from_moment(cls, now: datetime, cluster: str, database: str, run_id: str) -> "TemplateFields":
        now = now.astimezone(timezone.utc)
        return cls(
            cluster=cluster,
            database=database,
            year=now.strftime("%Y"),
            month=now.strftime("%m"),
            day=now.strftime("%d"),
            timestamp=now.strftime(TIMESTAMP_FORMAT),
            run_id=run_id,
        )

    def as_dict(self) -> Dict[str, str]:
        return asdict(self)


def render_template(template: str, fields: Mapping[str, str]) -> str:
    try:
        parsed = list(Formatter().parse(template))
    except ValueError as e:
        raise TemplateError(f"malformed template {template!r}: {e}")

    rendered = []
    for literal, name, spec, conversion in parsed:
        rendered.append(literal)
        if name is None:
            continue
        if not name:
            raise TemplateError(f"malformed template {template!r}: empty placeholder")
        if spec or conversion:
            raise TemplateError(
                f"malformed template {template!r}: format specs are not supported in {{{name}}}"
            )
        if name not in fields:
            raise TemplateError(
                f"unknown template field {{{name}}} in {template!r}; "
                f"available: {', '.join(sorted(fields))}"
            )
        rendered.append(str(fields[name]))
    return "".join(rendered)


def join_key(path: str, filename: str) -> str:
    path = path.rstrip("/")
    if not path:
        return filename
    return f"{path}/{filename}"


def render_destination(path_template: str, filename_template: str, fields: TemplateFields) -> str:
    values = fields.as_dict()
    path = render_template(path_template, values)
    filename = render_template(filename_template, values)
    return join_key(path, filename)


def render_prefix(path_template: str, cluster: str, database: str) -> str:
    """Listing prefix for retention; only cluster and database are known."""
    path = render_template(path_template, {"cluster": cluster, "database": database}).rstrip("/")
    return f"{path}/" if path else ""

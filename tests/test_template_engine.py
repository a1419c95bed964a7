"""Tests for the template rendering engine."""
from __future__ import annotations

from pathlib import Path

import pytest
from jinja2 import UndefinedError

from dbsrvctl.templates import TemplateEngine


def _context(name: str) -> dict[str, object]:
    return {
        "instance_name": name,
        "environment": [f"DBSRVCTL_INSTANCE={name}"],
        "runstate_dir": f"/run/dbsrvctl/{name}",
        "exec_start": f"edgedb-server-2 --data-dir /data/{name}",
        "wanted_by": "default.target",
    }


def test_render_to_string_uses_builtin_templates() -> None:
    """Built-in templates render with strict variables."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string("systemd/service.j2", _context("alpha"))

    assert "Database server instance (alpha)" in output
    assert 'Environment="DBSRVCTL_INSTANCE=alpha"' in output
    assert "ExecStart=edgedb-server-2 --data-dir /data/alpha" in output
    assert "WantedBy=default.target" in output


def test_missing_variable_is_an_error() -> None:
    """Undefined template variables raise instead of rendering blanks."""
    engine = TemplateEngine.with_overrides(None)

    with pytest.raises(UndefinedError):
        engine.render_to_string("systemd/service.j2", {"instance_name": "alpha"})


def test_render_to_path_writes_with_mode(tmp_path: Path) -> None:
    """Rendering to a file writes content and respects the requested mode."""
    engine = TemplateEngine.with_overrides(None)
    destination = tmp_path / "units" / "beta.service"

    changed = engine.render_to_path("systemd/service.j2", destination, _context("beta"), mode=0o600)

    assert changed is True
    assert destination.exists()
    assert oct(destination.stat().st_mode & 0o777) == "0o600"

    # Second render with same content should be a no-op.
    changed_again = engine.render_to_path(
        "systemd/service.j2", destination, _context("beta"), mode=0o600
    )
    assert changed_again is False
    assert [p.name for p in destination.parent.iterdir()] == ["beta.service"]


def test_override_path_takes_precedence(tmp_path: Path) -> None:
    """Override templates shadow the built-in ones."""
    override_template = tmp_path / "templates" / "systemd" / "service.j2"
    override_template.parent.mkdir(parents=True)
    override_template.write_text("override {{ instance_name }}", encoding="utf-8")

    engine = TemplateEngine.with_overrides(tmp_path / "templates")

    assert engine.render_to_string("systemd/service.j2", {"instance_name": "gamma"}) == (
        "override gamma"
    )

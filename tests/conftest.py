# SPDX-FileCopyrightText: 2023-present ferstar <zhangjianfei3@gmail.com>
#
# SPDX-License-Identifier: MIT
import json

import pytest


@pytest.fixture(autouse=True)
def _plain_output(monkeypatch):
    """Keep ANSI codes out of captured output unless a test asks for them."""
    monkeypatch.setenv("NO_COLOR", "1")
    monkeypatch.delenv("FORCE_COLOR", raising=False)


@pytest.fixture
def make_project(tmp_path):
    """Create a project with a package.json and the given source files."""

    def _make(dependencies=None, files=None, **groups):
        project_dir = tmp_path / "project"
        project_dir.mkdir(exist_ok=True)
        manifest = {"name": "demo", "version": "1.0.0"}
        if dependencies is not None:
            manifest["dependencies"] = dependencies
        manifest.update(groups)
        (project_dir / "package.json").write_text(json.dumps(manifest))
        for rel_path, content in (files or {}).items():
            path = project_dir / rel_path
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
        return project_dir

    return _make

"""
Unit tests for the project metadata in ``pyproject.toml``.

Key Concepts Demonstrated:
- Guarding the dependency list against imports that only work by accident
- Reading TOML with the standard library parser
"""

import re
from pathlib import Path

import pytest

tomllib = pytest.importorskip("tomllib")


pytestmark = pytest.mark.unit

PYPROJECT = Path(__file__).resolve().parents[2] / "pyproject.toml"


def declared(requirements):
    return {re.split(r"[<>=!~\[ ;]", requirement, maxsplit=1)[0].lower() for requirement in requirements}


@pytest.fixture(scope="module")
def project():
    with PYPROJECT.open("rb") as handle:
        return tomllib.load(handle)["project"]


class TestDependencies:

    def test_runtime_dependencies(self, project):
        assert declared(project["dependencies"]) == {"pyyaml", "requests"}

    @pytest.mark.parametrize("distribution", ["pytest", "faker", "flask", "pyjwt", "werkzeug"])
    def test_test_extra_declares_directly_imported_libraries(self, project, distribution):
        assert distribution in declared(project["optional-dependencies"]["test"])

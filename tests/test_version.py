"""Tests for version management.

Verifies that ``commons_server.__version__`` is resolved from the package
metadata and that the FastAPI app and the root ``/`` endpoint report the
same value.
"""

from __future__ import annotations

import re

import pytest

import commons_server
from commons_server.api.server import create_app

# major.minor.patch with optional pre-release suffix
_SEMVER_RE = re.compile(r"^\d+\.\d+\.\d+(-[A-Za-z0-9]+(\.[A-Za-z0-9]+)*)?$")


@pytest.mark.unit
class TestVersionAttribute:
    """Verify the ``commons_server.__version__`` package attribute."""

    def test_version_is_a_string(self) -> None:
        assert isinstance(commons_server.__version__, str)
        assert commons_server.__version__

    def test_version_matches_semver(self) -> None:
        assert _SEMVER_RE.match(commons_server.__version__), (
            f"__version__ {commons_server.__version__!r} does not match "
            f"expected semver pattern (major.minor.patch[-prerelease])"
        )


@pytest.mark.unit
class TestVersionInApp:
    """Verify version consistency across the FastAPI app surfaces."""

    def test_openapi_version_matches_package(self, services, sessions) -> None:
        app = create_app(services, sessions, run_jobs=False)

        assert app.version == commons_server.__version__

    def test_root_endpoint_version_matches_package(self, test_client) -> None:
        response = test_client.get("/")

        assert response.status_code == 200
        assert response.json() == {
            "message": "Commons Server API",
            "version": commons_server.__version__,
        }

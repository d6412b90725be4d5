import subprocess
import sys

import pytest

from newsletter.roles import SUPPORTED_ROLES


@pytest.mark.integration
@pytest.mark.parametrize("role", SUPPORTED_ROLES)
def test_role_starts_via_dry_run(role: str) -> None:
    proc = subprocess.run(
        [sys.executable, "-m", "newsletter.main", "--role", role, "--dry-run-startup"],
        capture_output=True,
        text=True,
        check=False,
    )
    assert proc.returncode == 0, proc.stderr
    assert "dry-run startup complete" in proc.stdout

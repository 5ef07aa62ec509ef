from pathlib import Path

import pytest

from chatgroup.storage import Storage


@pytest.fixture
def storage(tmp_path: Path) -> Storage:
    """A fresh room store under the test's tmp directory."""
    return Storage(tmp_path / "data")

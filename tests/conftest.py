"""Pytest configuration for folio-setup tests."""
import sys
from pathlib import Path

# Add src/ to path for src-layout imports
_PROJECT_ROOT = Path(__file__).parent.parent
_SRC = _PROJECT_ROOT / 'src'
if str(_SRC) not in sys.path:
    sys.path.insert(0, str(_SRC))

import pytest


@pytest.fixture
def config_path(tmp_path):
    """Location of a throwaway persisted config record."""
    return tmp_path / 'folio' / 'supabase-config.json'

import sys, pytest
from pathlib import Path
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path: sys.path.insert(0, str(ROOT))
from .kernel_utils import running_kernel


@pytest.fixture
def kernel_loop(tmp_path):
    with running_kernel(tmp_path) as h: yield h

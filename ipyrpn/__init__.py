from importlib.metadata import PackageNotFoundError, version
from .kernel import RpnKernel, run_kernel

try:
    __version__ = version("ipyrpn")
except PackageNotFoundError:  # pragma: no cover - local editable without metadata
    __version__ = "0.0.0+local"

__all__ = ["RpnKernel", "run_kernel", "__version__"]

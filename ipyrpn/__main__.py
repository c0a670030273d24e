import argparse
import sys
from pathlib import Path

from jupyter_client.kernelspec import install_kernel_spec

from .channels import BindError
from .config import ConfigError
from .kernel import run_kernel

KERNEL_DIR = Path(__file__).resolve().parents[1] / "share" / "jupyter" / "kernels" / "ipyrpn"


def _run_kernel_from_cli(argv: list[str]) -> None:
    parser = argparse.ArgumentParser(prog="ipyrpn")
    parser.add_argument("-f", "--connection-file", required=True)
    args = parser.parse_args(argv)
    try:
        run_kernel(args.connection_file)
    except (ConfigError, BindError) as exc:
        raise SystemExit(f"ipyrpn: {exc}") from exc


def _install_kernelspec(argv: list[str]) -> None:
    parser = argparse.ArgumentParser(prog="ipyrpn install")
    scope = parser.add_mutually_exclusive_group()
    scope.add_argument("--user", action="store_true", help="Install into user Jupyter dir")
    scope.add_argument("--sys-prefix", action="store_true", help="Install into current env")
    scope.add_argument("--prefix", help="Install into a given prefix")
    args = parser.parse_args(argv)

    prefix = args.prefix or (sys.prefix if args.sys_prefix else None)
    if not (KERNEL_DIR / "kernel.json").exists():
        raise SystemExit(f"ipyrpn: kernelspec not found at {KERNEL_DIR}")
    dest = install_kernel_spec(str(KERNEL_DIR), kernel_name="ipyrpn", user=bool(args.user), prefix=prefix, replace=True)
    print(f"Installed ipyrpn kernelspec in {dest}")


def main() -> None:
    argv = sys.argv[1:]
    if argv and argv[0] == "install":
        _install_kernelspec(argv[1:])
        return
    if argv and argv[0] == "run":
        _run_kernel_from_cli(argv[1:])
        return
    _run_kernel_from_cli(argv)


if __name__ == "__main__":
    main()

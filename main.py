# Shim: the canonical entry point lives in taskloop_cli/cli_main.py.
import sys


def main(*args, **kwargs):  # noqa: D401
    """Proxy to the canonical CLI entry point."""
    from taskloop_cli.cli_main import main as _main
    return _main(*args, **kwargs)


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))

"""
toolhost - stdio tool server host.

Main entry point when running from a source checkout (`python main.py ...`).
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from toolhost.cli.main import cli  # noqa: E402


if __name__ == "__main__":
    cli()

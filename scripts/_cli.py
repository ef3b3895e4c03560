"""Zero-arg CLI wrappers for console_scripts entry points.

Each script's ``main(argv)`` accepts ``sys.argv[1:]``.  The wrappers here
adapt that signature to the zero-arg callable that setuptools
console_scripts expects.
"""
from __future__ import annotations

import sys


def narratives() -> None:
    from scripts.narratives_cli import main
    raise SystemExit(main(sys.argv[1:]))


def curator_status() -> None:
    from scripts.curator_status import main
    raise SystemExit(main(sys.argv[1:]))
